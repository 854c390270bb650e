"""Supervise Pioneer spectral library builds and DIA searches

Loggers for inspecting this package's operations are all children of
'pypioneer', for example:

    import logging
    logger = logging.getLogger('pypioneer')
    ch = logging.StreamHandler()
    ch.setFormatter(logging.Formatter('pypioneer %(levelname)s - %(message)s'))
    logger.addHandler(ch)
    logger.setLevel(logging.INFO)

"""

from .stages import (RunMode, StageInfo, StageTracker, )
from .runner import (PioneerRun, ExitError, SpawnError, )

__all__ = ['RunMode', 'StageInfo', 'StageTracker',
           'PioneerRun', 'ExitError', 'SpawnError',]
