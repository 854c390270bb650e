"""Find the Pioneer executable.

The search order is:

1. The environment variables ``PIONEER_BINARY``, ``PIONEER_PATH``,
   ``PIONEER_EXE`` and ``PIONEER``, in that order. Each may name the
   executable itself or a directory that contains it.
2. The usual executable names on ``PATH``.
"""
import os
import shutil
import logging
from pathlib import Path

from more_itertools import always_iterable

__docformat__ = 'numpy'

logger = logging.getLogger(__name__)

ENV_VARS = ('PIONEER_BINARY', 'PIONEER_PATH', 'PIONEER_EXE', 'PIONEER',)
EXE_NAMES = ('pioneer', 'Pioneer', 'pioneer.exe', 'Pioneer.exe',)


class SpawnError(RuntimeError):
    """The Pioneer executable could not be started"""
    pass


class BinaryNotFoundError(SpawnError):
    """No Pioneer executable was found"""

    def __init__(self, msg=None):
        if msg is None:
            msg = ('Pioneer binary not found. Set '
                + '/'.join(f'`{v}`' for v in ENV_VARS[:2])
                + ' or add the executable to PATH (tried '
                + ', '.join(f'`{n}`' for n in EXE_NAMES) + ').')
        super().__init__(msg)


def _env_candidates(environ=None):
    """Return candidate paths named by the environment, in priority order"""
    if environ is None:
        environ = os.environ

    ret = []
    for key in ENV_VARS:
        raw = environ.get(key, '')
        if not raw:
            continue
        p = Path(raw)
        if p.is_dir():
            ret.extend(p / n for n in EXE_NAMES)
        else:
            ret.append(p)
    return ret


def locate_pioneer_binary(environ=None):
    """Return the `Path` of the Pioneer executable.

    Parameters
    ----------
    environ : mapping, optional
        Environment to consult instead of `os.environ`.

    Raises
    ------
    BinaryNotFoundError
        If neither the environment nor ``PATH`` yields an executable.
    """
    for c in _env_candidates(environ):
        if c.is_file():
            logger.debug(f'Using Pioneer from environment: {c}')
            return c

    path = None if environ is None else environ.get('PATH')
    for n in EXE_NAMES:
        found = shutil.which(n, path=path)
        if found:
            logger.debug(f'Using Pioneer from PATH: {found}')
            return Path(found)

    raise BinaryNotFoundError()


def tool_command(tool):
    """Return `tool` as a list of command line strings.

    `tool` may be a single path (str or Path) or a command prefix such as
    ``[sys.executable, 'fake_pioneer.py']``.
    """
    cmd = [os.fspath(t) for t in always_iterable(tool)]
    if not cmd:
        raise SpawnError('Empty Pioneer command')
    return cmd
