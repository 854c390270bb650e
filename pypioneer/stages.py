"""Run modes and the stage tables used to infer Pioneer progress.

Pioneer narrates its work as free text. Each `RunMode` has a fixed, ordered
table of `StageInfo` records; a stage is reached when a log line contains any
of its keywords. Position in the table doubles as the progress coordinate:

>>> from pypioneer.stages import RunMode, StageTracker
>>> tracker = StageTracker(RunMode.BUILD_LIBRARY.stages)
>>> tracker.feed('Loading FASTA files').key
'prepare'
>>> tracker.progress
25.0

Stage detection is a heuristic, not a protocol with Pioneer. It only ever moves
forward, and the final stage is forced when the process exits cleanly.
"""
import enum
from collections import namedtuple

import tabulate
from more_itertools import first_true

__docformat__ = 'numpy'

StageInfo = namedtuple('StageInfo', 'key label keywords'.split())
StageInfo.__doc__ = """A named phase of a Pioneer run.

`keywords` is a tuple of lowercase substrings; an empty tuple is only allowed
for the initial stage."""


BUILD_STAGES = (
    StageInfo('starting', 'Starting Pioneer', ()),
    StageInfo('prepare', 'Preparing inputs',
        ('reading', 'loading', 'prepare', 'initializing')),
    StageInfo('predict', 'Predicting spectral library',
        ('predict', 'altimeter', 'model', 'generating', 'writing predicted')),
    StageInfo('write', 'Writing spectral library',
        ('writing', 'saving', 'export')),
    StageInfo('complete', 'Completed',
        ('complete', 'finished', 'success')),
)

SEARCH_STAGES = (
    StageInfo('starting', 'Starting Pioneer', ()),
    StageInfo('prepare', 'Preparing inputs',
        ('reading', 'loading', 'preparing', 'initializing')),
    StageInfo('presearch', 'Tuning search parameters',
        ('presearch', 'tuning', 'estimating')),
    StageInfo('first', 'Running first pass search',
        ('first search', 'index search', 'first pass')),
    StageInfo('quant', 'Running quantification search',
        ('quant', 'quantification', 'scoring')),
    StageInfo('finishing', 'Finalizing results',
        ('writing results', 'post-processing', 'saving')),
    StageInfo('complete', 'Completed',
        ('complete', 'finished', 'success')),
)


def validate_stages(stages):
    """Check that a stage table is usable for progress tracking.

    Parameters
    ----------
    stages : sequence of StageInfo

    Raises
    ------
    ValueError
        If the table is empty, if any stage after the first has no keywords
        (it would match every line), or if a keyword is not lowercase.
    """
    if not stages:
        raise ValueError('A stage table needs at least one stage')

    for i, s in enumerate(stages):
        if i > 0 and not s.keywords:
            raise ValueError(
                f'Stage {i} ({s.key}) has no keywords; only the initial '
                'stage may have an empty keyword set')
        for kw in s.keywords:
            if not kw or kw != kw.lower():
                raise ValueError(
                    f'Stage {s.key} keyword {kw!r} must be non-empty lowercase')

    return stages


class RunMode(enum.Enum):
    """The two Pioneer operations that can be supervised"""

    BUILD_LIBRARY = 'buildSpecLib'
    SEARCH_RUN = 'searchDia'

    @property
    def subcommand(self):
        """Pioneer subcommand that runs this mode"""
        return _MODE_TABLE[self][0]

    @property
    def params_subcommand(self):
        """Pioneer subcommand that writes a default parameter file"""
        return _MODE_TABLE[self][1]

    @property
    def config_filename(self):
        """Name of the parameter file handed to Pioneer"""
        return _MODE_TABLE[self][2]

    @property
    def storage_filename(self):
        """Name of the persisted user configuration"""
        return _MODE_TABLE[self][3]

    @property
    def stages(self):
        return _MODE_TABLE[self][4]

    @classmethod
    def from_string(cls, s):
        """Return the mode named by `s`.

        Accepts the wire value (``'searchDia'``), the member name
        (``'SEARCH_RUN'``) or the short aliases ``'build'`` and ``'search'``,
        all case-insensitively.
        """
        needle = str(s).strip().lower()
        for m in cls:
            if needle in (m.value.lower(), m.name.lower(), _ALIASES[m]):
                return m
        raise ValueError(
            f'Unknown run mode {s!r}; expected one of '
            + ', '.join(sorted(_ALIASES.values())))


_MODE_TABLE = {
    RunMode.BUILD_LIBRARY: ('predict', 'params-predict',
        'buildspeclib_params.json', 'buildspeclib.json',
        validate_stages(BUILD_STAGES)),
    RunMode.SEARCH_RUN: ('search', 'params-search',
        'search_params.json', 'searchdia.json',
        validate_stages(SEARCH_STAGES)),
}

_ALIASES = {
    RunMode.BUILD_LIBRARY: 'build',
    RunMode.SEARCH_RUN: 'search',
}


def match_stage(line, current_index, stages):
    """Return the index of the first later stage `line` matches, or None.

    Only stages strictly after `current_index` are considered, lowest index
    first. A stage matches when any of its keywords is a substring of the
    lowercased line, or when its keyword set is empty.
    """
    normalized = line.lower()

    def _matches(item):
        keywords = item[1].keywords
        return not keywords or any(kw in normalized for kw in keywords)

    hit = first_true(
        enumerate(stages[current_index+1:], start=current_index+1),
        pred=_matches)

    return None if hit is None else hit[0]


def stage_progress(index, n_stages):
    """Percent complete for stage `index` of `n_stages`.

    >>> [stage_progress(i, 5) for i in range(5)]
    [0.0, 25.0, 50.0, 75.0, 100.0]
    """
    if n_stages <= 1:
        return 100.
    return index / (n_stages - 1) * 100.


class StageTracker:
    """Monotonic stage state for one run.

    Lines are fed in arrival order; the stage index never decreases, even when
    a later line mentions vocabulary of an earlier stage.
    """

    def __init__(self, stages):
        self.stages = validate_stages(tuple(stages))
        self.index = 0

    @property
    def stage(self):
        return self.stages[self.index]

    @property
    def progress(self):
        return stage_progress(self.index, len(self.stages))

    def feed(self, line):
        """Advance on `line`; return the new stage, or None if unchanged."""
        nxt = match_stage(line, self.index, self.stages)
        if nxt is None or nxt <= self.index:
            return None
        self.index = nxt
        return self.stage

    def complete(self):
        """Jump to the final stage and return it."""
        self.index = len(self.stages) - 1
        return self.stage


def format_stage_table(mode, current_index=None):
    """Return the stage table of `mode` as text.

    Parameters
    ----------
    mode : RunMode
    current_index : int, optional
        If given, mark that row as the current stage.
    """
    stages = mode.stages
    rows = []
    for i, s in enumerate(stages):
        rows.append([
            '>' if i == current_index else '',
            i,
            s.key,
            s.label,
            f'{stage_progress(i, len(stages)):.0f}%',
            ', '.join(s.keywords) or '(start)',
        ])
    return tabulate.tabulate(rows,
        headers=['', 'index', 'key', 'label', 'progress', 'keywords'])
