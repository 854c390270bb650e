"""Miscellaneous tools useful in command line interfaces (CLI)."""
import argparse
import json

from .stages import RunMode

__docformat__ = 'numpy'


def parse_config_path(s):
    """Split a dotted configuration path into keys and list indices.

        >>> parse_config_path('first_search.fragment_settings.min_top_n.0')
        ['first_search', 'fragment_settings', 'min_top_n', 0]

    Purely numeric components are taken as list indices.
    """
    if not s:
        raise ValueError('Empty configuration path')

    ret = []
    for part in s.split('.'):
        if not part:
            raise ValueError(f'Empty component in configuration path {s!r}')
        isint = part.isdigit() or (part[0] == '-' and part[1:].isdigit())
        ret.append(int(part) if isint else part)
    return ret


def parse_assignment(s):
    """Parse ``'dotted.path=value'`` into ``(path, value)``.

    The value is read as JSON when possible (so ``true``, ``3``, ``[1,2]``
    and ``"text"`` have their JSON meaning) and kept as a plain string
    otherwise.

        >>> parse_assignment('global.ms1_quant=true')
        (['global', 'ms1_quant'], True)
        >>> parse_assignment('paths.results=/data/out')
        (['paths', 'results'], '/data/out')

    Raises
    ------
    ValueError
        If `s` has no ``=`` or the path is malformed.
    """
    key, sep, raw = s.partition('=')
    if not sep:
        raise ValueError(f'Expected PATH=VALUE, got {s!r}')

    path = parse_config_path(key.strip())

    try:
        value = json.loads(raw)
    except ValueError:
        value = raw

    return (path, value)


class ConfigAssignment(argparse.Action):
    """Custom `argparse.Action` collecting ``--set PATH=VALUE`` options.

    Each use appends a ``(path, value)`` tuple (see `parse_assignment`) to
    the list in ``dest``, for example:

        argp.add_argument('--set',
            metavar='PATH=VALUE',
            dest='assignments',
            action=pypioneer.cli.ConfigAssignment,
            help='Override one configuration value',
            )
    """

    def __init__(self, *args, **kwargs):
        kwargs.setdefault('default', [])
        super().__init__(*args, **kwargs)

    def __call__(self, parser, namespace, values, option_string=None):
        try:
            item = parse_assignment(values)
        except ValueError as e:
            parser.error(f'{option_string or self.dest}: {e}')

        current = list(getattr(namespace, self.dest, None) or [])
        current.append(item)
        setattr(namespace, self.dest, current)


def run_mode(s):
    """`argparse` type converting a name like 'search' to a `RunMode`"""
    try:
        return RunMode.from_string(s)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))
