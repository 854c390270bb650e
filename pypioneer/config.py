"""Pioneer parameter files: defaults, persisted user overrides and merging.

A configuration is a JSON tree (dicts, lists and scalars). Defaults come from
Pioneer itself when the binary is available (its ``params-predict`` and
``params-search`` subcommands write a full parameter file) or from the
fallback documents bundled in ``pypioneer/fallback``. The configuration
submitted for the most recent run of each mode is saved under the user's
config directory and deep-merged back onto the defaults on the next load:

>>> defaults = {'a': {'x': 1, 'y': 2}, 'b': [1, 2]}
>>> deep_merge(defaults, {'a': {'y': 20}, 'b': [3]})
{'a': {'x': 1, 'y': 20}, 'b': [3]}

Lists and scalars are replaced wholesale; only dicts are merged key by key.
"""
import os
import sys
import copy
import json
import logging
import subprocess
import tempfile
from collections import namedtuple
from pathlib import Path

from .binary import SpawnError, locate_pioneer_binary, tool_command
from .stages import RunMode

__docformat__ = 'numpy'

logger = logging.getLogger(__name__)

CONFIG_DIR_ENV = 'PIONEERTOOLS_CONFIG_DIR'
_APP_DIRNAME = 'pioneertools'

_FALLBACK_DIR = os.path.join(os.path.dirname(__file__), 'fallback')
_FALLBACK_FILES = {
    (RunMode.BUILD_LIBRARY, False): 'default_build.json',
    (RunMode.BUILD_LIBRARY, True): 'default_build_simplified.json',
    (RunMode.SEARCH_RUN, False): 'default_search.json',
    (RunMode.SEARCH_RUN, True): 'default_search_simplified.json',
}

ConfigSet = namedtuple('ConfigSet',
    'default_config simplified_config persisted_config persisted_path'.split())

ConfigBundle = namedtuple('ConfigBundle',
    'build search source binary_error'.split())


class ConfigLoadError(RuntimeError):
    """Default parameters could not be obtained from Pioneer"""
    pass


# --- Tree operations ---

def deep_merge(base, override):
    """Return a new tree with `override` laid over `base`.

    When both are dicts, every key of `base` is kept, keys in `override`
    replace (or recursively merge into) the base value, and keys only in
    `override` are added. Any other pairing yields a copy of `override`.
    Neither argument is modified.
    """
    if isinstance(base, dict) and isinstance(override, dict):
        merged = {k: copy.deepcopy(v) for k, v in base.items()}
        for k, v in override.items():
            if k in merged:
                merged[k] = deep_merge(merged[k], v)
            else:
                merged[k] = copy.deepcopy(v)
        return merged

    return copy.deepcopy(override)


def _step(node, key):
    if isinstance(node, list) and isinstance(key, int):
        return node[key]
    if isinstance(node, dict) and isinstance(key, str):
        return node[key]
    raise KeyError(key)


def get_value(tree, path, default=None):
    """Return the value at `path` (a sequence of keys and list indices).

    Returns `default` if any step of the path does not exist.
    """
    node = tree
    try:
        for key in path:
            node = _step(node, key)
    except (KeyError, IndexError):
        return default
    return node


def set_value(tree, path, value):
    """Return a copy of `tree` with `value` stored at `path`.

    Missing intermediate dict keys are created. Steps that do not fit the
    tree (a string key into a list, an index into a dict or scalar) leave the
    tree unchanged at that level.
    """
    path = list(path)
    if not path:
        return copy.deepcopy(value)

    head, rest = path[0], path[1:]

    if isinstance(tree, list):
        if not isinstance(head, int) or not -len(tree) <= head < len(tree):
            return copy.deepcopy(tree)
        ret = copy.deepcopy(tree)
        ret[head] = set_value(tree[head], rest, value)
        return ret

    if isinstance(tree, dict) and isinstance(head, str):
        ret = {k: copy.deepcopy(v) for k, v in tree.items()}
        ret[head] = set_value(tree.get(head, {}), rest, value)
        return ret

    return copy.deepcopy(tree)


def delete_key(tree, path):
    """Return a copy of `tree` without the item at `path`"""
    path = list(path)
    ret = copy.deepcopy(tree)
    if not path:
        return ret

    parent = get_value(ret, path[:-1])
    try:
        if isinstance(parent, (dict, list)):
            del parent[path[-1]]
    except (KeyError, IndexError, TypeError):
        pass
    return ret


def collect_paths(tree, dotted=True, _prefix=()):
    """Return the paths of all leaves in `tree`, in document order.

    Paths are dotted strings (``'global.scoring.q_value_threshold'``), or
    tuples of keys and indices if `dotted` is False.
    """
    if isinstance(tree, dict):
        items = tree.items()
    elif isinstance(tree, list):
        items = enumerate(tree)
    elif dotted:
        return ['.'.join(str(p) for p in _prefix)]
    else:
        return [_prefix]

    ret = []
    for k, v in items:
        ret.extend(collect_paths(v, dotted, _prefix + (k,)))
    return ret


# --- Files ---

def read_config(path):
    """Return the JSON tree stored in `path`"""
    with open(path, 'r', encoding='utf-8') as fin:
        return json.load(fin)


def save_config(path, config):
    """Write `config` to `path` as indented JSON.

    The file is replaced atomically, so a concurrent reader sees either the
    old or the new document. Parent directories are created as needed.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmpname = tempfile.mkstemp(
        prefix=f'.{path.name}.', suffix='.tmp', dir=path.parent)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as fout:
            json.dump(config, fout, indent=2)
        os.replace(tmpname, path)
    except BaseException:
        if os.path.exists(tmpname):
            os.remove(tmpname)
        raise

    return path


def default_config_dir(environ=None):
    """Return the directory where user configurations are persisted"""
    if environ is None:
        environ = os.environ

    if environ.get(CONFIG_DIR_ENV):
        return Path(environ[CONFIG_DIR_ENV])

    if sys.platform.startswith('win') and environ.get('APPDATA'):
        base = Path(environ['APPDATA'])
    elif sys.platform == 'darwin':
        base = Path.home() / 'Library' / 'Application Support'
    elif environ.get('XDG_CONFIG_HOME'):
        base = Path(environ['XDG_CONFIG_HOME'])
    else:
        base = Path.home() / '.config'

    return base / _APP_DIRNAME


def config_storage_path(mode, config_dir=None):
    """Return the path of the persisted configuration for `mode`"""
    if config_dir is None:
        config_dir = default_config_dir()
    return Path(config_dir) / mode.storage_filename


def load_persisted_config(path, defaults):
    """Return the persisted tree at `path` merged onto `defaults`.

    Returns None if `path` is None, does not exist, or cannot be parsed.
    """
    if path is None or not Path(path).is_file():
        return None

    try:
        persisted = read_config(path)
    except (OSError, ValueError) as e:
        logger.warning(f'Ignoring unreadable saved configuration {path}: {e}')
        return None

    return deep_merge(defaults, persisted)


def persist_config(mode, config, config_dir=None):
    """Save `config` as the most recent configuration for `mode`.

    Returns
    -------
    Path
        Where the configuration was written.
    """
    path = config_storage_path(mode, config_dir)
    save_config(path, config)
    logger.debug(f'Saved {mode.value} configuration to {path}')
    return path


# --- Defaults ---

def fallback_defaults(mode, simplified=False):
    """Return the bundled default configuration for `mode`"""
    return read_config(
        os.path.join(_FALLBACK_DIR, _FALLBACK_FILES[(mode, bool(simplified))]))


def _preview_args(mode, tmpdir):
    """Create placeholder inputs in `tmpdir`; return the params arguments"""
    tmpdir = Path(tmpdir)

    if mode is RunMode.BUILD_LIBRARY:
        lib_out = tmpdir / 'library_preview'
        lib_out.mkdir()
        fasta = tmpdir / 'preview.fasta'
        fasta.write_bytes(b'>Example\nM\n')
        return [str(lib_out), 'PreviewLibrary', str(fasta)]

    library = tmpdir / 'example_library.poin'
    library.write_bytes(b'')
    ms_data = tmpdir / 'ms_data'
    ms_data.mkdir()
    results = tmpdir / 'results'
    results.mkdir()
    return [str(library), str(ms_data), str(results)]


def fetch_defaults(mode, pioneer=None, timeout=120.):
    """Ask Pioneer for its default parameters for `mode`.

    Parameters
    ----------
    mode : RunMode
    pioneer : str, Path or list of str, optional
        Pioneer command. Located with `locate_pioneer_binary` if omitted.
    timeout : float, optional
        Seconds to wait for Pioneer, by default 120.

    Raises
    ------
    ConfigLoadError
        If Pioneer cannot be found or run, exits non-zero, or writes
        something that is not JSON.
    """
    try:
        cmd = tool_command(
            pioneer if pioneer is not None else locate_pioneer_binary())
    except SpawnError as e:
        raise ConfigLoadError(str(e)) from e

    with tempfile.TemporaryDirectory(prefix='pioneer_params_') as tdir:
        params_path = Path(tdir) / mode.config_filename
        args = cmd + [mode.params_subcommand] + _preview_args(mode, tdir) \
            + ['--params-path', str(params_path)]

        logger.debug('Fetching defaults: ' + ' '.join(args))
        try:
            cp = subprocess.run(args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=timeout,
                )
        except subprocess.TimeoutExpired as e:
            raise ConfigLoadError(
                f'Pioneer did not finish {mode.params_subcommand} '
                f'within {timeout}s') from e
        except OSError as e:
            raise ConfigLoadError(f'Failed to execute Pioneer: {e}') from e

        if cp.returncode != 0:
            raise ConfigLoadError(f'Pioneer exited with status {cp.returncode}')

        try:
            return read_config(params_path)
        except OSError as e:
            raise ConfigLoadError(
                f'Pioneer did not write {params_path.name}: {e}') from e
        except ValueError as e:
            raise ConfigLoadError(f'Failed to parse JSON output: {e}') from e


def load_configs(pioneer=None, config_dir=None):
    """Gather defaults and persisted configurations for both run modes.

    Returns
    -------
    ConfigBundle
        ``build`` and ``search`` are `ConfigSet` records. ``source`` is
        ``'binary'`` if Pioneer supplied both default documents,
        ``'partial'`` if it supplied one and ``'fallback'`` otherwise.
        ``binary_error`` joins the reasons Pioneer could not be used, or is
        None.
    """
    sets = {}
    errors = []
    nfetched = 0

    for mode, title in ((RunMode.BUILD_LIBRARY, 'BuildSpecLib'),
                        (RunMode.SEARCH_RUN, 'SearchDIA')):
        try:
            defaults = fetch_defaults(mode, pioneer)
            nfetched += 1
        except ConfigLoadError as e:
            errors.append(f'{title} defaults: {e}')
            defaults = fallback_defaults(mode)

        path = config_storage_path(mode, config_dir)
        sets[mode] = ConfigSet(
            default_config=defaults,
            simplified_config=fallback_defaults(mode, simplified=True),
            persisted_config=load_persisted_config(path, defaults),
            persisted_path=str(path),
        )

    source = {0: 'fallback', 1: 'partial', 2: 'binary'}[nfetched]

    return ConfigBundle(
        build=sets[RunMode.BUILD_LIBRARY],
        search=sets[RunMode.SEARCH_RUN],
        source=source,
        binary_error='\n'.join(errors) if errors else None,
    )
