#!/usr/bin/env python
"""Show or export the Pioneer parameters a run would start from.

Defaults are requested from Pioneer (`params-predict`, `params-search`); if
it cannot be run, the bundled fallback defaults are used instead. The
configuration saved by the last run of each mode is merged over the defaults.
"""

import sys
import json
import argparse
import logging

import tabulate

from pypioneer import cli
from pypioneer.config import (load_configs, collect_paths, get_value,
    save_config)
from pypioneer.stages import RunMode


def _leaf_rows(config):
    for p in collect_paths(config, dotted=False):
        yield ['.'.join(str(k) for k in p), json.dumps(get_value(config, p))]


def main():
    argp = argparse.ArgumentParser(description=__doc__.split('\n')[0],
        epilog='\n'.join(__doc__.split('\n')[1:]),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    argp.add_argument('-v', '--verbose',
        action='count',
        default=0,
        help='Increase verbosity.',
    )
    argp.add_argument('MODE',
        type=cli.run_mode,
        nargs='?',
        default=None,
        help="'build' or 'search'. Default: summarize both.",
    )
    argp.add_argument('--pioneer',
        default=None,
        help='Path to the Pioneer executable.',
    )
    argp.add_argument('--config-dir',
        default=None,
        help='Directory of saved configurations.',
    )
    argp.add_argument('--defaults',
        action='store_true',
        help='Ignore the saved configuration; use the defaults only.',
    )
    argp.add_argument('--simplified',
        action='store_true',
        help='Use the short list of commonly changed parameters.',
    )
    argp.add_argument('--show-paths',
        action='store_true',
        help='Print a table of PATH and VALUE for every parameter.',
    )
    argp.add_argument('-o', '--output',
        default=None,
        help='Write the parameters of MODE to this JSON file.',
    )
    args = argp.parse_args()

    logger = logging.getLogger('pypioneer')
    logger.addHandler(logging.StreamHandler())
    if args.verbose > 1:
        logger.setLevel(logging.DEBUG)
    elif args.verbose > 0:
        logger.setLevel(logging.INFO)

    bundle = load_configs(pioneer=args.pioneer, config_dir=args.config_dir)

    print(f'Defaults source: {bundle.source}')
    if bundle.binary_error:
        print(bundle.binary_error, file=sys.stderr)

    modes = [args.MODE] if args.MODE else list(RunMode)
    if args.output and len(modes) != 1:
        argp.error('--output requires MODE')

    for mode in modes:
        cset = bundle.build if mode is RunMode.BUILD_LIBRARY else bundle.search

        if args.simplified:
            config = cset.simplified_config
        elif args.defaults or cset.persisted_config is None:
            config = cset.default_config
        else:
            config = cset.persisted_config

        saved = 'saved' if cset.persisted_config is not None else 'not saved'
        print(f'{mode.value}: {cset.persisted_path} ({saved})')

        if args.show_paths:
            print(tabulate.tabulate(list(_leaf_rows(config)),
                headers=['path', 'value']))
            print()

        if args.output:
            save_config(args.output, config)
            print(f'Wrote {args.output}')

    sys.exit(0)


if __name__ == '__main__':
    main()
