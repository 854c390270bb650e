#!/usr/bin/env python
"""Run Pioneer and follow its progress.

MODE is 'build' (BuildSpecLib, `pioneer predict`) or 'search' (SearchDIA,
`pioneer search`).

The parameter file handed to Pioneer is assembled from, in increasing
precedence:
1) Pioneer's default parameters (or the bundled fallback defaults)
2) the configuration saved by the previous run of MODE
3) --config FILE
4) --set PATH=VALUE options

The assembled configuration is saved for the next run (see --no-persist).

Note: this program captures Pioneer's standard output and error streams and
echoes them here; every line is also written to a log file in the run
directory.
"""

import sys
import argparse
import logging

from pypioneer import cli
from pypioneer.config import (deep_merge, set_value, read_config,
    fetch_defaults, fallback_defaults, config_storage_path,
    load_persisted_config, ConfigLoadError)
from pypioneer.notify import ConsoleNotifier
from pypioneer.runner import PioneerRun, ExitError, SpawnError
from pypioneer.stages import format_stage_table


def assemble_config(args):
    """Return the configuration for this run, layered as in the help text"""
    logger = logging.getLogger('pypioneer')

    if args.dry_run:
        # check without running Pioneer at all
        config = fallback_defaults(args.mode)
    else:
        try:
            config = fetch_defaults(args.mode, args.pioneer)
        except ConfigLoadError as e:
            logger.warning(f'Using bundled defaults: {e}')
            config = fallback_defaults(args.mode)

    persisted = load_persisted_config(
        config_storage_path(args.mode, args.config_dir), config)
    if persisted is not None:
        config = persisted

    if args.config:
        config = deep_merge(config, read_config(args.config))

    for path, value in args.assignments:
        config = set_value(config, path, value)

    return config


def main():
    """Parse arguments, run Pioneer and exit with its return code."""
    argp = argparse.ArgumentParser(
        description=__doc__.split('\n')[0],
        epilog='\n'.join(__doc__.split('\n')[1:]),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    argp.add_argument('-v', '--verbose',
        action='count',
        default=0,
        help='Increase verbosity of pypioneer messages.',
    )

    argp.add_argument('MODE',
        type=cli.run_mode,
        help="'build' or 'search'",
    )

    argp.add_argument('-c', '--config',
        default=None,
        help='JSON file of parameters merged over the defaults.',
    )

    argp.add_argument('--set',
        metavar='PATH=VALUE',
        dest='assignments',
        action=cli.ConfigAssignment,
        help=("Override one parameter, e.g. --set paths.results=/data/out.\n"
            "VALUE is read as JSON when possible. May be repeated."),
    )

    argp.add_argument('--pioneer',
        default=None,
        help='Path to the Pioneer executable. Default: search '
            'PIONEER_BINARY, PIONEER_PATH, ... and PATH.',
    )

    argp.add_argument('-d', '--workdir',
        default=None,
        help='Directory for the parameter and log files. '
            'Default: a new temporary directory.',
    )

    argp.add_argument('--config-dir',
        default=None,
        help='Directory of saved configurations. '
            'Default: $PIONEERTOOLS_CONFIG_DIR or the user config directory.',
    )

    argp.add_argument('--no-persist',
        action='store_true',
        help='Do not save this configuration for the next run.',
    )

    argp.add_argument('--terminal',
        action='store_true',
        help='Also open a terminal window that follows the log file.',
    )

    argp.add_argument('-q', '--quiet',
        action='store_true',
        help="Show progress only, not Pioneer's output lines.",
    )

    argp.add_argument('--dry-run',
        action='store_true',
        help=('List the progress stages of MODE and verify that Pioneer is\n'
            'executable and the run directory writable.'),
    )

    args = argp.parse_args()
    args.mode = args.MODE

    logger = logging.getLogger('pypioneer')
    logger.addHandler(logging.StreamHandler())
    if args.verbose > 1:
        logger.setLevel(logging.DEBUG)
    elif args.verbose > 0:
        logger.setLevel(logging.INFO)
    else:
        logger.setLevel(logging.WARNING)

    config = assemble_config(args)

    run = PioneerRun(args.mode, config,
        pioneer=args.pioneer,
        notifier=ConsoleNotifier(echo_lines=not args.quiet),
        workdir=args.workdir,
        config_dir=args.config_dir,
        persist=not args.no_persist,
        open_terminal=args.terminal,
    )

    if args.dry_run:
        print(format_stage_table(args.mode))
        print()
        (returncode, msgs) = run.check_tools()
        print('\n'.join(msgs))
        sys.exit(returncode)

    try:
        returncode = run.run()

    except SpawnError as e:
        print(f'Error: {e}', file=sys.stderr)
        sys.exit(127)

    except OSError as e:
        print(f'Error: cannot prepare the run: {e}', file=sys.stderr)
        sys.exit(1)

    except ExitError as e:
        sys.stderr.write('\n\n' + 80*'#' + '\n')
        sys.stderr.write(f'### ERROR: {e.message} ###\n')
        sys.stderr.write(f'### Last {len(e.tail)} lines of output: ###\n')
        sys.stderr.write(80*'#' + '\n')
        sys.stderr.writelines(l + '\n' for l in e.tail)
        sys.stderr.write(80*'#' + '\n')
        sys.stderr.write(f'### Full log: {run.log_path}\n\n')
        returncode = e.returncode if e.returncode and e.returncode > 0 else 1

    except KeyboardInterrupt:
        print(f'\nInterrupted. Log: {run.log_path}', file=sys.stderr)
        returncode = 130

    sys.exit(returncode)


if __name__ == '__main__':
    main()
