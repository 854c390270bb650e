"""Tools for running and supervising Pioneer.

This module provides the `PioneerRun` class, which is responsible for:

1. Writing the run's parameter file and log file into a per-run directory.
2. Launching Pioneer (``pioneer predict|search <params.json>``) with Python's
   `asyncio` and draining its stdout and stderr concurrently.
3. Appending every output line to the log and inferring coarse progress from
   it (see `pypioneer.stages`).
4. Reporting start, lines, progress and completion to a notifier (see
   `pypioneer.notify`), and keeping a bounded buffer of recent output for
   dumping when Pioneer fails.

Starting a run returns as soon as Pioneer is launched; the output is processed
by a separate supervising task:

>>> run = PioneerRun(RunMode.SEARCH_RUN, config, notifier=my_notifier)
>>> started = await run.start()      # RunStarted(mode, log_path, ...)
>>> returncode = await run.wait()    # raises ExitError on failure

or, synchronously, ``run.run()``.
"""
import os
import sys
import time
import json
import enum
import shutil
import asyncio
import datetime
import logging
import tempfile
import subprocess
from collections import deque
from pathlib import Path

from . import notify
from .binary import SpawnError, locate_pioneer_binary, tool_command
from .config import persist_config
from .stages import RunMode, StageTracker
from .streams import multiplex

__docformat__ = 'numpy'

logger = logging.getLogger(__name__)

STREAM_LIMIT = 2**20
'Longest output line, in bytes, that will be read from Pioneer'

TAIL_LINES = 200
'Number of recent output lines kept for error reports'


class ExitError(RuntimeError):
    """Pioneer finished with a non-zero or abnormal exit status.

    Attributes
    ----------
    returncode : int or None
        As reported by the process; negative if killed by a signal.
    message : str
        Short human-readable description.
    tail : list of str
        The last lines of output, formatted as in the log file.
    """
    def __init__(self, returncode, message, tail=()):
        super().__init__(message)
        self.returncode = returncode
        self.message = message
        self.tail = list(tail)


class RunStatus(enum.Enum):
    NOT_STARTED = 'not started'
    STARTING = 'starting'
    RUNNING = 'running'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'


async def launch(tool, subcommand, config_path, limit=STREAM_LIMIT):
    """Start ``tool subcommand config_path`` with piped output.

    Parameters
    ----------
    tool : str, Path or list of str
        Pioneer executable, or a command prefix that runs it.
    subcommand : str
        E.g. ``'predict'`` or ``'search'``.
    config_path : str or Path
        The JSON parameter file; Pioneer's only positional argument.
    limit : int, optional
        Buffer limit of the returned process' stream readers.

    Returns
    -------
    asyncio.subprocess.Process
        With ``stdout`` and ``stderr`` readable; ``stdin`` is not connected.

    Raises
    ------
    SpawnError
        If the operating system cannot start the executable.
    """
    args = tool_command(tool) + [subcommand, os.fspath(config_path)]
    logger.debug('Launching: ' + ' '.join(args))

    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=limit,
        )
    except OSError as e:
        raise SpawnError(f'Failed to launch {args[0]}: {e}') from e

    logger.info(f'Pioneer {subcommand} started with pid {proc.pid}')
    return proc


# Terminal programs tried, in order, on Linux; and the arguments placed
# before the shell command for each.
_LINUX_TERMINALS = (
    ('x-terminal-emulator', ['-e']),
    ('gnome-terminal', ['--']),
    ('konsole', ['--noclose', '-e']),
    ('xfce4-terminal', ['--hold', '-e']),
    ('mate-terminal', ['--']),
    ('xterm', ['-hold', '-e']),
)


def open_terminal_tail(log_path):
    """Open a terminal window that follows `log_path`.

    Raises
    ------
    RuntimeError
        If no suitable terminal is available or it cannot be started.
    """
    log_path = str(log_path)

    try:
        if sys.platform.startswith('win'):
            command = ("Start-Process powershell -ArgumentList "
                f"'-NoExit','-Command','Get-Content -Path \"{log_path}\" -Wait'")
            subprocess.Popen(['powershell', '-NoProfile', '-Command', command])
            return

        if sys.platform == 'darwin':
            escaped = log_path.replace('"', '\\"')
            script = ('tell application "Terminal" to do script '
                f'"tail -n +1 -f {escaped}"')
            subprocess.Popen(['osascript', '-e', script])
            return

        tail_command = (f"tail -n +1 -f '{log_path}' ; "
            'read -p "Press Enter to close..." _')
        for term, term_args in _LINUX_TERMINALS:
            exe = shutil.which(term)
            if exe:
                subprocess.Popen(
                    [exe] + term_args + ['bash', '-lc', tail_command])
                return

    except OSError as e:
        raise RuntimeError(str(e)) from e

    raise RuntimeError('No compatible terminal found')


class PioneerRun():
    """Run Pioneer once, in one mode, with one configuration."""

    def __init__(self, mode, config,
            pioneer=None,
            notifier=None,
            workdir=None,
            config_dir=None,
            persist=True,
            open_terminal=True,
            ):
        """
        Parameters
        ----------
        mode : RunMode or str
            Which Pioneer operation to run.
        config : dict
            The full parameter tree handed to Pioneer.
        pioneer : str, Path or list of str, optional
            Pioneer command. Located with `locate_pioneer_binary` at start if
            omitted.
        notifier : object with an ``emit(event, payload)`` method, optional
            Receives run events. By default events are discarded.
        workdir : str or Path, optional
            Directory for the parameter and log files. By default a fresh
            temporary directory is made for each run and is left in place
            afterwards so the log can be inspected.
        config_dir : str or Path, optional
            Where the submitted configuration is persisted. See
            `pypioneer.config.config_storage_path`.
        persist : bool, optional
            Save the submitted configuration for next time, by default True.
        open_terminal : bool, optional
            Try to open a terminal window tailing the log, by default True.
        """
        if not isinstance(mode, RunMode):
            mode = RunMode.from_string(mode)

        self.mode = mode
        self.config = config
        self.pioneer = pioneer
        self.notifier = notifier if notifier is not None \
                else notify.BaseNotifier()
        self.workdir = workdir
        self.config_dir = config_dir
        self.persist = persist
        self.open_terminal = open_terminal

        self.status = RunStatus.NOT_STARTED
        self.config_path = None
        self.log_path = None
        self.persisted_path = None
        self.returncode = None
        self.process = None
        self.tail = deque(maxlen=TAIL_LINES)
        self.tracker = StageTracker(mode.stages)
        self.invoke_time = None

        self._log_fp = None
        self._log_failed = False
        self._task = None

    # --- event helpers ---

    def _notify(self, event, payload):
        """Deliver an event; a failing notifier never stops the run"""
        try:
            self.notifier.emit(event, payload)
        except Exception as e:
            logger.warning(f'Notifier rejected {event}: {e}')

    def _send_stage_update(self):
        stage = self.tracker.stage
        self._notify(notify.PROGRESS, notify.Progress(
            mode=self.mode,
            stage_key=stage.key,
            stage_label=stage.label,
            progress=self.tracker.progress,
        ))

    def _append_log(self, stream, line):
        if self._log_fp is None:
            return
        try:
            self._log_fp.write(f'{stream}: {line}\n')
            self._log_fp.flush()
        except (OSError, ValueError) as e:
            if not self._log_failed:
                logger.warning(f'Cannot append to {self.log_path}: {e}')
                self._log_failed = True

    # --- lifecycle ---

    def _prepare_files(self):
        """Write the parameter file, persist it and create the log file"""
        self.invoke_time = datetime.datetime.now()

        if self.workdir is None:
            self.workdir = tempfile.mkdtemp(prefix='pioneer_run_')
        workdir = Path(self.workdir)
        workdir.mkdir(parents=True, exist_ok=True)

        self.config_path = workdir / self.mode.config_filename
        with open(self.config_path, 'w', encoding='utf-8') as fout:
            json.dump(self.config, fout, indent=2)

        if self.persist:
            self.persisted_path = persist_config(
                self.mode, self.config, self.config_dir)

        self.log_path = workdir / f'pioneer_run_{int(time.time())}.log'
        self._log_fp = open(self.log_path, 'w', encoding='utf-8')

    async def start(self):
        """Launch Pioneer and begin supervising it.

        Returns
        -------
        pypioneer.notify.RunStarted
            The paths actually used. By the time this returns, the
            ``pioneer-run-started`` event has been emitted and no output has
            been processed yet.

        Raises
        ------
        SpawnError
            If Pioneer cannot be found or started.
        OSError
            If the parameter or log file cannot be written.
        RuntimeError
            If this run was already started.
        """
        if self.status is not RunStatus.NOT_STARTED:
            raise RuntimeError(f'{self.getIdStr()} was already started')

        self.status = RunStatus.STARTING
        try:
            tool = self.pioneer if self.pioneer is not None \
                    else locate_pioneer_binary()
            self._prepare_files()
            proc = await launch(tool, self.mode.subcommand, self.config_path)
            self.process = proc
        except BaseException:
            self.status = RunStatus.FAILED
            self._close_log()
            raise

        payload = notify.RunStarted(
            mode=self.mode,
            log_path=str(self.log_path),
            config_path=str(self.config_path),
            persisted_path=str(self.persisted_path)
                if self.persisted_path else None,
        )
        self._notify(notify.RUN_STARTED, payload)

        if self.open_terminal:
            try:
                open_terminal_tail(self.log_path)
            except RuntimeError as e:
                self._notify(notify.TERMINAL_WARNING, notify.TerminalWarning(
                    f'Could not launch external terminal: {e}'))

        self.status = RunStatus.RUNNING
        self._task = asyncio.ensure_future(self._supervise(proc))
        return payload

    async def _supervise(self, proc):
        """Consume Pioneer's output until it exits; return its exit code"""
        try:
            self._send_stage_update()

            async for stream, line in multiplex(proc.stdout, proc.stderr):
                self._append_log(stream, line)
                self.tail.append(f'{stream}: {line}')
                self._notify(notify.LOG_LINE, notify.LogLine(
                    mode=self.mode, stream=stream, line=line))

                if self.tracker.feed(line) is not None:
                    self._send_stage_update()

            returncode = await proc.wait()

        except asyncio.CancelledError:
            if proc.returncode is None:
                logger.warning(f'Cancelled; killing Pioneer (pid {proc.pid})')
                proc.kill()
                await proc.wait()
            self.status = RunStatus.FAILED
            raise

        finally:
            self._close_log()

        self.returncode = returncode

        if returncode == 0:
            self.status = RunStatus.SUCCEEDED
            self.tracker.complete()
            self._send_stage_update()
            self._notify(notify.RUN_COMPLETE, notify.RunComplete(
                mode=self.mode, success=True, exit_code=returncode,
                message=None))
            logger.info(f'Pioneer finished: {self.getIdStr()}')
            return returncode

        self.status = RunStatus.FAILED
        exit_code = returncode if returncode is not None and returncode >= 0 \
                else None
        message = 'Pioneer exited with status ' \
            + str(exit_code if exit_code is not None else -1)
        self._notify(notify.RUN_COMPLETE, notify.RunComplete(
            mode=self.mode, success=False, exit_code=exit_code,
            message=message))
        logger.info(f'FAILED (code {returncode}): {self.getIdStr()}')
        raise ExitError(returncode, message, self.tail)

    def _close_log(self):
        if self._log_fp is not None:
            try:
                self._log_fp.close()
            except OSError as e:
                logger.warning(f'Error closing {self.log_path}: {e}')
            self._log_fp = None

    async def wait(self):
        """Wait for Pioneer to finish.

        Returns
        -------
        int
            Pioneer's exit code, 0.

        Raises
        ------
        ExitError
            If Pioneer exited with any other status.
        """
        if self._task is None:
            raise RuntimeError(f'{self.getIdStr()} has not been started')
        return await self._task

    async def _run(self):
        await self.start()
        return await self.wait()

    def run(self):
        """Start Pioneer, wait for it, and return the exit code.

        Raises `ExitError` on failure, like `wait`.
        """
        return asyncio.run(self._run())

    @property
    def done(self):
        return self.status in (RunStatus.SUCCEEDED, RunStatus.FAILED)

    def check_tools(self):
        """Check that Pioneer is executable and the work area is writable.

        Returns
        -------
        tuple of (int, list of str)
            - returncode: 0 if everything is fine, 1 if there is a problem.
            - msgs: A list of messages detailing the status of each check.
        """
        msgs = []
        returncode = 0

        try:
            tool = tool_command(self.pioneer if self.pioneer is not None
                    else locate_pioneer_binary())
        except SpawnError as e:
            msgs.append(f'NOT OK. {e}')
            returncode = 1
        else:
            exe = shutil.which(tool[0]) or tool[0]
            ok = os.access(exe, os.X_OK)
            if not ok:
                returncode = 1
            msgs.append(f'{"OK" if ok else "NOT OK":7} {" ".join(tool)}')

        wdir = Path(self.workdir) if self.workdir is not None \
                else Path(tempfile.gettempdir())
        # a work directory that does not exist yet will be created in a
        # writable parent
        while not wdir.exists() and wdir.parent != wdir:
            wdir = wdir.parent
        if os.access(wdir, os.W_OK):
            msgs.append(f'OK.     {wdir} is writable.')
        else:
            msgs.append(f'NOT OK. {wdir} is not writable.')
            returncode = 1

        return (returncode, msgs)

    def getIdStr(self):
        """Returns a formatted string identifying this run."""
        s = f'Pioneer {self.mode.subcommand} ({self.mode.value})'
        if self.invoke_time is not None:
            s += f' @ {self.invoke_time.strftime("%Y-%m-%d %H:%M:%S")}'
        return s

    def __str__(self):
        lines = [self.getIdStr(), f'status: {self.status.value}',]
        if self.config_path:
            lines.append(f'config: {self.config_path}')
        if self.log_path:
            lines.append(f'log: {self.log_path}')
        return '\n'.join(lines)
