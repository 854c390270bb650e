"""Event payloads and sinks for reporting a Pioneer run to the outside world.

A run emits five kinds of events. Each is a name plus a namedtuple payload:

    pioneer-run-started       -> RunStarted
    pioneer-log               -> LogLine
    pioneer-progress          -> Progress
    pioneer-run-complete      -> RunComplete
    pioneer-terminal-warning  -> TerminalWarning

A notifier is anything with an ``emit(event, payload)`` method. The run treats
every notifier as unreliable: if ``emit`` raises, the exception is logged and
the run carries on.
"""
import sys
import enum
import logging
from collections import namedtuple

__docformat__ = 'numpy'

logger = logging.getLogger(__name__)

RUN_STARTED = 'pioneer-run-started'
LOG_LINE = 'pioneer-log'
PROGRESS = 'pioneer-progress'
RUN_COMPLETE = 'pioneer-run-complete'
TERMINAL_WARNING = 'pioneer-terminal-warning'

RunStarted = namedtuple('RunStarted',
    'mode log_path config_path persisted_path'.split())
LogLine = namedtuple('LogLine', 'mode stream line'.split())
Progress = namedtuple('Progress',
    'mode stage_key stage_label progress'.split())
RunComplete = namedtuple('RunComplete',
    'mode success exit_code message'.split())
TerminalWarning = namedtuple('TerminalWarning', ['message',])


class NotifyError(RuntimeError):
    """Raised by a notifier that refuses an event"""
    pass


def payload_to_dict(payload):
    """Return a JSON-ready `dict` for any event payload.

    Enum values (the run mode) are replaced by their wire value.
    """
    d = payload._asdict()
    for k, v in d.items():
        if isinstance(v, enum.Enum):
            d[k] = v.value
    return d


class BaseNotifier:
    """A notifier that discards every event.

    Subclasses override `emit`.
    """
    def emit(self, event, payload):
        pass


class CallbackNotifier(BaseNotifier):
    """Hand each event to a callable, e.g. a GUI shell's event bus.

    Parameters
    ----------
    func : callable
        Called as ``func(event, payload)``.
    as_dict : bool, optional
        Pass the payload through `payload_to_dict` first, by default False.
    """
    def __init__(self, func, as_dict=False):
        self._func = func
        self._as_dict = as_dict

    def emit(self, event, payload):
        if self._as_dict:
            payload = payload_to_dict(payload)
        self._func(event, payload)


class ConsoleNotifier(BaseNotifier):
    """Echo a run to a text stream.

    Raw log lines are written as they arrive; stage changes and the final
    status are written as short summary lines.
    """

    def __init__(self, stream=None, echo_lines=True):
        """
        Parameters
        ----------
        stream : file-like, optional
            Destination, by default `sys.stdout` at the time of each write.
        echo_lines : bool, optional
            If False, only summary lines are written, by default True.
        """
        self._stream = stream
        self.echo_lines = echo_lines

    @property
    def stream(self):
        return self._stream if self._stream is not None else sys.stdout

    def _write(self, s):
        self.stream.write(s + '\n')
        self.stream.flush()

    def emit(self, event, payload):
        if event == LOG_LINE:
            if self.echo_lines:
                self._write(payload.line)

        elif event == PROGRESS:
            self._write(
                f'[{payload.progress:5.1f}%] {payload.stage_label}')

        elif event == RUN_STARTED:
            self._write(80*'=')
            self._write(f'Pioneer {payload.mode.subcommand} started')
            self._write(f'  config: {payload.config_path}')
            self._write(f'  log:    {payload.log_path}')
            if payload.persisted_path:
                self._write(f'  saved:  {payload.persisted_path}')
            self._write(80*'=')

        elif event == RUN_COMPLETE:
            if payload.success:
                self._write(f'Pioneer finished (code {payload.exit_code})')
            else:
                self._write(f'FAILED: {payload.message}')

        elif event == TERMINAL_WARNING:
            self._write(f'WARNING: {payload.message}')

        else:
            logger.debug(f'Ignoring unknown event {event}')
