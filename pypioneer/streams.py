"""Merge a child process' stdout and stderr into one line stream.

Both pipes must be drained at the same time. Reading one pipe to completion
before the other deadlocks as soon as the child fills the OS buffer of the
pipe nobody is reading.

`multiplex` runs one pump task per pipe. Each pump pushes ``(stream, line)``
tuples onto a shared queue, and the consumer iterates over them::

    async for stream, line in multiplex(proc.stdout, proc.stderr):
        ...

Lines from one pipe arrive in order. Lines from different pipes interleave in
arrival order. The iteration ends only after both pipes have closed.
"""
import asyncio
import logging

__docformat__ = 'numpy'

logger = logging.getLogger(__name__)

STDOUT = 'stdout'
STDERR = 'stderr'

_END = None


def decode_line(raw):
    """Return `raw` bytes as text without its line terminator"""
    s = raw.decode('utf-8', errors='replace')
    if s.endswith('\n'):
        s = s[:-1]
    if s.endswith('\r'):
        s = s[:-1]
    return s


async def _pump(reader, label, queue):
    """Move lines from `reader` to `queue` until EOF.

    A line longer than the reader's limit is dropped whole. Its bytes may
    arrive over many reads; everything up to and including the next newline
    is discarded.
    """
    nlines = 0
    discarding = False
    while True:
        eof = False
        try:
            raw = await reader.readuntil(b'\n')
        except asyncio.IncompleteReadError as e:
            raw = e.partial
            eof = True
        except asyncio.LimitOverrunError as e:
            if not discarding:
                logger.warning(
                    f'{label}: dropping line longer than the read limit')
                discarding = True
            await reader.readexactly(e.consumed)
            continue
        except OSError as e:
            logger.error(f'{label}: error reading pipe: {e}')
            break

        if discarding:
            discarding = False
        elif raw:
            nlines += 1
            queue.put_nowait((label, decode_line(raw)))

        if eof:
            break

    logger.debug(f'{label}: closed after {nlines} lines')


async def multiplex(stdout, stderr):
    """Yield ``(stream, line)`` from two `asyncio.StreamReader` objects.

    Parameters
    ----------
    stdout, stderr : asyncio.StreamReader
        The child's pipes. Either may be None, in which case it is treated as
        already closed.

    Yields
    ------
    tuple of (str, str)
        ``stream`` is ``'stdout'`` or ``'stderr'``; ``line`` is the decoded
        text without its newline.
    """
    queue = asyncio.Queue()

    pumps = [
        asyncio.ensure_future(_pump(reader, label, queue))
        for reader, label in ((stdout, STDOUT), (stderr, STDERR))
        if reader is not None
    ]

    async def _close_when_drained():
        try:
            await asyncio.gather(*pumps)
        finally:
            queue.put_nowait(_END)

    closer = asyncio.ensure_future(_close_when_drained())

    try:
        while True:
            item = await queue.get()
            if item is _END:
                break
            yield item
    finally:
        for p in pumps:
            p.cancel()
        try:
            await closer
        except asyncio.CancelledError:
            if not closer.cancelled():
                raise
