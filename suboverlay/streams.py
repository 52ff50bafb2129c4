"""
Subprocess plumbing shared by download and subtitle jobs.

Output is consumed as lazy, order-preserving line sequences (one per stream)
so parsing stays a plain line-in/event-out function.
"""
import asyncio
import codecs
import os
import sys
import signal
import logging
import subprocess
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from .constants import SUBPROCESS_CREATION_FLAGS, SUBPROCESS_ENV_OVERRIDES
from .exceptions import SubprocessLaunchError

logger = logging.getLogger(__name__)

LineHandler = Callable[[str, str], Awaitable[None]]


async def iter_lines(reader: asyncio.StreamReader, chunk_size: int = 64 * 1024) -> AsyncIterator[str]:
    """
    Yields decoded lines from a stream as they arrive.

    Bare carriage returns (progress bars redrawing in place) count as line
    breaks. Invalid UTF-8 is replaced rather than raised. The sequence ends
    at EOF and cannot be restarted.
    """
    decoder = codecs.getincrementaldecoder('utf-8')('replace')
    pending = ''
    while True:
        chunk = await reader.read(chunk_size)
        text = pending + decoder.decode(chunk, final=not chunk)
        # A trailing '\r' may be the first half of a '\r\n' split across chunks.
        held = ''
        if chunk and text.endswith('\r'):
            text, held = text[:-1], '\r'
        text = text.replace('\r\n', '\n').replace('\r', '\n')
        *lines, pending = text.split('\n')
        pending += held
        for line in lines:
            yield line
        if not chunk:
            if pending.strip('\r'):
                yield pending.strip('\r')
            return


def subprocess_env() -> Dict[str, str]:
    """The parent environment with the fetch tool forced to UTF-8 and no colors."""
    env = dict(os.environ)
    env.update(SUBPROCESS_ENV_OVERRIDES)
    if sys.platform != 'win32':
        env.setdefault('LANG', 'en_US.UTF-8')
        env.setdefault('LC_ALL', env['LANG'])
    return env


async def spawn(command: List[str]) -> asyncio.subprocess.Process:
    """
    Starts `command` in its own process group with piped stdout/stderr.

    Raises:
        SubprocessLaunchError: If the executable is missing or cannot be run.
    """
    kwargs: Dict[str, Any] = {}
    if sys.platform == 'win32':
        kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS | subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs['preexec_fn'] = os.setsid

    try:
        return await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
            env=subprocess_env(),
            **kwargs
        )
    except FileNotFoundError:
        raise SubprocessLaunchError(f"Executable not found: {command[0]}")
    except PermissionError:
        raise SubprocessLaunchError(f"Executable is not runnable: {command[0]}")
    except OSError as e:
        raise SubprocessLaunchError(f"Could not start {command[0]}: {e}") from e


def interrupt(process: asyncio.subprocess.Process) -> bool:
    """
    Sends an interrupt (SIGINT / CTRL+C) to the process group.

    Returns:
        False if the process was already gone.
    """
    if process.returncode is not None:
        return False
    try:
        if sys.platform == 'win32':
            process.send_signal(signal.CTRL_C_EVENT)
        else:
            os.killpg(os.getpgid(process.pid), signal.SIGINT)
        return True
    except (ProcessLookupError, OSError) as e:
        logger.debug(f"Interrupt of PID {process.pid} failed: {e}")
        return False


async def pump_output(process: asyncio.subprocess.Process, on_line: LineHandler,
                      collected: Optional[List[str]] = None):
    """
    Feeds every stdout/stderr line to `on_line(stream, line)` until both streams close.

    Lines of one stream arrive in order; the two streams are interleaved as
    they are produced. When `collected` is given, raw lines are appended to it.
    """
    async def pump(reader: Optional[asyncio.StreamReader], stream: str):
        if reader is None:
            return
        async for line in iter_lines(reader):
            if collected is not None:
                collected.append(line)
            await on_line(stream, line)

    await asyncio.gather(pump(process.stdout, 'stdout'), pump(process.stderr, 'stderr'))


def kill(process: asyncio.subprocess.Process):
    """Forcibly terminates the process group; a process that is already gone is ignored."""
    if process.returncode is not None:
        return
    try:
        if sys.platform == 'win32':
            process.kill()
        else:
            os.killpg(os.getpgid(process.pid), signal.SIGKILL)
    except (ProcessLookupError, OSError) as e:
        logger.debug(f"Kill of PID {process.pid} failed: {e}")
