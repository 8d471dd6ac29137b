"""
Spawn a harness CLI and stream its JSON-lines output as harness events.

Adapters supply a ``parse_line`` function that turns one stdout line into
zero or more events, and an optional ``on_exit`` hook that decides what (if
anything) to report once the process exits. Everything else is shared:

- stderr is forwarded line by line as StderrEvent and accumulated
- malformed stdout lines are skipped
- cancellation sends SIGTERM, escalating to SIGKILL after a grace period
- the process is always terminated when the stream is closed
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from collections.abc import AsyncIterator, Callable, Iterable
from typing import Any

from .cancellation import CancellationToken
from .models import ErrorEvent, HarnessErrorCode, HarnessEvent, StderrEvent

logger = logging.getLogger(__name__)

IS_UNIX = sys.platform != "win32"

# Seconds between SIGTERM and SIGKILL
KILL_GRACE_SECONDS = 5.0

# Assistant messages with large tool results arrive as single lines
STREAM_LIMIT = 16 * 1024 * 1024

ParseLine = Callable[[str], Iterable[HarnessEvent]]
OnExit = Callable[[int, str], "HarnessEvent | None"]

_DONE = object()


async def ensure_process_terminated(
    process: asyncio.subprocess.Process,
    grace_seconds: float = KILL_GRACE_SECONDS,
) -> None:
    """
    Terminate a process, escalating from SIGTERM to SIGKILL.

    Args:
        process: The subprocess to terminate.
        grace_seconds: How long to wait after SIGTERM before force killing.
    """
    if process.returncode is not None:
        return

    try:
        _send_signal(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=grace_seconds)
            return
        except asyncio.TimeoutError:
            logger.debug(f"Process {process.pid} ignored SIGTERM, force killing")

        _send_signal(process, signal.SIGKILL if IS_UNIX else signal.SIGTERM)
        await asyncio.wait_for(process.wait(), timeout=2.0)
    except (ProcessLookupError, OSError) as e:
        logger.debug(f"Process termination skipped (already dead): {e}")
    except asyncio.TimeoutError:
        logger.warning(f"Process {process.pid} did not exit after SIGKILL")


def _send_signal(process: asyncio.subprocess.Process, sig: int) -> None:
    if process.returncode is not None:
        return
    if IS_UNIX:
        # Process group id equals pid because of start_new_session=True
        os.killpg(os.getpgid(process.pid), sig)
    elif sig == signal.SIGTERM:
        process.terminate()
    else:
        process.kill()


async def spawn_jsonl(
    command: str,
    args: list[str],
    *,
    token: CancellationToken,
    parse_line: ParseLine,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    on_exit: OnExit | None = None,
) -> AsyncIterator[HarnessEvent]:
    """
    Run ``command`` and yield the events parsed from its stdout.

    Args:
        command: Executable to run.
        args: Command-line arguments.
        token: Cancellation token; cancelling it terminates the process.
        parse_line: Converts one non-empty stdout line into events.
        cwd: Working directory for the process.
        env: Extra environment variables merged over ``os.environ``.
        on_exit: Called with (exit_code, stderr) after a normal exit. Its
            return value, if any, is the final event. Without it a non-zero
            exit is reported as a process_crashed error.

    Yields:
        HarnessEvent instances in the order they were produced.
    """
    if token.cancelled:
        yield ErrorEvent("Aborted before start", HarnessErrorCode.ABORTED)
        return

    process_env = None
    if env:
        process_env = os.environ.copy()
        process_env.update(env)

    kwargs: dict[str, Any] = {
        "stdin": asyncio.subprocess.DEVNULL,
        "stdout": asyncio.subprocess.PIPE,
        "stderr": asyncio.subprocess.PIPE,
        "cwd": cwd,
        "env": process_env,
        "limit": STREAM_LIMIT,
    }
    if IS_UNIX:
        kwargs["start_new_session"] = True

    logger.debug(f"Spawning {command} {' '.join(args)}")
    try:
        process = await asyncio.create_subprocess_exec(command, *args, **kwargs)
    except OSError as e:
        yield ErrorEvent(f"Failed to start {command}: {e}", HarnessErrorCode.PROCESS_CRASHED)
        return

    queue: asyncio.Queue[Any] = asyncio.Queue()
    stderr_lines: list[str] = []
    terminator: asyncio.Task[None] | None = None

    async def pump_stdout() -> None:
        assert process.stdout is not None
        async for raw in process.stdout:
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                events = list(parse_line(line))
            except Exception as e:
                logger.debug(f"Skipping unparseable line from {command}: {e}")
                continue
            for event in events:
                queue.put_nowait(event)

    async def pump_stderr() -> None:
        assert process.stderr is not None
        async for raw in process.stderr:
            line = raw.decode("utf-8", errors="replace").rstrip("\n")
            stderr_lines.append(line)
            if line.strip():
                queue.put_nowait(StderrEvent(line))

    async def watch() -> None:
        try:
            await asyncio.gather(pump_stdout(), pump_stderr())
            code = await process.wait()
            stderr = "\n".join(stderr_lines)
            if token.cancelled:
                queue.put_nowait(ErrorEvent("Aborted", HarnessErrorCode.ABORTED))
            elif on_exit is not None:
                if (final := on_exit(code, stderr)) is not None:
                    queue.put_nowait(final)
            elif code != 0:
                message = stderr.strip() or f"Process exited with code {code}"
                queue.put_nowait(ErrorEvent(message, HarnessErrorCode.PROCESS_CRASHED))
        except Exception as e:
            logger.exception(f"Error while reading {command} output")
            queue.put_nowait(ErrorEvent(str(e), HarnessErrorCode.PROCESS_CRASHED))
        finally:
            queue.put_nowait(_DONE)

    def on_cancel() -> None:
        nonlocal terminator
        if terminator is None:
            terminator = asyncio.ensure_future(ensure_process_terminated(process))

    watcher = asyncio.create_task(watch())
    remove_callback = token.add_callback(on_cancel)
    try:
        while True:
            item = await queue.get()
            if item is _DONE:
                break
            yield item
    finally:
        remove_callback()
        await ensure_process_terminated(process)
        if not watcher.done():
            watcher.cancel()
        await asyncio.gather(watcher, return_exceptions=True)
        if terminator is not None:
            await asyncio.gather(terminator, return_exceptions=True)
