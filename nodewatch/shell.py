"""Bounded shell execution.

Runs one command under the platform default shell, captures stdout and stderr
as a single stream of lines, and stops the process early when either the line
limit or the wall-clock timeout is hit. Both triggers end up in
``ShellProcess.terminate``, which kills at most once.

On POSIX the shell is started in its own session so that termination can take
down the whole process group; otherwise a backgrounded grandchild could keep
the output pipe open long after the shell itself is gone.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

READ_CHUNK = 4096
# Unterminated output longer than this is emitted as a line of its own.
MAX_LINE_CHARS = 64 * 1024
DEFAULT_KILL_GRACE = 5.0

REASON_TIMEOUT = "timeout"
REASON_LINE_LIMIT = "line_limit"
REASON_CANCELLED = "cancelled"


def _spawn_kwargs() -> dict[str, Any]:
    if os.name == "posix":
        return {"start_new_session": True}
    return {}


class ShellProcess:
    """One bounded run of a shell command.

    Call ``run()`` once. ``lines`` holds everything accepted so far, in
    arrival order, and never exceeds ``max_lines`` when that bound is set.
    """

    def __init__(
        self,
        command: str,
        max_lines: int = 0,
        timeout: float | None = None,
        kill_grace: float = DEFAULT_KILL_GRACE,
        on_line: Callable[[str], None] | None = None,
    ) -> None:
        self.command = command
        self.max_lines = max_lines
        self.timeout = timeout
        self.kill_grace = kill_grace
        self.on_line = on_line
        self.terminated_reason: str | None = None
        self._lines: list[str] = []
        self._partial: list[str] = []
        self._partial_len = 0
        self._pending_cr = False
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._proc: asyncio.subprocess.Process | None = None
        self._stop_requested = asyncio.Event()

    @property
    def lines(self) -> list[str]:
        return list(self._lines)

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc else None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    # -------------------------------------------------------------------------
    # Termination
    # -------------------------------------------------------------------------

    def terminate(self, reason: str = "requested") -> None:
        """Kill the process (group). Only the first call has any effect."""
        if self._stop_requested.is_set():
            return
        self._stop_requested.set()
        self.terminated_reason = reason
        self._kill()

    def _kill(self) -> None:
        proc = self._proc
        if proc is None:
            return

        logger.info("Terminating pid %s (%s): %s", proc.pid, self.terminated_reason, self.command)
        if os.name == "posix":
            # The shell may already be gone while its children still hold the pipe.
            try:
                os.killpg(proc.pid, signal.SIGKILL)
                return
            except ProcessLookupError:
                return
            except PermissionError:
                # Some platforms refuse killpg on a group whose leader already
                # became a zombie; fall back to the leader itself.
                pass
        if proc.returncode is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            pass

    # -------------------------------------------------------------------------
    # Output handling
    # -------------------------------------------------------------------------

    def _accept(self, line: str) -> bool:
        """Store one line. Returns False once the line limit is reached."""
        if self.max_lines and len(self._lines) >= self.max_lines:
            return False
        self._lines.append(line)
        if self.on_line:
            self.on_line(line)
        if self.max_lines and len(self._lines) >= self.max_lines:
            self.terminate(REASON_LINE_LIMIT)
            return False
        return True

    def _take_partial(self) -> str:
        line = "".join(self._partial)
        self._partial = []
        self._partial_len = 0
        return line

    def _feed(self, text: str, final: bool = False) -> bool:
        if self._pending_cr:
            text = "\r" + text
            self._pending_cr = False
        if not final and text.endswith("\r"):
            # may be the first half of a \r\n split across reads
            text = text[:-1]
            self._pending_cr = True
        *complete, tail = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
        if complete:
            complete[0] = self._take_partial() + complete[0]
        if tail:
            self._partial.append(tail)
            self._partial_len += len(tail)
        if final or self._partial_len >= MAX_LINE_CHARS:
            complete.append(self._take_partial())
        for line in complete:
            if not line.strip():
                continue
            if not self._accept(line):
                return False
        return True

    async def _read_output(self, stream: asyncio.StreamReader) -> None:
        while True:
            chunk = await stream.read(READ_CHUNK)
            if not chunk:
                self._feed(self._decoder.decode(b"", final=True), final=True)
                return
            if not self._feed(self._decoder.decode(chunk)):
                return

    async def _until_stopped(self, aw: Awaitable[Any]) -> None:
        """Await ``aw``; after termination is requested give it only kill_grace more seconds."""
        task = asyncio.ensure_future(aw)
        stopper = asyncio.ensure_future(self._stop_requested.wait())
        try:
            await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
            if not task.done():
                await asyncio.wait({task}, timeout=self.kill_grace)
        finally:
            for t in (task, stopper):
                if not t.done():
                    t.cancel()
        if task.done() and not task.cancelled():
            task.result()

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def run(self) -> list[str]:
        try:
            self._proc = await asyncio.create_subprocess_shell(
                self.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                **_spawn_kwargs(),
            )
        except (OSError, ValueError) as e:
            logger.warning("Failed to start command %r: %s", self.command, e)
            return [f"Failed to start command: {e}"]

        logger.debug("Started pid %s: %s", self._proc.pid, self.command)
        if self._stop_requested.is_set():
            self._kill()
        timer = None
        if self.timeout and self.timeout > 0:
            timer = asyncio.get_running_loop().call_later(self.timeout, self.terminate, REASON_TIMEOUT)

        try:
            await self._until_stopped(self._read_output(self._proc.stdout))
            # stdout can close before the process exits; the timer still applies.
            await self._until_stopped(self._proc.wait())
        except asyncio.CancelledError:
            self.terminate(REASON_CANCELLED)
            raise
        finally:
            if timer is not None:
                timer.cancel()

        if self._proc.returncode is None:
            logger.warning(
                "pid %s still running %.1fs after termination; returning captured output",
                self._proc.pid,
                self.kill_grace,
            )
        logger.debug(
            "pid %s finished: returncode=%s lines=%d terminated=%s",
            self._proc.pid,
            self._proc.returncode,
            len(self._lines),
            self.terminated_reason,
        )
        return self.lines


class BoundedShellExecutor:
    """Factory for ShellProcess runs sharing one set of bounds."""

    def __init__(self, max_lines: int = 0, timeout: float | None = None, kill_grace: float = DEFAULT_KILL_GRACE) -> None:
        self.max_lines = max_lines
        self.timeout = timeout
        self.kill_grace = kill_grace

    async def run(self, command: str, on_line: Callable[[str], None] | None = None) -> list[str]:
        proc = ShellProcess(
            command,
            max_lines=self.max_lines,
            timeout=self.timeout,
            kill_grace=self.kill_grace,
            on_line=on_line,
        )
        return await proc.run()


async def run_bounded(
    command: str,
    max_lines: int = 0,
    timeout: float | None = None,
    kill_grace: float = DEFAULT_KILL_GRACE,
) -> list[str]:
    return await ShellProcess(command, max_lines=max_lines, timeout=timeout, kill_grace=kill_grace).run()
