"""Supervision of the claude CLI as an asyncio subprocess.

The CLI is run in print mode with ``--output-format stream-json``, which emits
one JSON object per line:

- ``{"type": "system", "subtype": "init", ...}``: skipped.
- ``{"type": "assistant", "message": {"content": [...]}}``: text blocks are
  forwarded as :class:`TextChunk`.
- ``{"type": "result", "usage": {...}, "result": "..."}``: the terminal
  :class:`UsageChunk`.

A :class:`ProcessHandle` owns exactly one child. Leaving its ``async with``
block always terminates and reaps the child, whatever the exit path.
"""

import asyncio
import json
import logging
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional, Union

from .core import ChatLimits, Usage
from .errors import OutputTooLarge, ProcessFailed, ProcessKilled, ProcessTimeout, SpawnError

logger = logging.getLogger(__name__)

STREAM_ARGS = ["-p", "--output-format", "stream-json", "--verbose"]

_STDERR_TAIL = 4096


@dataclass
class TextChunk:
    text: str


@dataclass
class UsageChunk:
    usage: Usage
    result: str = ""
    is_error: bool = False
    cli_session_id: Optional[str] = None


Chunk = Union[TextChunk, UsageChunk]


def parse_stream_line(line: bytes) -> Chunk | None:
    """Convert one stream-json line into a chunk, or None if it carries none."""
    text = line.decode("utf-8", errors="replace").strip()
    if not text:
        return None
    try:
        entry = json.loads(text)
    except json.JSONDecodeError:
        logger.debug("Skipping non-JSON output line: %.100s", text)
        return None
    if not isinstance(entry, dict):
        return None

    entry_type = entry.get("type")

    if entry_type == "assistant":
        content = (entry.get("message") or {}).get("content", [])
        if isinstance(content, str):
            return TextChunk(content) if content else None
        parts = [
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        joined = "".join(parts)
        return TextChunk(joined) if joined else None

    if entry_type == "result":
        usage = entry.get("usage") or {}
        return UsageChunk(
            usage=Usage(
                input_tokens=int(usage.get("input_tokens") or 0),
                output_tokens=int(usage.get("output_tokens") or 0),
                cost_usd=entry.get("total_cost_usd", entry.get("cost_usd")),
            ),
            result=entry.get("result") or "",
            is_error=bool(entry.get("is_error")) or str(entry.get("subtype", "")).startswith("error"),
            cli_session_id=entry.get("session_id"),
        )

    return None


class ProcessAdapter:
    """Spawns claude CLI processes under the configured limits."""

    def __init__(self, command: list[str], limits: ChatLimits | None = None):
        if not command:
            raise ValueError("command must not be empty")
        self.command = list(command)
        self.limits = limits or ChatLimits()

    async def start(self, args: list[str], cwd: Union[str, Path, None] = None) -> "ProcessHandle":
        argv = [*self.command, *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
                start_new_session=True,
                # A single line longer than the output ceiling fails readline().
                limit=max(self.limits.max_output_bytes + 1, 2 ** 16),
            )
        except OSError as e:
            raise SpawnError(f"Failed to start {argv[0]}: {e}") from e

        logger.info("Spawned %s (pid %d) in %s", argv[0], process.pid, cwd or os.getcwd())
        return ProcessHandle(process, self.limits)


class ProcessHandle:
    """Exclusive owner of one running CLI process."""

    def __init__(self, process: asyncio.subprocess.Process, limits: ChatLimits):
        self.process = process
        self.limits = limits
        self.pid = process.pid
        self.deadline = time.monotonic() + limits.timeout
        self.bytes_read = 0
        self.cancelled = False
        self.finished = False
        self._prompt_written = False
        self._stderr = bytearray()
        self._stderr_task = asyncio.ensure_future(self._drain_stderr())

    async def __aenter__(self) -> "ProcessHandle":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.close()
        return False

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def stderr_tail(self) -> str:
        return self._stderr.decode("utf-8", errors="replace").strip()

    async def write(self, prompt: Union[str, bytes]) -> None:
        """Send the prompt on stdin and close it. Only one prompt per process."""
        if self._prompt_written:
            raise RuntimeError(f"Prompt already written to process {self.pid}")
        self._prompt_written = True

        data = prompt.encode("utf-8") if isinstance(prompt, str) else prompt
        stdin = self.process.stdin

        async def send():
            stdin.write(data)
            await stdin.drain()
            stdin.close()
            await stdin.wait_closed()

        try:
            await asyncio.wait_for(send(), self._remaining())
        except asyncio.TimeoutError:
            await self.cancel()
            raise ProcessTimeout(f"claude CLI did not read its prompt within {self.limits.timeout:g}s") from None
        except (BrokenPipeError, ConnectionResetError) as e:
            # The child exited before reading; stream_output reports why.
            logger.warning("Process %d closed stdin early: %s", self.pid, e)

    async def stream_output(self) -> AsyncIterator[Chunk]:
        """Yield chunks until the result line or end of output."""
        stdout = self.process.stdout
        while True:
            try:
                line = await asyncio.wait_for(stdout.readline(), self._remaining())
            except asyncio.TimeoutError:
                await self.cancel()
                raise ProcessTimeout(f"claude CLI did not finish within {self.limits.timeout:g}s") from None
            except ValueError:
                await self.cancel()
                raise self._too_large() from None

            if not line:
                break
            self.bytes_read += len(line)
            if self.bytes_read > self.limits.max_output_bytes:
                await self.cancel()
                raise self._too_large()

            chunk = parse_stream_line(line)
            if chunk is None:
                continue
            if isinstance(chunk, UsageChunk):
                self.finished = True
            yield chunk
            if self.finished:
                return

        returncode = await self._wait_exit()
        if self.cancelled:
            raise ProcessKilled(f"claude CLI process {self.pid} was killed")
        if returncode != 0:
            await self._finish_stderr()
            detail = self.stderr_tail or "no error output"
            raise ProcessFailed(f"claude CLI exited with code {returncode}: {detail}")

    async def cancel(self) -> None:
        """Terminate the process group, escalating to SIGKILL after the grace period."""
        if self.process.returncode is not None:
            return
        if not self.cancelled:
            self.cancelled = True
            logger.info("Cancelling process %d", self.pid)
            self._signal(signal.SIGTERM)
        try:
            await asyncio.wait_for(self.process.wait(), self.limits.cancel_grace)
        except asyncio.TimeoutError:
            logger.warning("Process %d ignored SIGTERM, killing", self.pid)
            self._signal(signal.SIGKILL)
            await self.process.wait()

    async def close(self) -> None:
        """Cancel if still running, reap, and stop the stderr reader."""
        if self.finished and self.process.returncode is None:
            # The result line was seen; let the CLI exit on its own first.
            try:
                await asyncio.wait_for(self.process.wait(), self.limits.cancel_grace)
            except asyncio.TimeoutError:
                pass
        await self.cancel()
        await self._finish_stderr()
        logger.debug("Process %d reaped with code %s", self.pid, self.process.returncode)

    # ── Private helpers ──────────────────────────────────────────────

    def _remaining(self) -> float:
        return max(self.deadline - time.monotonic(), 0.0)

    def _too_large(self) -> OutputTooLarge:
        return OutputTooLarge(f"claude CLI output exceeded {self.limits.max_output_bytes} bytes")

    async def _wait_exit(self) -> int:
        try:
            return await asyncio.wait_for(self.process.wait(), self._remaining())
        except asyncio.TimeoutError:
            await self.cancel()
            raise ProcessTimeout(f"claude CLI did not exit within {self.limits.timeout:g}s") from None

    def _signal(self, sig: int) -> None:
        try:
            if hasattr(os, "killpg"):
                os.killpg(self.pid, sig)
                return
        except PermissionError:
            pass
        except ProcessLookupError:
            return
        try:
            self.process.send_signal(sig)
        except ProcessLookupError:
            pass

    async def _finish_stderr(self) -> None:
        if self._stderr_task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._stderr_task), self.limits.cancel_grace)
        except asyncio.TimeoutError:
            self._stderr_task.cancel()

    async def _drain_stderr(self) -> None:
        stream = self.process.stderr
        while True:
            data = await stream.read(4096)
            if not data:
                return
            self._stderr.extend(data)
            del self._stderr[:-_STDERR_TAIL]
