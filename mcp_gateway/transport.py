"""
Transport layer abstraction for upstream communication.

Currently implements:
  - StdioTransport: raw byte pipes to a child process (asyncio)

The Bridge owns framing and correlation; a Transport only moves bytes
and manages the process.
"""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod

from mcp_gateway.errors import SpawnFailure
from mcp_gateway.messages import LineBuffer

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024
MAX_STDERR_LINE = 2000


class Transport(ABC):
    """Abstract byte transport to an upstream process."""

    @abstractmethod
    async def start(self) -> None:
        """Start the transport (e.g., launch subprocess)."""
        ...

    @abstractmethod
    async def read(self) -> bytes:
        """Read the next chunk of output. Returns b"" at end of stream."""
        ...

    @abstractmethod
    def write(self, data: bytes) -> None:
        """Buffer bytes for the upstream's input stream."""
        ...

    @abstractmethod
    async def drain(self) -> None:
        """Wait until buffered input has been flushed."""
        ...

    @abstractmethod
    async def wait(self) -> int:
        """Wait for the upstream to exit and return its exit code."""
        ...

    @abstractmethod
    def terminate(self) -> None:
        """Ask the upstream to exit (SIGTERM)."""
        ...

    @abstractmethod
    def kill(self) -> None:
        """Force the upstream to exit (SIGKILL)."""
        ...

    @abstractmethod
    def is_alive(self) -> bool:
        """Check if the transport is active."""
        ...


class StdioTransport(Transport):
    """
    Byte pipes to a subprocess over stdin/stdout.

    The upstream runs as a child process. Its stderr is drained line by
    line into the log so a chatty upstream can never block on a full pipe.
    """

    def __init__(
        self,
        name: str,
        command: list[str],
        env: dict[str, str] | None = None,
    ):
        """
        Args:
            name: Upstream name, used in log lines.
            command: Command to launch, e.g. ["postgres-mcp", "--access-mode=unrestricted"].
            env: Variables merged over the current process environment.
        """
        self.name = name
        self.command = command
        self.env = env or {}
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    async def start(self) -> None:
        """Launch the upstream subprocess."""
        if self.is_alive():
            logger.warning(f"[{self.name}] transport already running")
            return

        logger.info(f"[{self.name}] starting stdio transport: {' '.join(self.command)}")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **self.env},
            )
        except (OSError, ValueError) as e:
            raise SpawnFailure(f"Failed to spawn {self.name} ({self.command[0]}): {e}") from e

        self._stderr_task = asyncio.create_task(self._log_stderr())

    async def _log_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        stderr = self._process.stderr
        buffer = LineBuffer()
        while True:
            chunk = await stderr.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            for line in buffer.feed(chunk):
                self._log_stderr_line(line)
            # An unterminated line never holds more than one chunk in memory.
            if len(buffer.pending) > READ_CHUNK_SIZE:
                self._log_stderr_line(buffer.flush())
        tail = buffer.flush()
        if tail:
            self._log_stderr_line(tail)

    def _log_stderr_line(self, text: str) -> None:
        if len(text) > MAX_STDERR_LINE:
            text = f"{text[:MAX_STDERR_LINE]}... ({len(text)} chars)"
        logger.warning(f"[{self.name}] stderr: {text}")

    async def read(self) -> bytes:
        if not self._process or not self._process.stdout:
            return b""
        return await self._process.stdout.read(READ_CHUNK_SIZE)

    def write(self, data: bytes) -> None:
        if not self._process or not self._process.stdin:
            raise RuntimeError(f"Transport {self.name} not running. Call start() first.")
        self._process.stdin.write(data)

    async def drain(self) -> None:
        if self._process and self._process.stdin:
            await self._process.stdin.drain()

    async def wait(self) -> int:
        if not self._process:
            return 0
        returncode = await self._process.wait()
        if self._stderr_task:
            # Let the stderr logger finish the tail of the output.
            try:
                await asyncio.wait_for(self._stderr_task, timeout=1)
            except asyncio.TimeoutError:
                self._stderr_task.cancel()
            except Exception as e:
                logger.error(f"[{self.name}] stderr logger failed: {e}")
        return returncode

    def terminate(self) -> None:
        if self.is_alive():
            try:
                self._process.terminate()
            except ProcessLookupError:
                pass

    def kill(self) -> None:
        if self.is_alive():
            try:
                self._process.kill()
            except ProcessLookupError:
                pass

    def is_alive(self) -> bool:
        """Check if the subprocess is running."""
        return self._process is not None and self._process.returncode is None
