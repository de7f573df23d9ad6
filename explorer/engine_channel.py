"""
Engine channel: a duplex line-oriented text stream to a UCI engine.

The remote engine session model assumes one position per connection, so the
coordinator opens a fresh channel for every evaluation and closes it after.
"""

import asyncio
import os
import shlex
from typing import Protocol

from errors import EngineChannelError
from logging_config import setup_logging

logger = setup_logging(__name__)

CLOSE_TIMEOUT = 5.0


class EngineChannel(Protocol):
    async def open(self) -> None: ...

    async def send(self, command: str) -> None: ...

    async def receive(self) -> str: ...

    async def close(self) -> None: ...


def default_engine_command() -> list[str]:
    return shlex.split(os.environ.get("STOCKFISH_PATH", "stockfish"))


class UciProcessChannel:
    """
    Channel backed by an engine subprocess speaking UCI on stdin/stdout.

    Any command works, so a remote engine can be reached through a wrapper
    such as ``ssh host stockfish``.
    """

    def __init__(self, command: list[str] | None = None):
        self.command = command or default_engine_command()
        self._process: asyncio.subprocess.Process | None = None

    async def open(self) -> None:
        logger.debug("starting engine: %s", " ".join(self.command))
        self._process = await asyncio.create_subprocess_exec(
            *self.command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
        )

    async def send(self, command: str) -> None:
        if self._process is None or self._process.stdin is None:
            raise EngineChannelError("engine channel is not open")
        logger.debug("send: %s", command)
        try:
            self._process.stdin.write(f"{command}\n".encode())
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise EngineChannelError(f"engine stopped accepting commands: {e}") from e

    async def receive(self) -> str:
        """Next non-empty line from the engine."""
        if self._process is None or self._process.stdout is None:
            raise EngineChannelError("engine channel is not open")
        while True:
            raw = await self._process.stdout.readline()
            if not raw:
                raise EngineChannelError("engine closed the channel")
            line = raw.decode(errors="replace").strip()
            if line:
                return line

    async def close(self) -> None:
        process, self._process = self._process, None
        if process is None or process.returncode is not None:
            return
        try:
            if process.stdin is not None:
                process.stdin.write(b"quit\n")
                await process.stdin.drain()
                process.stdin.close()
            await asyncio.wait_for(process.wait(), CLOSE_TIMEOUT)
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug("engine already gone while closing: %s", e)
            await process.wait()
        except asyncio.TimeoutError:
            logger.warning("engine did not quit in %.0fs, killing it", CLOSE_TIMEOUT)
            process.kill()
            await process.wait()
