"""Pytest configuration."""

import asyncio
import os
import pytest


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "integration: mark test as requiring a live database (skipped in CI by default)"
    )


os.environ.setdefault("DATABASE_URL", "postgresql://localhost:5432/opening_explorer?user=postgres&password=postgres")
# keep tests independent of a local token
os.environ.pop("LICHESS_TOKEN", None)


class ScriptedChannel:
    """In-memory engine channel replaying canned output for each analysed position."""

    def __init__(self, scripts: dict):
        self.scripts = scripts
        self.sent: list[str] = []
        self.opened = False
        self.closed = False
        self._fen = None
        self._lines: asyncio.Queue = asyncio.Queue()

    async def open(self) -> None:
        self.opened = True

    async def send(self, command: str) -> None:
        self.sent.append(command)
        if command.startswith("position fen "):
            self._fen = command[len("position fen "):]
        elif command.startswith("go "):
            key = " ".join(self._fen.split()[:4])
            for line in self.scripts.get(key, []):
                self._lines.put_nowait(line)

    async def receive(self) -> str:
        line = await self._lines.get()
        if isinstance(line, Exception):
            raise line
        return line

    async def close(self) -> None:
        self.closed = True


class ScriptedEngine:
    """Channel factory; ``scripts`` maps a short FEN to the lines the engine prints for it."""

    def __init__(self, scripts: dict | None = None):
        self.scripts = scripts if scripts is not None else {}
        self.channels: list[ScriptedChannel] = []

    def __call__(self) -> ScriptedChannel:
        channel = ScriptedChannel(self.scripts)
        self.channels.append(channel)
        return channel


@pytest.fixture
def scripted_engine():
    return ScriptedEngine()
