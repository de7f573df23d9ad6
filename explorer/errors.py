"""Exceptions raised by the opening explorer."""


class ExplorerError(Exception):
    """Base class for explorer errors."""


class StatsSourceError(ExplorerError):
    """The statistics source answered with a non-success status."""

    def __init__(self, status_code: int | None, fen: str, detail: str = ""):
        self.status_code = status_code
        self.fen = fen
        message = f"statistics request failed (status={status_code}) for {fen}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class IllegalMoveError(ExplorerError):
    """A move could not be applied to a position, or the FEN is malformed."""

    def __init__(self, fen: str, move: str | None, detail: str = ""):
        self.fen = fen
        self.move = move
        message = f"cannot apply {move!r} to {fen}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class EngineChannelError(ExplorerError):
    """The engine channel closed, failed or sent a malformed message."""
