"""
Statistics source: per-move game counts from the Lichess Opening Explorer.

Lichess answers 429 when called more than about once per second, so every call
goes through a Throttle that keeps a minimum interval between requests.
"""

import asyncio
import time
from urllib.parse import quote

import httpx

from errors import StatsSourceError
from logging_config import setup_logging
from models import CandidateMove, PositionStats

logger = setup_logging(__name__)

LICHESS_EXPLORER = "https://explorer.lichess.ovh"
DEFAULT_SPEEDS = "blitz,rapid,classical"


class Throttle:
    """Sleeps so that consecutive calls are at least ``min_interval`` seconds apart."""

    def __init__(self, min_interval: float):
        self.min_interval = min_interval
        self._last_call: float | None = None

    async def wait(self) -> None:
        if self._last_call is not None:
            elapsed = time.monotonic() - self._last_call
            if elapsed < self.min_interval:
                await asyncio.sleep(self.min_interval - elapsed)
        # recorded just before the call is made
        self._last_call = time.monotonic()


def explorer_url(fen: str, rating_range: str, speeds: str = DEFAULT_SPEEDS) -> str:
    """Masters database when ``rating_range`` ends with "masters", else the Lichess games one."""
    encoded = quote(fen, safe="")
    if rating_range.strip().endswith("masters"):
        return f"{LICHESS_EXPLORER}/masters?fen={encoded}"
    return (
        f"{LICHESS_EXPLORER}/lichess?variant=standard&speeds={speeds}"
        f"&ratings={rating_range.strip()}&fen={encoded}"
    )


async def lichess_position_stats(
    fen: str,
    session: httpx.AsyncClient,
    rating_range: str,
    speeds: str = DEFAULT_SPEEDS,
    token: str | None = None,
) -> dict:
    """Fetch the raw explorer document for a position."""
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    url = explorer_url(fen, rating_range, speeds)
    logger.debug("GET %s", url)
    try:
        resp = await session.get(url, headers=headers or None)
    except httpx.HTTPError as e:
        raise StatsSourceError(None, fen, str(e)) from e
    if resp.status_code != 200:
        raise StatsSourceError(resp.status_code, fen)
    try:
        return resp.json()
    except ValueError as e:
        raise StatsSourceError(resp.status_code, fen, f"malformed body: {e}") from e


def parse_position_stats(data: dict) -> PositionStats:
    """Build PositionStats from an explorer document, keeping the source's move order."""
    moves = [
        CandidateMove(
            uci=m.get("uci", ""),
            san=m.get("san", ""),
            white=m.get("white", 0),
            draws=m.get("draws", 0),
            black=m.get("black", 0),
            average_rating=m.get("averageRating") or 0,
        )
        for m in data.get("moves", [])
        if m.get("uci")
    ]
    return PositionStats(
        white=data.get("white", 0),
        draws=data.get("draws", 0),
        black=data.get("black", 0),
        moves=moves,
    )
