"""Rating arithmetic used to rank candidate moves."""

import math
from typing import Iterable

from models import CandidateMove

# Reference rating for weighted sums; terms are divided by it to keep them small.
REFERENCE_RATING = 2500.0

EPSILON = 1e-6


def rank_average_ratings(ratings: list[int]) -> list[int]:
    """
    Dense rank of each rating, highest first: [2100, 2000, 2100, 1900] -> [1, 2, 1, 3].
    """
    rank_by_rating = {rating: i + 1 for i, rating in enumerate(sorted(set(ratings), reverse=True))}
    return [rank_by_rating[rating] for rating in ratings]


def rating_percentile(rank: int, n: int) -> float:
    """(1 - (rank - 1) / n) * 100; rank 1 is always the 100th percentile."""
    if n <= 0:
        return 0.0
    return (1 - (rank - 1) / n) * 100.0


def weighted_average_rating(moves: Iterable[CandidateMove], min_games: int = 0) -> float:
    """Games-weighted average rating over moves with at least ``min_games`` games."""
    weighted_sum = 0.0
    total_games = 0
    for move in moves:
        games = move.total_games
        if games < min_games:
            continue
        weighted_sum += move.average_rating * games / REFERENCE_RATING
        total_games += games
    if not total_games:
        return 0.0
    return weighted_sum * REFERENCE_RATING / total_games


def performance_rating(rating: float, points_pct: float) -> float:
    """Elo performance of a player of ``rating`` scoring ``points_pct`` (0..1)."""
    if points_pct <= 0:
        return -math.inf
    if points_pct >= 1:
        return math.inf
    return rating + 400 * math.log10(points_pct / (1 - points_pct))


def exceeds(value: float, threshold: float) -> bool:
    """value > threshold, ignoring differences below EPSILON."""
    return value - threshold > EPSILON
