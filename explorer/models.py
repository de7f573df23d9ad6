"""Data models for the opening explorer."""

from dataclasses import asdict, dataclass, field
from typing import Literal

Color = Literal["white", "black"]

WHITE: Color = "white"
BLACK: Color = "black"


@dataclass(frozen=True)
class CandidateMove:
    """A move observed in the statistics source for one position."""

    uci: str
    san: str = ""
    white: int = 0
    draws: int = 0
    black: int = 0
    average_rating: int = 0

    @property
    def total_games(self) -> int:
        return self.white + self.draws + self.black

    @property
    def white_points_pct(self) -> float:
        """Points scored by White after this move, as a fraction."""
        total = self.total_games
        if not total:
            return 0.0
        return (self.white + 0.5 * self.draws) / total

    def points_pct(self, color: Color) -> float:
        """Points scored by ``color`` after this move, as a fraction."""
        if color == WHITE:
            return self.white_points_pct
        total = self.total_games
        if not total:
            return 0.0
        return (self.black + 0.5 * self.draws) / total


@dataclass
class PositionStats:
    """Aggregated games for a position, candidates ordered by popularity."""

    white: int = 0
    draws: int = 0
    black: int = 0
    moves: list[CandidateMove] = field(default_factory=list)

    @property
    def total_games(self) -> int:
        return self.white + self.draws + self.black


@dataclass(frozen=True)
class SearchNode:
    """One recursive call of the explorer."""

    fen: str
    side_to_move: Color
    remaining_depth: int
    probability: float = 1.0
    stats_only: bool = False


@dataclass(frozen=True)
class GoodMove:
    """Rare move for the target side that passed every good-move threshold."""

    fen: str
    move: str
    san: str
    total_games: int
    total_games_move: int
    popularity: float
    white_points_pct: float
    average_rating: int
    average_rating_all_moves: float
    rating_rank: int
    rating_percentile: float
    probability: float
    raw_probability: float
    performance: float
    evaluation: float | None = None
    average_rating_opponents: float | None = None

    @property
    def rating_ratio(self) -> float | None:
        if not self.average_rating_all_moves:
            return None
        return self.average_rating / self.average_rating_all_moves

    def to_dict(self) -> dict:
        out = asdict(self)
        out["rating_ratio"] = self.rating_ratio
        return out


@dataclass(frozen=True)
class EvaluationTask:
    """Queued request to evaluate ``fen`` (the position after ``move``, if any)."""

    base_fen: str
    move: str | None
    fen: str
    short_fen: str
    depth: int


@dataclass(frozen=True)
class EvaluationResult:
    """Engine verdict for one position, in pawns from White's point of view."""

    evaluation: float
    best_move: str | None
    depth: int | None = None


@dataclass
class ExplorationRun:
    """Run-scoped state shared by every node of one exploration."""

    root_fen: str
    target_color: Color
    max_depth: int
    root_eval: float | None = None
    root_total_games: int | None = None
    good_moves: list[GoodMove] = field(default_factory=list)
    error_count: int = 0
    errors: list[str] = field(default_factory=list)

    def record_error(self, message: str) -> None:
        self.error_count += 1
        self.errors.append(message)
