"""
Explorer configuration.

Thresholds come from command-line flags; the Lichess token and engine path
come from the environment (LICHESS_TOKEN, STOCKFISH_PATH).
"""

import argparse
import os
import shlex

import chess
from pydantic import BaseModel, Field, ValidationError, field_validator

from engine_channel import default_engine_command
from lichess_stats import DEFAULT_SPEEDS
from models import Color
from positions import color_to_play


class ExplorerSettings(BaseModel):
    start_fen: str = chess.STARTING_FEN
    # defaults to the side to move in start_fen
    target_color: Color | None = None
    max_depth: int = Field(6, ge=0)

    max_popularity: float = Field(0.05, ge=0, le=1)
    min_rating_ratio: float = Field(1.0, ge=0)
    min_percentile: float = Field(0.0, ge=0, le=100)
    min_games_good_move: int = Field(50, ge=0)
    min_games_candidate: int = Field(20, ge=0)
    min_games_explore: int = Field(100, ge=0)
    min_probability: float = Field(0.01, ge=0, le=1)

    # pawns; tolerated drop against the root evaluation
    max_eval_diff: float = Field(0.5, ge=0)
    # 0 disables the engine
    eval_depth: int = Field(0, ge=0)
    engine_command: list[str] = Field(default_factory=default_engine_command)
    engine_options: dict[str, str] = Field(default_factory=dict)

    min_time_between_calls: float = Field(1.1, ge=0)
    rating_range: str = "2000,2200,2500"
    speeds: str = DEFAULT_SPEEDS
    lichess_token: str | None = Field(default_factory=lambda: os.environ.get("LICHESS_TOKEN"))

    @field_validator("start_fen")
    @classmethod
    def check_fen(cls, fen: str) -> str:
        board = chess.Board(fen)
        if not board.is_valid():
            raise ValueError(f"not a legal position: {fen}")
        return fen

    @property
    def evaluation_enabled(self) -> bool:
        return self.eval_depth > 0

    @property
    def resolved_target_color(self) -> Color:
        return self.target_color or color_to_play(self.start_fen)


def parse_engine_options(pairs: list[str]) -> dict[str, str]:
    options = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name.strip():
            raise ValueError(f"engine option must look like Name=Value, got {pair!r}")
        options[name.strip()] = value.strip()
    return options


def build_parser() -> argparse.ArgumentParser:
    defaults = ExplorerSettings.model_fields
    parser = argparse.ArgumentParser(
        description="Find rare but strong opening moves for one side from Lichess statistics.",
    )
    parser.add_argument("--fen", default=chess.STARTING_FEN, help="Starting position (default: initial position)")
    parser.add_argument("--color", choices=["white", "black"], default=None,
                        help="Side to build the repertoire for (default: side to move in --fen)")
    parser.add_argument("--depth", type=int, default=defaults["max_depth"].default, help="Max depth in half moves")
    parser.add_argument("--max-popularity", type=float, default=defaults["max_popularity"].default,
                        help="Max share of games for a move to count as rare (0.05 = 5%%)")
    parser.add_argument("--min-rating-ratio", type=float, default=defaults["min_rating_ratio"].default)
    parser.add_argument("--min-percentile", type=float, default=defaults["min_percentile"].default)
    parser.add_argument("--min-games-good-move", type=int, default=defaults["min_games_good_move"].default)
    parser.add_argument("--min-games-candidate", type=int, default=defaults["min_games_candidate"].default)
    parser.add_argument("--min-games-explore", type=int, default=defaults["min_games_explore"].default)
    parser.add_argument("--min-probability", type=float, default=defaults["min_probability"].default)
    parser.add_argument("--max-eval-diff", type=float, default=defaults["max_eval_diff"].default)
    parser.add_argument("--eval-depth", type=int, default=defaults["eval_depth"].default,
                        help="Engine depth for evaluations, 0 disables the engine")
    parser.add_argument("--engine", default=None,
                        help="Engine command line (default: $STOCKFISH_PATH or stockfish)")
    parser.add_argument("--engine-option", action="append", default=[], metavar="NAME=VALUE",
                        help="Extra UCI setoption, repeatable")
    parser.add_argument("--min-time-between-calls", type=float,
                        default=defaults["min_time_between_calls"].default, help="Seconds between Lichess calls")
    parser.add_argument("--ratings", default=defaults["rating_range"].default,
                        help="Lichess rating buckets, e.g. 2000,2200,2500, or 'masters'")
    parser.add_argument("--speeds", default=defaults["speeds"].default)
    parser.add_argument("--format", choices=["csv", "json", "pgn"], default="csv")
    parser.add_argument("--output", "-o", default="good_moves.csv")
    parser.add_argument("--store", action="store_true", help="Also save the run to PostgreSQL ($DATABASE_URL)")
    parser.add_argument("--verbose", "-v", action="store_true")
    return parser


def settings_from_args(args: argparse.Namespace) -> ExplorerSettings:
    values = dict(
        start_fen=args.fen,
        target_color=args.color,
        max_depth=args.depth,
        max_popularity=args.max_popularity,
        min_rating_ratio=args.min_rating_ratio,
        min_percentile=args.min_percentile,
        min_games_good_move=args.min_games_good_move,
        min_games_candidate=args.min_games_candidate,
        min_games_explore=args.min_games_explore,
        min_probability=args.min_probability,
        max_eval_diff=args.max_eval_diff,
        eval_depth=args.eval_depth,
        engine_options=parse_engine_options(args.engine_option),
        min_time_between_calls=args.min_time_between_calls,
        rating_range=args.ratings,
        speeds=args.speeds,
    )
    if args.engine:
        values["engine_command"] = shlex.split(args.engine)
    return ExplorerSettings(**values)


def load_settings(argv: list[str] | None = None) -> tuple[ExplorerSettings, argparse.Namespace]:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return settings_from_args(args), args
    except (ValidationError, ValueError) as e:
        parser.error(str(e))
