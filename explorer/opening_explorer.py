#!/usr/bin/env python3
"""
Opening Tree Explorer

Walks the tree of moves humans actually play, starting at a position, and
collects rare moves for the target side whose players are noticeably stronger
than the field. Opponent replies are followed while the line stays likely
enough to be reached; with an engine configured, target-side moves that give
up too much against the starting evaluation are not followed.

Usage:
  python opening_explorer.py --color white --depth 6 -o good_moves.csv
  LICHESS_TOKEN=xxx python opening_explorer.py --ratings masters --format json -o out.json
  STOCKFISH_PATH=/usr/bin/stockfish python opening_explorer.py --eval-depth 20
"""

import asyncio
import logging
import shutil
import sys
from pathlib import Path

import httpx

sys.path.insert(0, str(Path(__file__).resolve().parent))
from engine_channel import UciProcessChannel
from errors import EngineChannelError, IllegalMoveError, StatsSourceError
from evaluation_coordinator import EvaluationCoordinator
from lichess_stats import Throttle, lichess_position_stats, parse_position_stats
from logging_config import set_level, setup_logging
from models import WHITE, CandidateMove, Color, ExplorationRun, GoodMove, SearchNode
from positions import apply_uci_move, color_to_play, opposite
from ratings import exceeds, performance_rating, rank_average_ratings, rating_percentile, weighted_average_rating
from settings import ExplorerSettings, load_settings

logger = setup_logging(__name__)


class OpeningExplorer:
    """
    Recursive search for good moves.

    One explorer can run several explorations; everything that belongs to a
    single run lives in the ExplorationRun passed down the recursion.
    """

    def __init__(
        self,
        settings: ExplorerSettings,
        session: httpx.AsyncClient,
        coordinator: EvaluationCoordinator | None = None,
        throttle: Throttle | None = None,
    ):
        self.settings = settings
        self.session = session
        self.coordinator = coordinator
        self.throttle = throttle or Throttle(settings.min_time_between_calls)

    @property
    def evaluation_enabled(self) -> bool:
        return self.coordinator is not None and self.settings.evaluation_enabled

    async def explore(
        self,
        root_fen: str,
        target_color: Color | None = None,
        max_depth: int | None = None,
        root_color: Color | None = None,
    ) -> ExplorationRun:
        """Explore from ``root_fen`` and return the run with its good moves and error count."""
        max_depth = self.settings.max_depth if max_depth is None else max_depth
        if max_depth < 0:
            raise ValueError(f"max_depth must be >= 0, got {max_depth}")
        root_color = root_color or color_to_play(root_fen)
        target_color = target_color or root_color
        run = ExplorationRun(root_fen=root_fen, target_color=target_color, max_depth=max_depth)
        logger.info("exploring for %s from %s (depth %d)", target_color, root_fen, max_depth)

        if self.evaluation_enabled and max_depth > 0:
            try:
                run.root_eval = await self._evaluate(root_fen)
                logger.info("root evaluation: %+.2f", run.root_eval)
            except EngineChannelError as e:
                logger.error("root evaluation failed, evaluation checks disabled: %s", e)
                run.record_error(f"root evaluation: {e}")

        root = SearchNode(fen=root_fen, side_to_move=root_color, remaining_depth=max_depth)
        await self.explore_node(run, root)
        logger.info("found %d good moves, %d errors", len(run.good_moves), run.error_count)
        return run

    async def explore_node(self, run: ExplorationRun, node: SearchNode) -> float:
        """
        Explore one position. Returns its field-strength average: the games-weighted
        average rating of the candidates with enough games (0 when unknown).
        """
        if node.remaining_depth == 0 and not node.stats_only:
            logger.debug("max depth reached at %s", node.fen)
            return 0.0

        await self.throttle.wait()
        try:
            data = await lichess_position_stats(
                node.fen,
                self.session,
                self.settings.rating_range,
                self.settings.speeds,
                self.settings.lichess_token,
            )
        except StatsSourceError as e:
            logger.error("statistics error: %s", e)
            run.record_error(str(e))
            return 0.0

        stats = parse_position_stats(data)
        total_games = stats.total_games
        if run.root_total_games is None and node.fen == run.root_fen:
            run.root_total_games = total_games

        min_games = self.settings.min_games_candidate
        candidates = [m for m in stats.moves if m.total_games >= min_games]
        field_strength = weighted_average_rating(candidates)
        logger.debug(
            "%s: %d games, field strength %.1f, all moves %.1f",
            node.fen, total_games, field_strength, weighted_average_rating(stats.moves),
        )
        if node.stats_only:
            return field_strength

        ranks = rank_average_ratings([m.average_rating for m in candidates])

        for i, candidate in enumerate(stats.moves):
            # moves come sorted by games played, nothing below this one qualifies
            if candidate.total_games < min_games:
                break
            await self._explore_candidate(
                run, node, candidate, total_games, field_strength, ranks[i], len(ranks)
            )

        return field_strength

    async def _explore_candidate(
        self,
        run: ExplorationRun,
        node: SearchNode,
        candidate: CandidateMove,
        total_games: int,
        field_strength: float,
        rank: int,
        ranked: int,
    ) -> None:
        settings = self.settings
        move = candidate.uci
        try:
            child_fen = apply_uci_move(node.fen, move)
        except IllegalMoveError as e:
            logger.error("skipping move: %s", e)
            run.record_error(str(e))
            return

        games = candidate.total_games
        popularity = games / total_games if total_games else 0.0
        own_move = node.side_to_move == run.target_color
        probability = node.probability if own_move else node.probability * popularity
        percentile = rating_percentile(rank, ranked)

        is_good = (
            own_move
            and popularity <= settings.max_popularity
            and field_strength > 0
            and exceeds(candidate.average_rating / field_strength, settings.min_rating_ratio)
            and games >= settings.min_games_good_move
            and percentile >= settings.min_percentile
        )

        evaluation = None
        evaluated = False
        if is_good:
            logger.info("good move %s in %s (popularity %.3f, rank %d)", move, node.fen, popularity, rank)
            evaluation = await self._evaluate_or_none(run, node.fen, move)
            evaluated = self.evaluation_enabled

        explore_deeper = probability >= settings.min_probability and games >= settings.min_games_explore
        if explore_deeper and own_move and self.evaluation_enabled and run.root_eval is not None:
            if not evaluated:
                evaluation = await self._evaluate_or_none(run, node.fen, move)
            if evaluation is not None and self._regresses(run, evaluation):
                logger.debug("discarding %s: eval %+.2f vs root %+.2f", move, evaluation, run.root_eval)
                explore_deeper = False

        opponent_rating = None
        child_color = opposite(node.side_to_move)
        if explore_deeper:
            child = SearchNode(
                fen=child_fen,
                side_to_move=child_color,
                remaining_depth=node.remaining_depth - 1,
                probability=probability,
                stats_only=node.remaining_depth == 1 and is_good,
            )
            opponent_rating = await self.explore_node(run, child)
        elif is_good:
            # one statistics-only look at the replies, for the opponents' rating
            child = SearchNode(
                fen=child_fen,
                side_to_move=child_color,
                remaining_depth=node.remaining_depth - 1,
                probability=probability,
                stats_only=True,
            )
            opponent_rating = await self.explore_node(run, child)

        if is_good:
            run.good_moves.append(
                GoodMove(
                    fen=node.fen,
                    move=move,
                    san=candidate.san,
                    total_games=total_games,
                    total_games_move=games,
                    popularity=popularity,
                    white_points_pct=candidate.white_points_pct,
                    average_rating=candidate.average_rating,
                    average_rating_all_moves=field_strength,
                    rating_rank=rank,
                    rating_percentile=percentile,
                    probability=probability,
                    raw_probability=total_games / run.root_total_games if run.root_total_games else 0.0,
                    performance=performance_rating(field_strength, candidate.points_pct(run.target_color)),
                    evaluation=evaluation,
                    average_rating_opponents=opponent_rating or None,
                )
            )

    def _regresses(self, run: ExplorationRun, evaluation: float) -> bool:
        """True when ``evaluation`` is worse for the target side than the root by more than the tolerance."""
        sign = 1 if run.target_color == WHITE else -1
        return exceeds(sign * (run.root_eval - evaluation), self.settings.max_eval_diff)

    async def _evaluate(self, fen: str, move: str | None = None) -> float:
        self.coordinator.request_evaluation(fen, move, self.settings.eval_depth)
        await self.coordinator.start_evaluations()
        result = await self.coordinator.get_evaluation_result(fen, move)
        return result.evaluation

    async def _evaluate_or_none(self, run: ExplorationRun, fen: str, move: str) -> float | None:
        if not self.evaluation_enabled:
            return None
        try:
            return await self._evaluate(fen, move)
        except EngineChannelError as e:
            logger.error("evaluation of %s failed: %s", move, e)
            run.record_error(f"evaluation of {move} in {fen}: {e}")
            return None


def export_run(run: ExplorationRun, fmt: str, output: Path) -> int:
    from export import export_csv, export_json, export_pgn

    if fmt == "json":
        return export_json(run, output)
    if fmt == "pgn":
        return export_pgn(run.good_moves, output)
    return export_csv(run.good_moves, output)


def store_run(run: ExplorationRun, settings: ExplorerSettings) -> None:
    from db import get_connection, init_schema, save_run

    with get_connection() as conn:
        init_schema(conn)
        run_id = save_run(conn, run, settings)
    print(f"Stored run {run_id}.")


async def run_exploration(settings: ExplorerSettings) -> ExplorationRun:
    async with httpx.AsyncClient(timeout=30.0) as session:
        if not settings.evaluation_enabled:
            explorer = OpeningExplorer(settings, session)
            return await explorer.explore(settings.start_fen, settings.resolved_target_color)

        def channel_factory() -> UciProcessChannel:
            return UciProcessChannel(settings.engine_command)

        async with EvaluationCoordinator(channel_factory, settings.engine_options) as coordinator:
            explorer = OpeningExplorer(settings, session, coordinator)
            return await explorer.explore(settings.start_fen, settings.resolved_target_color)


async def main_async(argv: list[str] | None = None) -> None:
    settings, args = load_settings(argv)
    if args.verbose:
        set_level(logging.DEBUG)

    if settings.evaluation_enabled and shutil.which(settings.engine_command[0]) is None:
        print("Engine not found. Install Stockfish or set STOCKFISH_PATH / --engine.", file=sys.stderr)
        sys.exit(1)

    run = await run_exploration(settings)

    print("Good moves:")
    for good_move in run.good_moves:
        print(f"  {good_move.move:6s} p={good_move.probability:.3f} pct={good_move.rating_percentile:.0f} | {good_move.fen}")

    out = Path(args.output)
    n = export_run(run, args.format, out)
    print(f"Exported {n} good moves to {out}")
    if args.store:
        store_run(run, settings)

    if run.error_count == 0:
        print("FINISHED OK (no errors)")
    else:
        print(f"FINISHED WITH ERRORS (total={run.error_count})")


def main():
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
