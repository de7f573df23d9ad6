"""Tests for opening_explorer.py"""

import math
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import chess
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from errors import EngineChannelError, StatsSourceError
from lichess_stats import Throttle
from models import BLACK, WHITE, EvaluationResult, ExplorationRun
from opening_explorer import OpeningExplorer
from positions import resulting_fen, short_fen
from settings import ExplorerSettings

START = chess.STARTING_FEN


def fen_after(*moves: str) -> str:
    fen = START
    for move in moves:
        fen = resulting_fen(fen, move)
    return fen


def position(*moves: tuple[str, int, int], total: int | None = None) -> dict:
    """Explorer document; each move is (uci, games, average rating)."""
    total = total if total is not None else sum(games for _, games, _ in moves)
    return {
        "white": total // 2,
        "draws": total // 4,
        "black": total - total // 2 - total // 4,
        "moves": [
            {
                "uci": uci,
                "san": uci,
                "white": games // 2,
                "draws": games // 4,
                "black": games - games // 2 - games // 4,
                "averageRating": rating,
            }
            for uci, games, rating in moves
        ],
    }


class FakeLichess:
    """Explorer documents keyed by the short FEN of the line leading to them."""

    def __init__(self):
        self.positions: dict[str, dict] = {}
        self.failing: set[str] = set()

    def add(self, moves: tuple[str, ...], document: dict) -> None:
        self.positions[short_fen(fen_after(*moves))] = document

    def fail(self, *moves: str) -> None:
        self.failing.add(short_fen(fen_after(*moves)))

    async def __call__(self, fen, session, rating_range, speeds=None, token=None) -> dict:
        key = short_fen(fen)
        if key in self.failing:
            raise StatsSourceError(500, fen)
        return self.positions.get(key, position())


class FakeCoordinator:
    """Answers evaluations from a table keyed by the short FEN of the evaluated position."""

    def __init__(self, evaluations: dict[str, float | Exception]):
        self.evaluations = evaluations
        self.requested: list[tuple[str, str | None, int]] = []

    def request_evaluation(self, fen, move=None, depth=20):
        self.requested.append((fen, move, depth))

    async def start_evaluations(self):
        pass

    async def get_evaluation_result(self, fen, move=None):
        evaluation = self.evaluations[short_fen(resulting_fen(fen, move))]
        if isinstance(evaluation, Exception):
            raise evaluation
        return EvaluationResult(evaluation, None)


@pytest.fixture
def lichess():
    fake = FakeLichess()
    mock = AsyncMock(side_effect=fake.__call__)
    with patch("opening_explorer.lichess_position_stats", mock):
        fake.mock = mock
        yield fake


def make_explorer(coordinator=None, **overrides) -> OpeningExplorer:
    values = dict(min_games_candidate=40, min_games_good_move=40, min_time_between_calls=0)
    values.update(overrides)
    return OpeningExplorer(ExplorerSettings(**values), MagicMock(), coordinator, Throttle(0))


def called_fens(lichess: FakeLichess) -> list[str]:
    return [short_fen(c.args[0]) for c in lichess.mock.call_args_list]


@pytest.mark.asyncio
async def test_depth_zero_makes_no_calls(lichess):
    run = await make_explorer().explore(START, WHITE, max_depth=0)
    assert run.good_moves == []
    assert run.error_count == 0
    lichess.mock.assert_not_called()


@pytest.mark.asyncio
async def test_negative_depth_rejected(lichess):
    with pytest.raises(ValueError):
        await make_explorer().explore(START, WHITE, max_depth=-1)


@pytest.mark.asyncio
async def test_rare_strong_move_is_found(lichess):
    lichess.add((), position(("e2e4", 900, 2000), ("g1f3", 40, 2100), total=1000))
    lichess.add(("g1f3",), position(("d7d5", 30, 2150), ("g8f6", 10, 2050)))

    run = await make_explorer().explore(START, WHITE, max_depth=1)

    assert [m.move for m in run.good_moves] == ["g1f3"]
    good = run.good_moves[0]
    assert good.fen == START
    assert good.total_games == 1000
    assert good.total_games_move == 40
    assert good.popularity == pytest.approx(0.04)
    assert good.rating_rank == 1
    assert good.rating_percentile == pytest.approx(100.0)
    assert good.average_rating_all_moves == pytest.approx((900 * 2000 + 40 * 2100) / 940)
    assert good.probability == pytest.approx(1.0)
    assert good.raw_probability == pytest.approx(1.0)
    assert good.evaluation is None
    # replies below min_games_candidate do not count towards the opponents' rating
    assert good.average_rating_opponents is None
    assert run.root_total_games == 1000
    assert run.error_count == 0
    # root plus one statistics-only look after Nf3; e4 reaches depth 0 without a call
    assert called_fens(lichess) == [short_fen(START), short_fen(fen_after("g1f3"))]


@pytest.mark.asyncio
async def test_opponent_rating_from_statistics_only_call(lichess):
    lichess.add((), position(("e2e4", 900, 2000), ("g1f3", 40, 2100), total=1000))
    lichess.add(("g1f3",), position(("d7d5", 30, 2150), ("g8f6", 10, 2050)))

    run = await make_explorer(min_games_candidate=10).explore(START, WHITE, max_depth=1)

    good = next(m for m in run.good_moves if m.move == "g1f3")
    assert good.average_rating_opponents == pytest.approx((30 * 2150 + 10 * 2050) / 40)


@pytest.mark.asyncio
async def test_failed_position_is_counted_and_search_continues(lichess):
    lichess.add((), position(("e2e4", 900, 2000), ("g1f3", 40, 2100), total=1000))
    lichess.fail("e2e4")

    run = await make_explorer().explore(START, WHITE, max_depth=2)

    assert run.error_count == 1
    assert [m.move for m in run.good_moves] == ["g1f3"]


@pytest.mark.asyncio
async def test_failed_root_gives_empty_run(lichess):
    lichess.fail()
    run = await make_explorer().explore(START, WHITE, max_depth=3)
    assert run.good_moves == []
    assert run.error_count == 1
    assert run.root_total_games is None


@pytest.mark.asyncio
async def test_illegal_move_in_statistics_is_skipped(lichess):
    lichess.add((), position(("e2e4", 900, 2000), ("e2e5", 60, 2300), ("g1f3", 40, 2100), total=1000))

    run = await make_explorer().explore(START, WHITE, max_depth=1)

    assert run.error_count == 1
    assert [m.move for m in run.good_moves] == ["g1f3"]


@pytest.mark.asyncio
async def test_popular_and_weak_moves_are_not_good(lichess):
    lichess.add((), position(("e2e4", 900, 2100), ("d2d4", 60, 2300), ("b2b3", 40, 1900), total=1000))

    run = await make_explorer().explore(START, WHITE, max_depth=1)

    # d4 is strong but too popular, b3 is rare but weaker than the field
    assert run.good_moves == []


@pytest.mark.asyncio
async def test_percentile_filter(lichess):
    lichess.add((), position(("e2e4", 900, 2000), ("g1f3", 40, 2100), ("b1c3", 50, 2050), total=1000))

    everything = await make_explorer(min_rating_ratio=0).explore(START, WHITE, max_depth=1)
    top_only = await make_explorer(min_rating_ratio=0, min_percentile=90).explore(START, WHITE, max_depth=1)

    assert [m.move for m in everything.good_moves] == ["g1f3", "b1c3"]
    nc3 = everything.good_moves[1]
    assert nc3.rating_rank == 2
    assert nc3.rating_percentile == pytest.approx(200 / 3)
    assert [m.move for m in top_only.good_moves] == ["g1f3"]


@pytest.mark.asyncio
async def test_opponent_moves_multiply_probability(lichess):
    lichess.add((), position(("e2e4", 900, 2000)))
    lichess.add(("e2e4",), position(("e7e5", 600, 2000), ("c7c5", 300, 2000)))
    lichess.add(("e2e4", "e7e5"), position(("g1f3", 600, 2000)))
    lichess.add(("e2e4", "c7c5"), position(("g1f3", 300, 2000)))

    explorer = make_explorer()
    with patch.object(explorer, "explore_node", wraps=explorer.explore_node) as spy:
        await explorer.explore(START, WHITE, max_depth=3)

    nodes = {short_fen(c.args[1].fen): c.args[1] for c in spy.call_args_list}
    assert nodes[short_fen(START)].probability == 1.0
    # own moves keep the probability
    assert nodes[short_fen(fen_after("e2e4"))].probability == pytest.approx(1.0)
    assert nodes[short_fen(fen_after("e2e4", "e7e5"))].probability == pytest.approx(2 / 3)
    assert nodes[short_fen(fen_after("e2e4", "c7c5"))].probability == pytest.approx(1 / 3)
    assert nodes[short_fen(fen_after("e2e4", "e7e5", "g1f3"))].probability == pytest.approx(2 / 3)
    assert nodes[short_fen(fen_after("e2e4", "e7e5", "g1f3"))].remaining_depth == 0


@pytest.mark.asyncio
async def test_unlikely_lines_are_not_followed(lichess):
    lichess.add((), position(("e2e4", 900, 2000)))
    lichess.add(("e2e4",), position(("e7e5", 890, 2000), ("a7a6", 110, 2000), total=1000))

    await make_explorer(min_probability=0.2).explore(START, WHITE, max_depth=3)

    fens = called_fens(lichess)
    assert short_fen(fen_after("e2e4", "e7e5")) in fens
    assert short_fen(fen_after("e2e4", "a7a6")) not in fens


@pytest.mark.asyncio
async def test_black_repertoire_from_start(lichess):
    lichess.add((), position(("e2e4", 1000, 2000)))
    lichess.add(("e2e4",), position(("e7e5", 600, 2000), ("c7c5", 360, 2000), ("b8c6", 40, 2200)))

    run = await make_explorer().explore(START, BLACK, max_depth=2)

    assert [m.move for m in run.good_moves] == ["b8c6"]
    good = run.good_moves[0]
    assert good.probability == pytest.approx(1.0)
    assert good.raw_probability == pytest.approx(1.0)
    # Nc6 scored 10 wins and 10 draws out of 40 for black
    assert good.performance == pytest.approx(
        good.average_rating_all_moves + 400 * math.log10(0.375 / 0.625)
    )


@pytest.mark.asyncio
async def test_regressing_moves_are_not_followed(lichess):
    lichess.add((), position(("e2e4", 900, 2000), ("d2d4", 500, 2000), ("g1f3", 40, 2100)))
    coordinator = FakeCoordinator({
        short_fen(START): 0.3,
        short_fen(fen_after("e2e4")): 0.3,
        short_fen(fen_after("d2d4")): -0.5,
        short_fen(fen_after("g1f3")): 0.25,
    })

    run = await make_explorer(coordinator, eval_depth=12).explore(START, WHITE, max_depth=2)

    assert run.root_eval == pytest.approx(0.3)
    fens = called_fens(lichess)
    assert short_fen(fen_after("e2e4")) in fens
    assert short_fen(fen_after("d2d4")) not in fens
    assert [m.move for m in run.good_moves] == ["g1f3"]
    assert run.good_moves[0].evaluation == pytest.approx(0.25)
    assert all(depth == 12 for _, _, depth in coordinator.requested)


@pytest.mark.asyncio
async def test_failed_evaluation_is_not_requested_twice(lichess):
    lichess.add((), position(("e2e4", 2880, 2000), ("g1f3", 120, 2100)))
    coordinator = FakeCoordinator({
        short_fen(START): 0.3,
        short_fen(fen_after("e2e4")): 0.3,
        short_fen(fen_after("g1f3")): EngineChannelError("engine closed the channel"),
    })

    run = await make_explorer(coordinator, eval_depth=12).explore(START, WHITE, max_depth=1)

    nf3_requests = [r for r in coordinator.requested if r[1] == "g1f3"]
    assert len(nf3_requests) == 1
    assert run.error_count == 1
    assert [m.move for m in run.good_moves] == ["g1f3"]
    assert run.good_moves[0].evaluation is None


def test_regression_is_measured_for_the_target_side():
    explorer = make_explorer(max_eval_diff=0.5)
    for_black = ExplorationRun(root_fen=START, target_color=BLACK, max_depth=1, root_eval=0.0)
    assert explorer._regresses(for_black, 0.6)
    assert not explorer._regresses(for_black, -1.0)
    # exactly at the tolerance is still acceptable
    for_white = ExplorationRun(root_fen=START, target_color=WHITE, max_depth=1, root_eval=0.5)
    assert not explorer._regresses(for_white, 0.0)
    assert explorer._regresses(for_white, -0.1)


@pytest.mark.asyncio
async def test_without_engine_no_evaluations(lichess):
    lichess.add((), position(("e2e4", 900, 2000), ("g1f3", 40, 2100), total=1000))
    coordinator = FakeCoordinator({})

    # eval_depth 0 disables evaluation even with a coordinator
    run = await make_explorer(coordinator).explore(START, WHITE, max_depth=1)

    assert run.root_eval is None
    assert coordinator.requested == []
    assert run.good_moves[0].evaluation is None
