"""
Evaluation coordinator: serializes engine evaluations over one channel.

The engine channel can only analyse one position end to end, and the remote
session model wants a fresh connection per position. Requests are therefore
queued and run strictly one at a time: each ``bestmove`` completes the future
registered for the analysed position and immediately starts the next queued
task. There is no background poller; ``start_evaluations`` kicks the pipeline
and completions keep it moving.

Usage:
  coordinator.request_evaluation(fen, "e2e4", depth=20)
  await coordinator.start_evaluations()
  result = await coordinator.get_evaluation_result(fen, "e2e4")
"""

import asyncio
from collections import deque
from typing import Callable

from engine_channel import EngineChannel
from errors import EngineChannelError
from logging_config import setup_logging
from models import EvaluationResult, EvaluationTask
from positions import resulting_fen, short_fen
from uci_messages import (
    detect_sacrifices,
    extract_pv,
    has_score,
    parse_best_move,
    parse_depth,
    parse_score,
    pv_to_san,
)

logger = setup_logging(__name__)

ChannelFactory = Callable[[], EngineChannel]


class EvaluationCoordinator:
    """Owns the engine channel and the short-FEN -> future table for one run."""

    def __init__(self, channel_factory: ChannelFactory, engine_options: dict[str, str] | None = None):
        self._channel_factory = channel_factory
        self.engine_options = engine_options or {}
        self._queue: deque[EvaluationTask] = deque()
        self._results: dict[str, asyncio.Future] = {}
        # one release per completed (or failed) evaluation
        self._best_move_signals = asyncio.Semaphore(0)
        self._channel: EngineChannel | None = None
        self._reader: asyncio.Task | None = None
        self._in_flight: EvaluationTask | None = None
        self._current_eval: float | None = None
        self._current_depth: int | None = None
        self._current_pv: list[str] = []

    async def __aenter__(self) -> "EvaluationCoordinator":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def queued(self) -> int:
        return len(self._queue)

    @property
    def in_flight(self) -> EvaluationTask | None:
        return self._in_flight

    def request_evaluation(self, fen: str, move: str | None = None, depth: int = 20) -> EvaluationTask:
        """Queue evaluation of ``fen`` (after ``move`` when given). Does not start it."""
        task = self._make_task(fen, move, depth)
        logger.debug("queued evaluation: move=%s fen=%s", move, task.fen)
        self._queue.append(task)
        return task

    def request_evaluation_list(self, fen: str, moves: list[str], depth: int = 20) -> list[EvaluationTask]:
        """
        Queue one evaluation per move from the same position, in the given order.
        Nothing is queued if any move cannot be played.
        """
        tasks = [self._make_task(fen, move, depth) for move in moves]
        logger.debug("queued %d evaluations from %s at depth %d", len(tasks), fen, depth)
        self._queue.extend(tasks)
        return tasks

    async def start_evaluations(self) -> None:
        """Run the next queued task, unless one is already in flight."""
        if self._in_flight is not None:
            logger.debug("evaluation in flight; queue advances on its bestmove")
            return
        await self._run_next_task()

    async def get_evaluation_result(self, fen: str, move: str | None = None) -> EvaluationResult:
        """
        Wait for the next best-move signal, then for the result of the position
        reached by ``move`` from ``fen``. Raises EngineChannelError if that
        evaluation failed, or IllegalMoveError before waiting for a bad move.
        No timeout: a stalled engine blocks the caller.
        """
        key = short_fen(resulting_fen(fen, move))
        await self._best_move_signals.acquire()
        result = await asyncio.shield(self._future_for(key))
        logger.debug("evaluation ready: move=%s eval=%s best=%s", move, result.evaluation, result.best_move)
        return result

    async def close(self) -> None:
        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        if self._queue:
            logger.warning("closing with %d evaluations still queued", len(self._queue))
        await self._close_channel()
        self._in_flight = None

    def _make_task(self, fen: str, move: str | None, depth: int) -> EvaluationTask:
        final_fen = resulting_fen(fen, move)
        return EvaluationTask(
            base_fen=fen,
            move=move,
            fen=final_fen,
            short_fen=short_fen(final_fen),
            depth=depth,
        )

    def _future_for(self, key: str) -> asyncio.Future:
        future = self._results.get(key)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            self._results[key] = future
        return future

    async def _run_next_task(self) -> None:
        self._in_flight = None
        while self._queue:
            task = self._queue.popleft()
            self._in_flight = task
            try:
                await self._start_task(task)
                return
            except (EngineChannelError, OSError) as e:
                logger.error("could not start evaluation of %s: %s", task.fen, e)
                self._fail(task, e if isinstance(e, EngineChannelError) else EngineChannelError(str(e)))
        self._in_flight = None

    async def _start_task(self, task: EvaluationTask) -> None:
        future = self._results.get(task.short_fen)
        if future is None or future.done():
            self._results[task.short_fen] = asyncio.get_running_loop().create_future()
        self._current_eval = None
        self._current_depth = None
        self._current_pv = []

        await self._close_channel()
        channel = self._channel_factory()
        self._channel = channel
        await channel.open()

        logger.debug("evaluating %s at depth %d", task.fen, task.depth)
        await channel.send("stop")
        await channel.send("setoption name MultiPV value 1")
        for name, value in self.engine_options.items():
            await channel.send(f"setoption name {name} value {value}")
        await channel.send(f"position fen {task.fen}")
        await channel.send(f"go depth {task.depth}")
        self._reader = asyncio.create_task(self._read_messages(channel, task))

    async def _close_channel(self) -> None:
        channel, self._channel = self._channel, None
        if channel is not None:
            await channel.close()

    async def _read_messages(self, channel: EngineChannel, task: EvaluationTask) -> None:
        try:
            while True:
                message = await channel.receive()
                if has_score(message):
                    self._on_info(task, message)
                elif message.startswith("bestmove"):
                    self._on_best_move(task, message)
                    break
        except (EngineChannelError, OSError, ValueError) as e:
            logger.error("evaluation of %s failed: %s", task.fen, e)
            self._fail(task, e if isinstance(e, EngineChannelError) else EngineChannelError(str(e)))
        await self._run_next_task()

    def _on_info(self, task: EvaluationTask, message: str) -> None:
        self._current_eval = parse_score(task.fen, message)
        self._current_depth = parse_depth(message) or self._current_depth
        self._current_pv = extract_pv(message) or self._current_pv

    def _on_best_move(self, task: EvaluationTask, message: str) -> None:
        best_move = parse_best_move(message)
        if self._current_eval is None:
            raise EngineChannelError(f"bestmove without a score for {task.fen}")
        if self._current_pv and detect_sacrifices(task.fen, self._current_pv):
            logger.info("sacrifice in engine line: %s", pv_to_san(task.fen, self._current_pv))

        result = EvaluationResult(
            evaluation=self._current_eval,
            best_move=None if best_move == "(none)" else best_move,
            depth=self._current_depth,
        )
        future = self._future_for(task.short_fen)
        if not future.done():
            future.set_result(result)
        logger.debug("completed %s: eval=%s best=%s", task.short_fen, result.evaluation, result.best_move)
        self._best_move_signals.release()

    def _fail(self, task: EvaluationTask, error: EngineChannelError) -> None:
        future = self._future_for(task.short_fen)
        if not future.done():
            future.set_exception(error)
        self._best_move_signals.release()
