"""Game analysis pipeline.

Runs in three phases over one game:

1. evaluate every position once with a single engine session,
2. label each move from the cached evaluations and stream it out,
3. explain the weak moves in batches and stream each explanation.

Only engine failures abort a run.  The caller gets the ordered list of
move records whether or not anyone consumed the events.
"""

from __future__ import annotations

import enum
import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

import chess

from gamereview.classifier import (
    MoveQuality,
    classify,
    format_eval,
    should_explain,
    white_score,
)
from gamereview.coaching import Coaching, CoachingDispatcher, CoachingFacts, GeminiCoach
from gamereview.config import Settings
from gamereview.engine import EngineSession, Evaluation
from gamereview.errors import EngineError
from gamereview.events import (
    CoachEvent,
    DoneEvent,
    ErrorEvent,
    EvaluationProgressEvent,
    Event,
    MoveEvent,
    PhaseEvent,
)
from gamereview.game_source import load_game, pv_to_san, uci_to_san

logger = logging.getLogger(__name__)

EmitFn = Callable[[Event], Awaitable[None] | None]


class PipelineState(enum.Enum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    LABELING = "labeling"
    COACHING = "coaching"
    DONE = "done"
    FAILED = "failed"


@dataclass
class MoveRecord:
    ply: int
    move_number: int
    mover: str              # "White" / "Black"
    san: str
    uci: str
    eval_before: str        # White's view, formatted
    eval_after: str
    delta_cp: int           # mover's view, positive = mover gained
    label: MoveQuality
    best_move: str          # SAN, "" if unknown
    pv: list[str]           # SAN
    coaching: Coaching | None = None

    def to_dict(self, include_coaching: bool = True) -> dict:
        data = {
            "ply": self.ply,
            "moveNumber": self.move_number,
            "mover": self.mover,
            "san": self.san,
            "uci": self.uci,
            "evalBefore": self.eval_before,
            "evalAfter": self.eval_after,
            "deltaCp": self.delta_cp,
            "label": self.label.value,
            "bestMove": self.best_move,
            "pv": list(self.pv),
        }
        if include_coaching:
            data["explanation"] = self.coaching.to_dict() if self.coaching else None
        return data


def _color_name(color: chess.Color) -> str:
    return "White" if color == chess.WHITE else "Black"


class _Emitter:
    """Forwards events to the consumer and stops once it fails.

    A consumer that disconnects must not take the run down with it.
    """

    def __init__(self, emit: EmitFn | None):
        self._emit = emit
        self.detached = emit is None

    async def __call__(self, event: Event) -> None:
        if self.detached:
            return
        try:
            result = self._emit(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.info("Event consumer went away during %s event: %s", event.name, e)
            self.detached = True


class AnalysisPipeline:
    """Analyzes one game per ``run`` call.

    *engine_factory* returns an unopened EngineSession; a fresh one is
    used for every run and closed as soon as evaluation finishes.
    """

    def __init__(
        self,
        engine_factory: Callable[[], EngineSession],
        dispatcher: CoachingDispatcher | None = None,
        *,
        depth: int = 12,
        max_moves: int = 120,
    ):
        self._engine_factory = engine_factory
        self._dispatcher = dispatcher or CoachingDispatcher()
        self._depth = depth
        self._max_moves = max_moves
        self.state = PipelineState.IDLE

    @classmethod
    def from_settings(cls, settings: Settings) -> AnalysisPipeline:
        def engine_factory() -> EngineSession:
            return EngineSession(
                settings.stockfish_path,
                settings.stockfish_hash_mb,
                handshake_timeout=settings.engine_handshake_timeout,
                request_timeout=settings.engine_request_timeout,
            )

        coach = None
        if settings.coaching_enabled:
            coach = GeminiCoach(
                settings.gemini_api_key,
                settings.gemini_model,
                base_url=settings.gemini_base_url,
                temperature=settings.gemini_temperature,
                timeout=settings.llm_timeout,
            )
            logger.info("Coaching enabled with model %s", settings.gemini_model)
        dispatcher = CoachingDispatcher(coach, batch_size=settings.coach_batch_size)
        return cls(
            engine_factory,
            dispatcher,
            depth=settings.stockfish_depth,
            max_moves=settings.max_moves,
        )

    async def run(
        self,
        moves: Sequence[chess.Move],
        emit: EmitFn | None = None,
        start: chess.Board | None = None,
    ) -> list[MoveRecord]:
        """Analyze *moves* played from *start* (the standard position by default).

        Engine errors are reported as one ``error`` event and re-raised.
        """
        emitter = _Emitter(emit)
        start = start.copy(stack=False) if start is not None else chess.Board()
        capped = list(moves)[: self._max_moves]
        logger.info("Analysis start: %d moves (cap %d)", len(moves), self._max_moves)

        self.state = PipelineState.EVALUATING
        try:
            applied, evaluations = await self._evaluate(start, capped, emitter)
        except EngineError as e:
            self.state = PipelineState.FAILED
            logger.error("Analysis failed: %s", e)
            await emitter(ErrorEvent(message=str(e)))
            raise

        self.state = PipelineState.LABELING
        records, queue = await self._label(start, applied, evaluations, emitter)

        self.state = PipelineState.COACHING
        await self._coach(records, queue, emitter)

        self.state = PipelineState.DONE
        await emitter(DoneEvent(total_moves=len(records), explained=len(queue)))
        logger.info("Analysis complete: %d moves, %d explained", len(records), len(queue))
        return records

    async def _evaluate(
        self,
        start: chess.Board,
        moves: list[chess.Move],
        emit: _Emitter,
    ) -> tuple[list[chess.Move], list[Evaluation]]:
        total = len(moves) + 1
        await emit(PhaseEvent(phase="evaluating", total=total))

        board = start.copy(stack=False)
        applied: list[chess.Move] = []
        evaluations: list[Evaluation] = []
        async with self._engine_factory() as session:
            evaluations.append(await session.evaluate(board.fen(), self._depth))
            await emit(EvaluationProgressEvent(current=1, total=total))
            for move in moves:
                if move not in board.legal_moves:
                    logger.warning("Stopping at illegal move %s", move.uci())
                    break
                board.push(move)
                applied.append(move)
                evaluations.append(await session.evaluate(board.fen(), self._depth))
                await emit(EvaluationProgressEvent(current=len(evaluations), total=total))
        logger.info("Engine done: %d positions", len(evaluations))
        return applied, evaluations

    async def _label(
        self,
        start: chess.Board,
        moves: list[chess.Move],
        evaluations: list[Evaluation],
        emit: _Emitter,
    ) -> tuple[list[MoveRecord], list[tuple[int, CoachingFacts]]]:
        records: list[MoveRecord] = []
        queue: list[tuple[int, CoachingFacts]] = []
        board = start.copy(stack=False)
        for i, move in enumerate(moves):
            mover = board.turn
            before, after = evaluations[i], evaluations[i + 1]
            result = classify(before, after, mover)
            fen_before = board.fen()
            move_number = board.fullmove_number
            best_san = uci_to_san(board, before.best_move)
            pv_san = pv_to_san(board, before.pv)
            san = board.san(move)
            board.push(move)

            record = MoveRecord(
                ply=i + 1,
                move_number=move_number,
                mover=_color_name(mover),
                san=san,
                uci=move.uci(),
                eval_before=format_eval(white_score(before, mover)),
                eval_after=format_eval(white_score(after, not mover)),
                delta_cp=result.delta_cp,
                label=result.label,
                best_move=best_san,
                pv=pv_san,
            )
            await emit(MoveEvent(record=record.to_dict(include_coaching=False)))

            if should_explain(result.label):
                queue.append((len(records), CoachingFacts(
                    fen=fen_before,
                    move=san,
                    side_to_move=record.mover,
                    label=result.label.value,
                    eval_before=record.eval_before,
                    eval_after=record.eval_after,
                    delta_cp=result.delta_cp,
                    best_move=best_san or before.best_move or "unknown",
                    pv_line=" ".join(pv_san),
                )))
            records.append(record)
        return records, queue

    async def _coach(
        self,
        records: list[MoveRecord],
        queue: list[tuple[int, CoachingFacts]],
        emit: _Emitter,
    ) -> None:
        total = len(queue)
        logger.info("Coaching start: %d moves to explain", total)
        await emit(PhaseEvent(phase="coaching", total=total))
        completed = 0

        async def on_result(index: int, coaching: Coaching) -> None:
            nonlocal completed
            completed += 1
            record = records[queue[index][0]]
            await emit(CoachEvent(
                ply=record.ply,
                explanation=coaching.to_dict(),
                current=completed,
                total=total,
            ))

        results = await self._dispatcher.explain_all([facts for _, facts in queue], on_result)
        for (record_index, _), coaching in zip(queue, results):
            records[record_index].coaching = coaching


async def analyze_game(
    pgn_text: str,
    settings: Settings | None = None,
    emit: EmitFn | None = None,
) -> list[MoveRecord]:
    """Parse *pgn_text* and analyze it with a pipeline built from *settings*."""
    start, moves = load_game(pgn_text)
    pipeline = AnalysisPipeline.from_settings(settings or Settings())
    return await pipeline.run(moves, emit=emit, start=start)
