"""Move quality classification.

Engine scores are reported from the side to move's point of view.  To
compare the positions before and after a move, both scores are pinned to
the mover, mate scores are saturated, and the difference is bucketed into
one of five labels.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

import chess

from gamereview.engine import Evaluation


class MoveQuality(enum.Enum):
    GOOD = "good"
    OK = "ok"
    INACCURACY = "inaccuracy"
    MISTAKE = "mistake"
    BLUNDER = "blunder"

    @property
    def rank(self) -> int:
        """0 for the best label, 4 for the worst."""
        return _RANKS[self]


_RANKS = {quality: i for i, quality in enumerate(MoveQuality)}

# Labels that get a coaching explanation.
EXPLAINED = frozenset({MoveQuality.INACCURACY, MoveQuality.MISTAKE, MoveQuality.BLUNDER})

# Stand-in centipawn value for a forced mate.
MATE_CP = 10_000

# Mover-relative delta thresholds, checked in this order.
_GOOD_THRESHOLD = 30
_BLUNDER_THRESHOLD = -300
_MISTAKE_THRESHOLD = -150
_INACCURACY_THRESHOLD = -50


@dataclass(frozen=True)
class Score:
    """An engine score pinned to one side.

    ``value`` is the comparable integer (mate saturated to ±MATE_CP);
    ``cp`` and ``mate`` keep the raw reading for display.
    """
    color: chess.Color
    value: int
    cp: int | None = None
    mate: int | None = None


@dataclass(frozen=True)
class Classification:
    delta_cp: int
    label: MoveQuality


def score_of(ev: Evaluation, side_to_move: chess.Color) -> Score:
    """Wrap an engine evaluation as a Score from the side to move's view."""
    if ev.score_mate is not None:
        # mate 0: the side to move is already mated.
        value = MATE_CP if ev.score_mate > 0 else -MATE_CP
        return Score(color=side_to_move, value=value, mate=ev.score_mate)
    cp = ev.score_cp if ev.score_cp is not None else 0
    return Score(color=side_to_move, value=cp, cp=cp)


def reanchor(score: Score, color: chess.Color) -> Score:
    """Express *score* from *color*'s point of view."""
    if score.color == color:
        return score
    return Score(
        color=color,
        value=-score.value,
        cp=-score.cp if score.cp is not None else None,
        mate=-score.mate if score.mate is not None else None,
    )


def label_from_delta(delta_cp: int) -> MoveQuality:
    if delta_cp >= _GOOD_THRESHOLD:
        return MoveQuality.GOOD
    if delta_cp <= _BLUNDER_THRESHOLD:
        return MoveQuality.BLUNDER
    if delta_cp <= _MISTAKE_THRESHOLD:
        return MoveQuality.MISTAKE
    if delta_cp <= _INACCURACY_THRESHOLD:
        return MoveQuality.INACCURACY
    return MoveQuality.OK


def should_explain(label: MoveQuality) -> bool:
    return label in EXPLAINED


def classify(before: Evaluation, after: Evaluation, mover: chess.Color) -> Classification:
    """Classify the move *mover* played between two engine evaluations.

    *before* is the evaluation of the position the mover faced (mover to
    move); *after* is the evaluation of the resulting position (opponent
    to move).  A positive delta means the mover gained.
    """
    mover_before = reanchor(score_of(before, mover), mover)
    mover_after = reanchor(score_of(after, not mover), mover)
    delta = mover_after.value - mover_before.value
    return Classification(delta_cp=delta, label=label_from_delta(delta))


def white_score(ev: Evaluation, side_to_move: chess.Color) -> Score:
    return reanchor(score_of(ev, side_to_move), chess.WHITE)


def format_eval(score: Score) -> str:
    """Format a score from White's view: ``M3``, ``M-2`` or ``0.35``."""
    white = reanchor(score, chess.WHITE)
    if white.mate is not None:
        return f"M{white.mate}"
    return f"{(white.cp or 0) / 100:.2f}"
