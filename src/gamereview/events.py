"""Progress events emitted while a game is analyzed."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import ClassVar


@dataclass
class PhaseEvent:
    name: ClassVar[str] = "phase"
    phase: str
    total: int

    def payload(self) -> dict:
        return {"phase": self.phase, "total": self.total}


@dataclass
class EvaluationProgressEvent:
    name: ClassVar[str] = "evaluationProgress"
    current: int
    total: int

    def payload(self) -> dict:
        return {"current": self.current, "total": self.total}


@dataclass
class MoveEvent:
    """A freshly labeled move; carries every record field except coaching."""
    name: ClassVar[str] = "move"
    record: dict = field(default_factory=dict)

    def payload(self) -> dict:
        return dict(self.record)


@dataclass
class CoachEvent:
    name: ClassVar[str] = "coach"
    ply: int
    explanation: dict
    current: int
    total: int

    def payload(self) -> dict:
        return {
            "ply": self.ply,
            "explanation": self.explanation,
            "current": self.current,
            "total": self.total,
        }


@dataclass
class DoneEvent:
    name: ClassVar[str] = "done"
    total_moves: int
    explained: int

    def payload(self) -> dict:
        return {"totalMoves": self.total_moves, "explained": self.explained}


@dataclass
class ErrorEvent:
    name: ClassVar[str] = "error"
    message: str

    def payload(self) -> dict:
        return {"message": self.message}


Event = PhaseEvent | EvaluationProgressEvent | MoveEvent | CoachEvent | DoneEvent | ErrorEvent


def format_sse(event: Event) -> str:
    """Render an event as one server-sent-events frame."""
    return f"event: {event.name}\ndata: {json.dumps(event.payload())}\n\n"
