"""Natural-language coaching for weak moves.

Sends a compact fact bundle per move to a Gemini-style ``generateContent``
endpoint and asks for a small JSON object back.  The model's output is
untrusted: it may be fenced, prefixed with chatter, or cut off mid-string,
so the body goes through a repair step before it is accepted.  Any
failure degrades to a templated explanation built from the same facts;
coaching never fails an analysis.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

import httpx

from gamereview.errors import CoachingUnavailable, MalformedStructuredOutput

logger = logging.getLogger(__name__)

BATCH_SIZE = 10
DEFAULT_MODEL = "gemini-3-flash-preview"
DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

DEFAULT_FACTS_USED = ["evalBefore", "evalAfter", "deltaCp", "bestMove", "pvLine"]


# ---------------------------------------------------------------------------
# Public types
# ---------------------------------------------------------------------------


@dataclass
class CoachingFacts:
    """Everything the model is told about one move."""
    fen: str              # position before the move
    move: str             # SAN of the move played
    side_to_move: str     # "White" / "Black"
    label: str
    eval_before: str
    eval_after: str
    delta_cp: int
    best_move: str
    pv_line: str = ""


@dataclass
class Coaching:
    summary: str
    why_bad: str
    better_move: str
    tip: str
    facts_used: list[str] = field(default_factory=lambda: list(DEFAULT_FACTS_USED))

    def to_dict(self) -> dict:
        return {
            "summary": self.summary,
            "whyBad": self.why_bad,
            "betterMove": self.better_move,
            "tip": self.tip,
            "factsUsed": list(self.facts_used),
        }

    @classmethod
    def from_mapping(cls, data: dict, facts: CoachingFacts) -> Coaching | None:
        """Build from a parsed model response; None if it has no summary."""
        summary = data.get("summary")
        if not summary or not isinstance(summary, str):
            return None
        facts_used = data.get("factsUsed")
        if not isinstance(facts_used, list):
            facts_used = list(DEFAULT_FACTS_USED)
        return cls(
            summary=summary,
            why_bad=str(data.get("whyBad") or ""),
            better_move=str(data.get("betterMove") or facts.best_move),
            tip=str(data.get("tip") or ""),
            facts_used=[str(f) for f in facts_used],
        )


def fallback_coaching(facts: CoachingFacts) -> Coaching:
    """Deterministic explanation used when the model is absent or fails."""
    return Coaching(
        summary=(
            f"{facts.side_to_move}'s {facts.move} was a {facts.label}, "
            f"losing about {abs(facts.delta_cp)} centipawns."
        ),
        why_bad="The engine evaluation dropped significantly after this move.",
        better_move=facts.best_move,
        tip="Look at the engine line and consider what threats it creates.",
    )


# ---------------------------------------------------------------------------
# Structured output parsing
# ---------------------------------------------------------------------------

_LEADING_FENCE_RE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_TRAILING_FENCE_RE = re.compile(r"\s*```$")
_UNESCAPED_QUOTE_RE = re.compile(r'(?<!\\)"')


def _loads(text: str) -> dict | None:
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def _close_open(text: str) -> str:
    text += "]" * max(0, text.count("[") - text.count("]"))
    text += "}" * max(0, text.count("{") - text.count("}"))
    return text


def _repair(fragment: str) -> dict | None:
    """Best-effort completion of a JSON object cut off by the producer."""
    repaired = fragment
    if len(_UNESCAPED_QUOTE_RE.findall(repaired)) % 2:
        repaired += '"'
    repaired = _close_open(repaired)
    parsed = _loads(repaired)
    if parsed is not None:
        return parsed

    # Drop the dangling key/value after the last complete string value.
    cut = repaired.rfind('",')
    if cut <= 0:
        return None
    return _loads(_close_open(repaired[:cut + 1]))


def parse_structured(text: Any) -> dict | None:
    """Extract a JSON object from model output.

    Strips code fences and any preamble before the first ``{``, then tries
    a direct decode.  Truncated output is repaired by closing the open
    string, arrays and objects, and failing that by cutting back to the
    last complete string value.  Returns None rather than raising.
    """
    if not isinstance(text, str) or not text:
        return None
    cleaned = _LEADING_FENCE_RE.sub("", text.strip())
    cleaned = _TRAILING_FENCE_RE.sub("", cleaned)
    start = cleaned.find("{")
    if start == -1:
        return None
    fragment = cleaned[start:]

    try:
        value, _ = json.JSONDecoder().raw_decode(fragment)
    except json.JSONDecodeError:
        return _repair(fragment)
    return value if isinstance(value, dict) else None


def format_structured(coaching: Coaching) -> str:
    return json.dumps(coaching.to_dict())


# ---------------------------------------------------------------------------
# Model client
# ---------------------------------------------------------------------------

_SYSTEM_PROMPT = """\
You are a warm, experienced chess coach reviewing a game with a club \
player (roughly 1000-1600 Elo). Help them understand what happened, not \
just what the engine says.

For the move you are given:
- Describe what the position called for (development, king safety, open \
files, weak squares, pawn structure, piece activity).
- Explain in human terms what the played move gave up, allowed or missed. \
Name squares, pieces and ideas.
- Explain the idea behind the engine's preferred move.
- End with one practical lesson.

RULES:
- Talk like a coach, not a computer. Do not restate evaluation numbers.
- Name the theme when it applies: pin, fork, discovered attack, outpost, \
weak back rank, open file, pawn break.
- Do NOT invent tactics or material changes the position does not support.

Return ONLY a JSON object (no markdown, no code fences) with these keys:
- "summary": at most 3 short sentences (~40 words)
- "whyBad": 1 sentence (~20 words)
- "betterMove": 1 sentence on the idea of the better move (~20 words)
- "tip": 1 short sentence (~15 words)
- "factsUsed": a short array of the fact names you relied on\
"""

_RESPONSE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "summary": {"type": "STRING"},
        "whyBad": {"type": "STRING"},
        "betterMove": {"type": "STRING"},
        "tip": {"type": "STRING"},
        "factsUsed": {"type": "ARRAY", "items": {"type": "STRING"}},
    },
    "required": ["summary", "whyBad", "betterMove", "tip", "factsUsed"],
}


def format_coaching_prompt(facts: CoachingFacts) -> str:
    lines = [
        f"Position (FEN): {facts.fen}",
        f"Move played: {facts.side_to_move} played {facts.move}",
        f"Classification: {facts.label}",
        f"Eval before the move: {facts.eval_before}",
        f"Eval after the move: {facts.eval_after}",
        f"Centipawn loss: {abs(facts.delta_cp)}",
        f"Engine's best move: {facts.best_move}",
        f"Engine's main line: {facts.pv_line or 'not available'}",
        "",
        "Coach this move.",
    ]
    return "\n".join(lines)


def normalize_model(model: str) -> str:
    if not model:
        return ""
    return model if model.startswith("models/") else f"models/{model}"


def _error_detail(resp: httpx.Response) -> str:
    """Short description of an error body for the log."""
    text = resp.text
    if not text:
        return ""
    try:
        data = json.loads(text)
    except ValueError:
        data = None
    if isinstance(data, dict):
        error = data.get("error")
        message = (error.get("message") if isinstance(error, dict) else None) or data.get("message")
        if message:
            return str(message)
    return " ".join(text[:200].split())


class GeminiCoach:
    """Asks a Gemini ``generateContent`` endpoint to explain one move."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        *,
        base_url: str = DEFAULT_BASE_URL,
        temperature: float = 0.2,
        timeout: float = 30.0,
    ):
        self._api_key = api_key
        self._model = normalize_model(model)
        self._base_url = base_url.rstrip("/")
        self._temperature = temperature
        self._timeout = timeout

    def _request_body(self, facts: CoachingFacts) -> dict[str, Any]:
        return {
            "systemInstruction": {"parts": [{"text": _SYSTEM_PROMPT}]},
            "contents": [{"role": "user", "parts": [{"text": format_coaching_prompt(facts)}]}],
            "generationConfig": {
                "temperature": self._temperature,
                "topP": 0.8,
                "maxOutputTokens": 4096,
                "responseMimeType": "application/json",
                "responseSchema": _RESPONSE_SCHEMA,
            },
        }

    async def generate(self, facts: CoachingFacts) -> str:
        """POST one request and return the raw candidate text.

        Raises CoachingUnavailable on transport or HTTP failure and
        MalformedStructuredOutput if the envelope has no text part.
        """
        if not self._model:
            raise CoachingUnavailable("Model not configured")
        url = f"{self._base_url}/{self._model}:generateContent"
        headers = {"x-goog-api-key": self._api_key}
        logger.info("Coaching request model=%s move=%s label=%s",
                    self._model, facts.move, facts.label)
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=self._request_body(facts), headers=headers)
        except httpx.HTTPError as e:
            raise CoachingUnavailable(f"Network error: {e}") from e

        if not resp.is_success:
            detail = _error_detail(resp)
            raise CoachingUnavailable(
                f"HTTP {resp.status_code}" + (f": {detail}" if detail else "")
            )

        try:
            candidate = resp.json()["candidates"][0]
            text = candidate["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise MalformedStructuredOutput(f"Unexpected response shape: {e!r}") from e
        if not isinstance(text, str):
            raise MalformedStructuredOutput(f"Candidate text is {type(text).__name__}, not a string")

        finish_reason = candidate.get("finishReason") or ""
        if finish_reason and finish_reason != "STOP":
            logger.warning("Non-STOP finish (%s) for %s", finish_reason, facts.move)
        return text

    async def explain(self, facts: CoachingFacts) -> Coaching:
        text = await self.generate(facts)
        parsed = parse_structured(text)
        coaching = Coaching.from_mapping(parsed, facts) if parsed is not None else None
        if coaching is None:
            raise MalformedStructuredOutput(f"Unusable response: {text[:200]!r}")
        return coaching


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

ResultCallback = Callable[[int, Coaching], Awaitable[None]]


class CoachingDispatcher:
    """Explains flagged moves in bounded concurrent batches.

    Without a coach every move gets the templated explanation.
    """

    def __init__(self, coach: GeminiCoach | None = None, batch_size: int = BATCH_SIZE):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self._coach = coach
        self._batch_size = batch_size

    @property
    def enabled(self) -> bool:
        return self._coach is not None

    async def explain(self, facts: CoachingFacts) -> Coaching:
        if self._coach is None:
            return fallback_coaching(facts)
        try:
            return await self._coach.explain(facts)
        except CoachingUnavailable as e:
            logger.warning("Coaching failed for %s (%s): %s", facts.move, facts.label, e)
            return fallback_coaching(facts)

    async def explain_all(
        self,
        facts: Sequence[CoachingFacts],
        on_result: ResultCallback | None = None,
    ) -> list[Coaching]:
        """Explain every bundle, returning results in input order.

        Bundles run concurrently within a batch and batches run one after
        another.  *on_result* is awaited with ``(index, coaching)`` as each
        explanation completes, which may be out of input order.
        """
        results: list[Coaching | None] = [None] * len(facts)

        async def _one(index: int) -> None:
            coaching = await self.explain(facts[index])
            results[index] = coaching
            if on_result is not None:
                await on_result(index, coaching)

        for start in range(0, len(facts), self._batch_size):
            batch = range(start, min(start + self._batch_size, len(facts)))
            await asyncio.gather(*(_one(i) for i in batch))
        return [r for r in results if r is not None]
