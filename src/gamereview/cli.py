"""CLI for analyzing a single game.

Usage:
    python -m gamereview.cli <pgn-file|-> [--depth N] [--max-moves N]
        [--stockfish PATH] [--no-llm] [--events]

Prints the annotated move list as JSON.  With --events, every progress
event is printed as one JSON line while the analysis runs.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from gamereview.config import Settings
from gamereview.errors import EngineError, InvalidGame
from gamereview.events import Event
from gamereview.game_source import load_game
from gamereview.pipeline import AnalysisPipeline


def _print_event(event: Event) -> None:
    print(json.dumps({"event": event.name, "data": event.payload()}), flush=True)


async def _run(args: argparse.Namespace, settings: Settings) -> list[dict]:
    if args.pgn == "-":
        pgn_text = sys.stdin.read()
    else:
        with open(args.pgn) as f:
            pgn_text = f.read()
    start, moves = load_game(pgn_text)
    pipeline = AnalysisPipeline.from_settings(settings)
    records = await pipeline.run(
        moves, emit=_print_event if args.events else None, start=start,
    )
    return [r.to_dict() for r in records]


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Analyze a chess game move by move")
    parser.add_argument("pgn", help="PGN file to analyze, or - for stdin")
    parser.add_argument("--depth", type=int, help="Engine search depth")
    parser.add_argument("--max-moves", type=int, help="Analyze at most this many plies")
    parser.add_argument("--stockfish", help="Path to the Stockfish binary")
    parser.add_argument(
        "--no-llm", action="store_true",
        help="Skip the text-generation service; use templated coaching",
    )
    parser.add_argument(
        "--events", action="store_true",
        help="Print progress events as JSON lines while analyzing",
    )
    args = parser.parse_args(argv)

    settings = Settings()
    overrides = {}
    if args.depth is not None:
        overrides["stockfish_depth"] = args.depth
    if args.max_moves is not None:
        overrides["max_moves"] = args.max_moves
    if args.stockfish:
        overrides["stockfish_path"] = args.stockfish
    if args.no_llm:
        overrides["gemini_api_key"] = None
    settings = settings.model_copy(update=overrides)

    logging.basicConfig(
        level=settings.log_level.upper(), stream=sys.stderr,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )

    try:
        result = asyncio.run(_run(args, settings))
    except (InvalidGame, OSError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    except EngineError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    json.dump(result, sys.stdout, indent=2)
    print()
    return 0


if __name__ == "__main__":
    sys.exit(main())
