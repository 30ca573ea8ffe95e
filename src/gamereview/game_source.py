"""Turn submitted game text into a move list.

python-chess does the PGN parsing and legality checks.  When its reader
rejects the text (pasted move lists without headers often trip it), the
moves are replayed token by token so the error can name the exact move
that failed.
"""

from __future__ import annotations

import io
import logging
import re

import chess
import chess.pgn

from gamereview.errors import InvalidGame

logger = logging.getLogger(__name__)

PV_SAN_LIMIT = 6

_COMMENT_RE = re.compile(r"\{[^}]*\}")
_VARIATION_RE = re.compile(r"\([^)]*\)")
_MOVE_NUMBER_RE = re.compile(r"\d+\.(?:\.\.)?")
_RESULTS = {"1-0", "0-1", "1/2-1/2", "*"}


def _tokenize(text: str) -> list[str]:
    lines = []
    for line in text.replace("\r\n", "\n").split("\n"):
        if line.strip().startswith("["):
            continue
        lines.append(line.split(";", 1)[0])
    body = " ".join(lines)
    body = _COMMENT_RE.sub(" ", body)
    body = _VARIATION_RE.sub(" ", body)
    body = _MOVE_NUMBER_RE.sub(" ", body)
    return body.split()


def _parse_token(board: chess.Board, token: str) -> chess.Move:
    try:
        return board.parse_san(token)
    except ValueError:
        pass
    try:
        move = chess.Move.from_uci(token)
    except ValueError as e:
        raise ValueError(token) from e
    if move not in board.legal_moves:
        raise ValueError(token)
    return move


def _replay_tokens(text: str) -> list[chess.Move]:
    board = chess.Board()
    moves: list[chess.Move] = []
    for token in _tokenize(text):
        cleaned = token.rstrip("!?")
        if not cleaned or cleaned in _RESULTS or cleaned.startswith("$"):
            continue
        try:
            move = _parse_token(board, cleaned)
        except ValueError:
            ply = len(moves)
            side = "White" if ply % 2 == 0 else "Black"
            raise InvalidGame(
                f'Invalid move "{token}" at move {ply // 2 + 1} ({side}).'
            ) from None
        board.push(move)
        moves.append(move)
    if not moves:
        raise InvalidGame("Invalid PGN: no moves found.")
    return moves


def load_game(pgn_text: str) -> tuple[chess.Board, list[chess.Move]]:
    """Parse PGN (or a bare move list) into a starting board and its mainline.

    A FEN header sets the starting position; the token fallback always
    starts from the standard position.
    """
    if not pgn_text or not pgn_text.strip():
        raise InvalidGame("PGN is required.")
    game = chess.pgn.read_game(io.StringIO(pgn_text))
    if game is not None and not game.errors:
        moves = list(game.mainline_moves())
        if moves:
            return game.board(), moves
    logger.debug("PGN reader rejected input, replaying tokens")
    return chess.Board(), _replay_tokens(pgn_text)


def uci_to_san(board: chess.Board, uci: str | None) -> str:
    """SAN for *uci* on *board*, or "" if it is missing or not playable."""
    if not uci:
        return ""
    try:
        move = chess.Move.from_uci(uci)
    except ValueError:
        return ""
    if move not in board.legal_moves:
        return ""
    return board.san(move)


def pv_to_san(board: chess.Board, pv: list[str], limit: int = PV_SAN_LIMIT) -> list[str]:
    """Convert the head of a principal variation to SAN.

    Stops at the first move that cannot be played.
    """
    replay = board.copy(stack=False)
    san: list[str] = []
    for uci in pv[:limit]:
        try:
            move = chess.Move.from_uci(uci)
        except ValueError:
            break
        if move not in replay.legal_moves:
            break
        san.append(replay.san(move))
        replay.push(move)
    return san
