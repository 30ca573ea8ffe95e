"""Tests for turning submitted game text into moves."""

import chess
import pytest

from gamereview.errors import InvalidGame
from gamereview.game_source import load_game, pv_to_san, uci_to_san


def _ucis(moves):
    return [m.uci() for m in moves]


class TestLoadGame:
    def test_full_pgn(self):
        pgn = """[Event "Club"]
[Site "?"]
[White "A"]
[Black "B"]
[Result "1-0"]

1. e4 e5 2. Bc4 Nc6 3. Qh5 Nf6 4. Qxf7# 1-0
"""
        board, moves = load_game(pgn)
        assert board.fen() == chess.STARTING_FEN
        assert _ucis(moves) == ["e2e4", "e7e5", "f1c4", "b8c6", "d1h5", "g8f6", "h5f7"]

    def test_bare_move_list(self):
        _, moves = load_game("1. d4 d5 2. c4")
        assert _ucis(moves) == ["d2d4", "d7d5", "c2c4"]

    def test_comments_and_variations_are_skipped(self):
        _, moves = load_game("1. e4 {best by test} e5 (1... c5 2. Nf3) 2. Nf3 $1 Nc6 *")
        assert _ucis(moves) == ["e2e4", "e7e5", "g1f3", "b8c6"]

    def test_fen_header_sets_start(self):
        fen = "4k3/8/8/8/8/8/4P3/4K3 w - - 0 1"
        pgn = f'[SetUp "1"]\n[FEN "{fen}"]\n\n1. e4 *\n'
        board, moves = load_game(pgn)
        assert board.fen() == fen
        assert _ucis(moves) == ["e2e4"]

    @pytest.mark.parametrize("text", ["", "   ", "\n\n"])
    def test_empty_input(self, text):
        with pytest.raises(InvalidGame, match="PGN is required"):
            load_game(text)

    def test_headers_only(self):
        with pytest.raises(InvalidGame, match="no moves found"):
            load_game('[Event "Empty"]\n[Result "*"]\n\n*\n')


class TestTokenFallback:
    def test_illegal_white_move_is_named(self):
        with pytest.raises(InvalidGame) as exc:
            load_game("1. e4 e5 2. Ke3")
        assert str(exc.value) == 'Invalid move "Ke3" at move 2 (White).'

    def test_illegal_black_move_is_named(self):
        with pytest.raises(InvalidGame) as exc:
            load_game("1. e4 Qh5")
        assert str(exc.value) == 'Invalid move "Qh5" at move 1 (Black).'

    def test_uci_tokens(self):
        _, moves = load_game("e2e4 e7e5 g1f3")
        assert _ucis(moves) == ["e2e4", "e7e5", "g1f3"]

    def test_annotations_and_line_comments(self):
        text = "1. e4! e5?! ; opening\n2. Nf3!! Nc6?? 1/2-1/2"
        _, moves = load_game(text)
        assert _ucis(moves) == ["e2e4", "e7e5", "g1f3", "b8c6"]

    def test_black_move_number_notation(self):
        _, moves = load_game("1. e4 1... e5 2. Nf3")
        assert _ucis(moves) == ["e2e4", "e7e5", "g1f3"]


class TestSanHelpers:
    def test_uci_to_san(self):
        assert uci_to_san(chess.Board(), "g1f3") == "Nf3"

    @pytest.mark.parametrize("uci", [None, "", "e2e5", "zz"])
    def test_uci_to_san_unplayable(self, uci):
        assert uci_to_san(chess.Board(), uci) == ""

    def test_pv_to_san_limits_length(self):
        pv = ["e2e4", "e7e5", "g1f3", "b8c6", "f1b5", "a7a6", "b5a4", "g8f6"]
        assert pv_to_san(chess.Board(), pv) == ["e4", "e5", "Nf3", "Nc6", "Bb5", "a6"]

    def test_pv_to_san_stops_at_illegal_move(self):
        assert pv_to_san(chess.Board(), ["e2e4", "e2e4", "g1f3"]) == ["e4"]

    def test_pv_to_san_does_not_touch_board(self):
        board = chess.Board()
        pv_to_san(board, ["e2e4", "e7e5"])
        assert board.fen() == chess.STARTING_FEN
