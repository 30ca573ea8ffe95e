import json

import pytest
from fastapi.testclient import TestClient

from conftest import FakeEngineProcess, make_session
from gamereview import main
from gamereview.coaching import CoachingDispatcher
from gamereview.pipeline import AnalysisPipeline

PGN = """[Event "Casual"]
[White "A"]
[Black "B"]

1. e4 e5 2. Nf3 Nc6 *
"""


def _use_engine(monkeypatch, **process_kwargs):
    """Route every request through a fresh fake engine."""
    session_kwargs = process_kwargs.pop("session_kwargs", {})

    def factory():
        # Built lazily so the fake binds to the app's event loop.
        return make_session(FakeEngineProcess(**process_kwargs), **session_kwargs)

    monkeypatch.setattr(
        main, "make_pipeline",
        lambda: AnalysisPipeline(factory, CoachingDispatcher(), depth=8),
    )


def _parse_sse(text: str) -> list[tuple[str, dict]]:
    frames = []
    for block in text.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines())
        frames.append((lines["event"], json.loads(lines["data"])))
    return frames


@pytest.fixture()
def client():
    with TestClient(main.app) as c:
        yield c


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


class TestAnalyze:
    def test_returns_every_move(self, client, monkeypatch):
        _use_engine(monkeypatch)
        response = client.post("/api/analyze", json={"pgn": PGN})
        assert response.status_code == 200
        analysis = response.json()["analysis"]
        assert [m["san"] for m in analysis] == ["e4", "e5", "Nf3", "Nc6"]
        assert [m["ply"] for m in analysis] == [1, 2, 3, 4]
        assert analysis[0]["mover"] == "White"
        assert analysis[0]["label"] == "ok"
        assert analysis[0]["explanation"] is None

    def test_bare_move_list(self, client, monkeypatch):
        _use_engine(monkeypatch)
        response = client.post("/api/analyze", json={"pgn": "1. e4 e5 2. Nf3"})
        assert response.status_code == 200
        assert len(response.json()["analysis"]) == 3

    def test_empty_pgn_is_400(self, client, monkeypatch):
        _use_engine(monkeypatch)
        response = client.post("/api/analyze", json={"pgn": "   "})
        assert response.status_code == 400
        assert response.json()["detail"] == "PGN is required."

    def test_illegal_move_is_400(self, client, monkeypatch):
        _use_engine(monkeypatch)
        response = client.post("/api/analyze", json={"pgn": "1. e4 e5 2. Ke3"})
        assert response.status_code == 400
        assert "Ke3" in response.json()["detail"]

    def test_missing_field_is_422(self, client):
        response = client.post("/api/analyze", json={})
        assert response.status_code == 422

    def test_engine_failure_is_503(self, client, monkeypatch):
        _use_engine(monkeypatch, answer_uci=False, session_kwargs={"handshake_timeout": 0.05})
        response = client.post("/api/analyze", json={"pgn": PGN})
        assert response.status_code == 503
        assert "uciok" in response.json()["detail"]


class TestAnalyzeStream:
    def test_streams_events_in_order(self, client, monkeypatch):
        _use_engine(monkeypatch)
        response = client.post("/api/analyze/stream", json={"pgn": "1. e4 e5"})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")

        frames = _parse_sse(response.text)
        names = [name for name, _ in frames]
        assert names == [
            "phase", "evaluationProgress", "evaluationProgress", "evaluationProgress",
            "move", "move", "phase", "done",
        ]
        assert frames[0][1] == {"phase": "evaluating", "total": 3}
        assert frames[4][1]["san"] == "e4"
        assert "explanation" not in frames[4][1]
        assert frames[-1][1] == {"totalMoves": 2, "explained": 0}

    def test_engine_failure_ends_with_error_event(self, client, monkeypatch):
        _use_engine(monkeypatch, answer_uci=False, session_kwargs={"handshake_timeout": 0.05})
        response = client.post("/api/analyze/stream", json={"pgn": "1. e4 e5"})
        assert response.status_code == 200
        frames = _parse_sse(response.text)
        assert [name for name, _ in frames] == ["phase", "error"]
        assert "uciok" in frames[-1][1]["message"]

    def test_invalid_pgn_is_rejected_before_streaming(self, client, monkeypatch):
        _use_engine(monkeypatch)
        response = client.post("/api/analyze/stream", json={"pgn": "1. e4 Qh5"})
        assert response.status_code == 400
        assert response.json()["detail"] == 'Invalid move "Qh5" at move 1 (Black).'
