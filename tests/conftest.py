"""Shared fakes: an in-process stand-in for a UCI engine subprocess."""

import asyncio

import pytest

from gamereview.engine import EngineSession

START_FEN = "rnbqkbnr/pppppppp/8/8/8/8/PPPPPPPP/RNBQKBNR w KQkq - 0 1"

DEFAULT_SEARCH = [
    "info depth 1 seldepth 1 multipv 1 score cp 18 nodes 20 pv e2e4",
    "info depth 2 seldepth 2 multipv 1 score cp 20 nodes 80 pv e2e4 e7e5",
    "bestmove e2e4 ponder e7e5",
]


def search_output(cp=None, mate=None, pv=("e2e4",), depth=12):
    """Info + bestmove lines for one scripted search."""
    score = f"mate {mate}" if mate is not None else f"cp {cp}"
    pv_text = " ".join(pv)
    return [
        f"info depth {depth} seldepth {depth + 4} multipv 1 score {score} nodes 1000 pv {pv_text}",
        f"bestmove {pv[0] if pv else '(none)'}",
    ]


class FakeStream:
    """Line-oriented reader with the asyncio.StreamReader readline() API."""

    def __init__(self):
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()

    def feed_line(self, text: str) -> None:
        self._queue.put_nowait(text.encode() + b"\n")

    def feed_eof(self) -> None:
        self._queue.put_nowait(b"")

    async def readline(self) -> bytes:
        data = await self._queue.get()
        if not data:
            self._queue.put_nowait(b"")
        return data


class FakeStdin:
    def __init__(self, on_line):
        self._on_line = on_line
        self._buffer = b""
        self._closed = False

    def write(self, data: bytes) -> None:
        self._buffer += data
        while b"\n" in self._buffer:
            line, self._buffer = self._buffer.split(b"\n", 1)
            self._on_line(line.decode())

    async def drain(self) -> None:
        pass

    def is_closing(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True


class FakeEngineProcess:
    """Simulates a single-threaded UCI engine.

    Records every command it receives and flags any ``position``/``go``
    that arrives while a search is still running.
    """

    def __init__(
        self,
        *,
        searches=None,
        answer_uci=True,
        answer_isready=True,
        hang_on_go=False,
        hang_fens=(),
        think_time=0.01,
    ):
        self.searches = dict(searches or {})
        self.answer_uci = answer_uci
        self.answer_isready = answer_isready
        self.hang_on_go = hang_on_go
        self.hang_fens = set(hang_fens)
        self.think_time = think_time
        self.commands: list[str] = []
        self.violations: list[str] = []
        self.searching = False
        self.fen = None
        self.killed = False
        self.returncode = None
        self.stdin = FakeStdin(self._on_command)
        self.stdout = FakeStream()
        self.stderr = FakeStream()
        self._exited = asyncio.Event()

    @property
    def searched_fens(self) -> list[str]:
        return [c[len("position fen "):] for c in self.commands if c.startswith("position fen ")]

    def emit(self, line: str) -> None:
        self.stdout.feed_line(line)

    def _on_command(self, line: str) -> None:
        self.commands.append(line)
        if line == "uci":
            if self.answer_uci:
                self.emit("id name FakeFish")
                self.emit("uciok")
        elif line == "isready":
            if self.answer_isready:
                self.emit("readyok")
        elif line.startswith("position fen "):
            if self.searching:
                self.violations.append(line)
            self.fen = line[len("position fen "):]
        elif line.startswith("go"):
            if self.searching:
                self.violations.append(line)
            self.searching = True
            if not self.hang_on_go and self.fen not in self.hang_fens:
                asyncio.get_running_loop().call_later(self.think_time, self._finish, self.fen)
        elif line == "quit":
            self.exit(0)

    def _finish(self, fen: str) -> None:
        if self.returncode is not None:
            return
        lines = self.searches.get(fen, DEFAULT_SEARCH)
        for line in lines[:-1]:
            self.emit(line)
        self.searching = False
        self.emit(lines[-1])

    def exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self.stdout.feed_eof()
            self.stderr.feed_eof()
            self._exited.set()

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode


def spawner(process: FakeEngineProcess):
    """A drop-in for asyncio.create_subprocess_exec returning *process*."""
    calls = []

    async def spawn(*args, **kwargs):
        calls.append(args)
        return process

    spawn.calls = calls
    return spawn


def make_session(process: FakeEngineProcess, **kwargs) -> EngineSession:
    kwargs.setdefault("handshake_timeout", 0.5)
    kwargs.setdefault("request_timeout", 1.0)
    return EngineSession("fakefish", spawn=spawner(process), **kwargs)


@pytest.fixture
def fake_engine():
    return FakeEngineProcess()
