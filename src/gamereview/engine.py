"""UCI engine session over a subprocess pipe.

One session owns one engine process for the lifetime of an analysis run.
The protocol has no request ids, so a response belongs to whichever
search is outstanding: evaluations are serialized through a FIFO lock
and at most one request is ever in flight.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from gamereview.errors import EngineTimeout, EngineUnavailable

logger = logging.getLogger(__name__)

HANDSHAKE_TIMEOUT = 5.0
REQUEST_TIMEOUT = 15.0
DEFAULT_HASH_MB = 128

_DEPTH_RE = re.compile(r"\bdepth (\d+)\b")
_CP_RE = re.compile(r"\bscore cp (-?\d+)\b")
_MATE_RE = re.compile(r"\bscore mate (-?\d+)\b")
_PV_RE = re.compile(r"\bpv (.+)$")

# Moves the engine reports when there is nothing to play.
_NULL_MOVES = ("(none)", "0000")


@dataclass
class Evaluation:
    """One finished search, scored from the side to move's point of view."""
    score_cp: int | None
    score_mate: int | None
    depth: int
    best_move: str | None
    pv: list[str] = field(default_factory=list)


class _AnalysisRequest:
    """The single in-flight search.

    Folds ``info`` lines into the deepest snapshot seen so far and
    resolves its future when ``bestmove`` arrives.
    """

    def __init__(self, fen: str, future: asyncio.Future):
        self.fen = fen
        self.future = future
        self.depth = -1
        self.score_cp: int | None = None
        self.score_mate: int | None = None
        self.pv: list[str] = []

    def feed(self, line: str) -> bool:
        """Consume one engine line. Returns True once the search is finished."""
        if line.startswith("bestmove"):
            tokens = line.split()
            move = tokens[1] if len(tokens) > 1 else None
            if move in _NULL_MOVES:
                move = None
            if not self.future.done():
                self.future.set_result(Evaluation(
                    score_cp=self.score_cp,
                    score_mate=self.score_mate,
                    depth=max(self.depth, 0),
                    best_move=move,
                    pv=list(self.pv),
                ))
            return True
        if line.startswith("info") and not line.startswith("info string"):
            self._observe(line)
        return False

    def _observe(self, line: str) -> None:
        depth_match = _DEPTH_RE.search(line)
        if depth_match is None:
            return
        depth = int(depth_match.group(1))
        # Equal depth: the later line wins.
        if depth < self.depth:
            return
        self.depth = depth

        mate_match = _MATE_RE.search(line)
        cp_match = _CP_RE.search(line)
        if mate_match:
            self.score_mate = int(mate_match.group(1))
            self.score_cp = None
        elif cp_match:
            self.score_cp = int(cp_match.group(1))
            self.score_mate = None

        pv_match = _PV_RE.search(line)
        if pv_match:
            self.pv = pv_match.group(1).split()


SpawnFn = Callable[..., Awaitable[asyncio.subprocess.Process]]


class EngineSession:
    """A single long-lived UCI engine process.

    Usage::

        async with EngineSession("stockfish") as session:
            ev = await session.evaluate(fen, depth=12)
    """

    def __init__(
        self,
        path: str = "stockfish",
        hash_mb: int = DEFAULT_HASH_MB,
        *,
        handshake_timeout: float = HANDSHAKE_TIMEOUT,
        request_timeout: float = REQUEST_TIMEOUT,
        spawn: SpawnFn | None = None,
    ):
        self._path = path
        self._hash_mb = hash_mb
        self._handshake_timeout = handshake_timeout
        self._request_timeout = request_timeout
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._lock = asyncio.Lock()
        self._inflight: _AnalysisRequest | None = None
        self._waiters: list[tuple[Callable[[str], bool], asyncio.Future]] = []
        self._closed = True

    @property
    def is_open(self) -> bool:
        return self._process is not None and not self._closed

    async def __aenter__(self) -> EngineSession:
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def open(self) -> None:
        """Spawn the engine and complete the UCI handshake.

        Raises EngineUnavailable if the process cannot be started or does
        not acknowledge ``uci`` / ``isready`` in time.  The session is
        closed again before the error propagates.
        """
        logger.info("Spawning engine %s", self._path)
        self._closed = False
        try:
            self._process = await self._spawn(
                self._path,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            await self.close()
            raise EngineUnavailable(f"Could not start engine {self._path!r}: {e}") from e

        self._reader_task = asyncio.create_task(self._read_loop(self._process))
        if self._process.stderr is not None:
            self._stderr_task = asyncio.create_task(self._drain_stderr(self._process))

        try:
            await self._command_and_wait("uci", "uciok")
            await self._send("setoption name UCI_AnalyseMode value true")
            await self._send("setoption name MultiPV value 1")
            await self._send("setoption name Threads value 1")
            await self._send(f"setoption name Hash value {self._hash_mb}")
            await self._command_and_wait("isready", "readyok")
        except EngineUnavailable:
            await self.close()
            raise
        logger.info("Engine ready (hash=%d MB)", self._hash_mb)

    async def evaluate(self, fen: str, depth: int) -> Evaluation:
        """Search *fen* to *depth* and return the deepest result reported.

        Calls are answered strictly in the order they were made.  A call
        that exceeds the request timeout raises EngineTimeout and closes
        the session, since the engine can no longer be trusted to be at a
        response boundary.
        """
        async with self._lock:
            if not self.is_open:
                raise EngineUnavailable("Engine session is not open")
            request = _AnalysisRequest(fen, asyncio.get_running_loop().create_future())
            self._inflight = request
            try:
                await self._send(f"position fen {fen}")
                await self._send(f"go depth {depth}")
                return await asyncio.wait_for(request.future, self._request_timeout)
            except asyncio.TimeoutError:
                logger.error(
                    "Engine timed out after %.1fs on %s", self._request_timeout, fen,
                )
                self._inflight = None
                await self.close()
                raise EngineTimeout(
                    f"Engine analysis timed out after {self._request_timeout:g}s"
                ) from None
            finally:
                if self._inflight is request:
                    self._inflight = None

    async def close(self) -> None:
        """Ask the engine to quit, then make sure it is gone.

        Safe to call more than once and after a failed open().
        """
        self._closed = True
        process, self._process = self._process, None
        if process is not None:
            stdin = process.stdin
            if stdin is not None and not stdin.is_closing():
                try:
                    stdin.write(b"quit\n")
                    await stdin.drain()
                except ConnectionError:
                    pass
                stdin.close()
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
            try:
                await asyncio.wait_for(process.wait(), timeout=1.0)
            except asyncio.TimeoutError:
                logger.warning("Engine process did not exit after kill")

        tasks = [t for t in (self._reader_task, self._stderr_task) if t and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._reader_task = None
        self._stderr_task = None
        self._fail_pending(EngineUnavailable("Engine session closed"))

    # ------------------------------------------------------------------
    # Line plumbing
    # ------------------------------------------------------------------

    async def _send(self, command: str) -> None:
        process = self._process
        if process is None or process.stdin is None or process.stdin.is_closing():
            raise EngineUnavailable("Engine input is closed")
        logger.debug(">> %s", command)
        process.stdin.write(f"{command}\n".encode())
        try:
            await process.stdin.drain()
        except ConnectionError as e:
            raise EngineUnavailable(f"Engine pipe broken: {e}") from e

    async def _command_and_wait(self, command: str, expected: str) -> str:
        # Register before sending so a fast reply cannot slip past.
        fut = asyncio.get_running_loop().create_future()
        waiter = (lambda line: line == expected, fut)
        self._waiters.append(waiter)
        try:
            await self._send(command)
            return await asyncio.wait_for(fut, self._handshake_timeout)
        except asyncio.TimeoutError:
            raise EngineUnavailable(
                f"Engine did not answer {command!r} with {expected!r} "
                f"within {self._handshake_timeout:g}s"
            ) from None
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    def _dispatch(self, line: str) -> None:
        logger.debug("<< %s", line)
        if self._inflight is not None:
            if self._inflight.feed(line):
                self._inflight = None
            return
        for predicate, fut in list(self._waiters):
            if not fut.done() and predicate(line):
                fut.set_result(line)
                break

    def _fail_pending(self, exc: Exception) -> None:
        if self._inflight is not None:
            if not self._inflight.future.done():
                self._inflight.future.set_exception(exc)
            self._inflight = None
        for _, fut in self._waiters:
            if not fut.done():
                fut.set_exception(exc)

    async def _read_loop(self, process: asyncio.subprocess.Process) -> None:
        try:
            while True:
                raw = await process.stdout.readline()
                if not raw:
                    break
                line = raw.decode(errors="replace").strip()
                if line:
                    self._dispatch(line)
        except (ConnectionError, ValueError) as e:
            logger.error("Engine output unreadable: %s", e)
        finally:
            if not self._closed:
                logger.warning("Engine exited (returncode=%s)", process.returncode)
            self._fail_pending(EngineUnavailable("Engine process exited"))

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        while True:
            raw = await process.stderr.readline()
            if not raw:
                return
            text = raw.decode(errors="replace").strip()
            if text:
                logger.warning("Engine stderr: %s", text)
