import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from gamereview.config import Settings
from gamereview.errors import EngineError, InvalidGame
from gamereview.events import ErrorEvent, Event, format_sse
from gamereview.game_source import load_game
from gamereview.pipeline import AnalysisPipeline

logger = logging.getLogger(__name__)

settings = Settings()

# Streaming runs outlive a disconnected client; keep them referenced.
_background: set[asyncio.Task] = set()


def make_pipeline() -> AnalysisPipeline:
    return AnalysisPipeline.from_settings(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )
    if not settings.coaching_enabled:
        logger.info("GEMINI_API_KEY not set; using templated coaching only")
    yield
    for task in list(_background):
        task.cancel()


app = FastAPI(title="Game Review", lifespan=lifespan)


# --- Request models ---

class AnalyzeRequest(BaseModel):
    pgn: str


# --- Endpoints ---

@app.get("/api/health")
async def health():
    return {"status": "ok"}


@app.post("/api/analyze")
async def analyze(req: AnalyzeRequest):
    try:
        start, moves = load_game(req.pgn)
    except InvalidGame as e:
        raise HTTPException(status_code=400, detail=str(e))
    try:
        records = await make_pipeline().run(moves, start=start)
    except EngineError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"analysis": [r.to_dict() for r in records]}


@app.post("/api/analyze/stream")
async def analyze_stream(req: AnalyzeRequest):
    try:
        start, moves = load_game(req.pgn)
    except InvalidGame as e:
        raise HTTPException(status_code=400, detail=str(e))

    queue: asyncio.Queue[Event | None] = asyncio.Queue()
    pipeline = make_pipeline()

    async def _run() -> None:
        try:
            await pipeline.run(moves, emit=queue.put, start=start)
        except EngineError:
            # Already delivered to the client as an error event.
            pass
        except Exception as e:
            logger.exception("Streaming analysis crashed")
            queue.put_nowait(ErrorEvent(message=str(e) or "Analysis failed."))
        finally:
            queue.put_nowait(None)

    task = asyncio.create_task(_run())
    _background.add(task)
    task.add_done_callback(_background.discard)

    async def _events():
        while True:
            event = await queue.get()
            if event is None:
                return
            yield format_sse(event)

    return StreamingResponse(
        _events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )
