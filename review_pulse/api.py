from __future__ import annotations

"""
FastAPI control surface for the review pipeline.

- POST /start, /stop, /drain drive the run lifecycle
- POST /retry/{page_id} and DELETE /failures/{page_id} handle failed pages
- POST /merge toggles merged vs split charts, POST /duration moves the chart window
- GET /status, /reviews, /charts expose progress and results
"""

from typing import List, Optional

from fastapi import FastAPI, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from .charts import render_charts
from .config import (
    LOG_DIR,
    DurationRequest,
    HealthResponse,
    MergeRequest,
    PipelineSettings,
    ScoredReview,
    StartRequest,
    StatusResponse,
)
from .errors import PipelineError, UnknownFailureError
from .pipeline import PipelineController
from .review_crawl import ReviewExtractor
from .sentiment import ModelScorer, load_sentiment_model
from .transport import MailboxEndpoint, TransportBridge


def configure_logging() -> None:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    logger.add(LOG_DIR / "review_pulse.log", rotation="10 MB", retention=5, level="INFO")


def build_controller(settings: Optional[PipelineSettings] = None) -> PipelineController:
    settings = settings or PipelineSettings()
    endpoint = MailboxEndpoint(ReviewExtractor())
    bridge = TransportBridge(endpoint, timeout=settings.request_timeout)
    return PipelineController(
        bridge=bridge,
        scorer=ModelScorer(load_sentiment_model()),
        settings=settings,
        renderer=render_charts,
    )


# -----------------------
# FastAPI app + startup
# -----------------------

app = FastAPI()
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

_controller: Optional[PipelineController] = None


@app.on_event("startup")
def startup_event() -> None:
    global _controller
    configure_logging()
    if _controller is not None:
        return
    logger.info("Starting app warmup...")
    _controller = build_controller()
    logger.info("Warmup complete.")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    global _controller
    if _controller is None:
        return
    await _controller.aclose()
    _controller = None
    logger.info("Pipeline closed.")


def _get_controller() -> PipelineController:
    if _controller is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialised")
    return _controller


def _http_error(e: PipelineError) -> HTTPException:
    code = 404 if isinstance(e, UnknownFailureError) else 409
    return HTTPException(status_code=code, detail=str(e))


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="healthy")


@app.get("/status", response_model=StatusResponse)
async def status() -> StatusResponse:
    return _get_controller().status()


@app.post("/start", response_model=StatusResponse)
async def start(req: StartRequest) -> StatusResponse:
    controller = _get_controller()
    try:
        await controller.start(duration_in_days=req.duration_in_days, concurrency=req.concurrency)
    except PipelineError as e:
        raise _http_error(e)
    return controller.status()


@app.post("/stop", response_model=StatusResponse)
async def stop() -> StatusResponse:
    controller = _get_controller()
    controller.stop()
    return controller.status()


@app.post("/drain", response_model=StatusResponse)
async def drain() -> StatusResponse:
    controller = _get_controller()
    await controller.drain()
    return controller.status()


@app.post("/retry/{page_id}")
async def retry(page_id: int):
    try:
        _get_controller().retry_page(page_id)
    except PipelineError as e:
        raise _http_error(e)
    return {"page_id": page_id, "status": "retrying"}


@app.delete("/failures/{page_id}")
async def dismiss(page_id: int):
    try:
        _get_controller().dismiss_page(page_id)
    except PipelineError as e:
        raise _http_error(e)
    return {"page_id": page_id, "status": "dismissed"}


@app.post("/merge", response_model=StatusResponse)
async def merge(req: MergeRequest) -> StatusResponse:
    controller = _get_controller()
    controller.set_merge_preference(req.merge)
    return controller.status()


@app.post("/duration", response_model=StatusResponse)
async def duration(req: DurationRequest) -> StatusResponse:
    controller = _get_controller()
    controller.set_duration(req.duration_in_days)
    return controller.status()


@app.get("/reviews", response_model=List[ScoredReview])
async def reviews() -> List[ScoredReview]:
    return list(_get_controller().store.snapshot())


@app.get("/charts")
async def charts() -> Response:
    chart = await _get_controller().wait_for_chart()
    if chart is None:
        raise HTTPException(status_code=404, detail="No chart rendered yet")
    return Response(content=chart, media_type="image/svg+xml")
