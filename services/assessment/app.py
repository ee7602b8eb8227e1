"""Assessment service FastAPI application.

Exposes the FastAPI app, attaches tracing middleware, maps domain errors to
JSON responses, includes the assessment routes and `/metrics`, and wires the
repository, event bus and expiry sweeper on startup.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from packages.common.config import get_settings
from packages.common.events import EventBus
from packages.common.logging import configure_logging
from packages.common.tracing import trace_middleware
from .errors import AssessmentError
from .expiry import ExpirySweeper
from .repo import AssessmentRepo
from .routes import router as assessment_router
from .service import AssessmentService

log = logging.getLogger(__name__)

app = FastAPI(title="Quizcore Assessment Service", version="1.0.0")
app.middleware("http")(trace_middleware)
app.include_router(assessment_router)


@app.exception_handler(AssessmentError)
async def _assessment_error(request: Request, exc: AssessmentError) -> JSONResponse:
    if exc.status_code >= 500:
        log.error("assessment failure", extra={"ctx": {"error": exc.kind, "path": request.url.path}}, exc_info=exc)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.kind, "detail": exc.detail})


@app.get("/healthz", tags=["infra"])
def healthz() -> dict[str, str]:
    return {"status": "ok", "env": get_settings().ENV}


@app.get("/metrics", tags=["infra"])
def metrics() -> PlainTextResponse:
    data = generate_latest()
    return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)


@app.on_event("startup")
async def _init() -> None:
    """Initialize service dependencies at application startup."""
    s = get_settings()
    configure_logging(s.LOG_LEVEL)
    repo = AssessmentRepo.from_settings()
    await repo.init_db()
    app.state.repo = repo
    app.state.service = AssessmentService(repo, bus=EventBus())
    app.state.sweeper = None
    if s.ASSESSMENT_EXPIRY_INTERVAL_SEC > 0:
        app.state.sweeper = ExpirySweeper(app.state.service, s.ASSESSMENT_EXPIRY_INTERVAL_SEC)
        app.state.sweeper.start()
    log.info("assessment service started", extra={"ctx": {"env": s.ENV, "service": s.SERVICE_NAME}})


@app.on_event("shutdown")
async def _close() -> None:
    if getattr(app.state, "sweeper", None) is not None:
        await app.state.sweeper.stop()
    if getattr(app.state, "service", None) is not None and app.state.service.bus is not None:
        app.state.service.bus.flush()
    if getattr(app.state, "repo", None) is not None:
        await app.state.repo.dispose()
