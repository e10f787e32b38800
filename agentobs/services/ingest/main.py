"""
Agent Observability Ingest Service (port 4000)
-----------------------------------------------
Accepts hook events and metrics from AI coding-agent runs:
  1. Hook events          → POST /events
  2. Token / tool metrics → POST /api/metrics/tokens | tools
  3. Findings / coverage  → POST /api/metrics/findings | wstg
  4. Session lifecycle    → POST /api/sessions

Every write is persisted and then pushed to live dashboards over WS /stream.
CORS is open to every origin and there is no authentication.
"""

import logging
import os
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from agentobs.services.shared.database import create_all_tables
from agentobs.services.ingest.broadcaster import Broadcaster

SERVER_HOST = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT = int(os.getenv("SERVER_PORT", "4000"))
LOG_LEVEL   = os.getenv("LOG_LEVEL", "INFO").upper()

VERSION = "0.1.0"

logging.basicConfig(level=LOG_LEVEL)
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("agentobs_ingest_starting", port=SERVER_PORT)
    create_all_tables()
    logger.info("agentobs_ingest_tables_ready")
    yield
    logger.info("agentobs_ingest_stopping", stream_clients=len(app.state.broadcaster))


app = FastAPI(
    title="Agent Observability Ingest Service",
    version=VERSION,
    description="Receives agent hook events and metrics, stores them, and streams them to dashboards.",
    lifespan=lifespan,
)
app.state.broadcaster = Broadcaster()


# Registered before CORSMiddleware so CORS stays outermost: preflights are
# answered there, any other OPTIONS gets an empty 200 here.
@app.middleware("http")
async def answer_options(request: Request, call_next):
    if request.method == "OPTIONS":
        return Response(status_code=200)
    return await call_next(request)


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Error responses: always {"error": "..."} ─────────────────────────────────

def _is_missing(err: dict) -> bool:
    return err.get("type") == "missing" or err.get("input") in ("", None)


def _field_name(err: dict) -> str:
    # json_invalid locations carry a character offset, not a field
    if err.get("type") == "json_invalid":
        return "body"
    return ".".join(str(p) for p in err.get("loc", ())[1:]) or "body"


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if any(_is_missing(e) for e in errors):
        message = "Missing required fields"
    else:
        fields = sorted({_field_name(e) for e in errors})
        message = f"Invalid request: {', '.join(fields)}"
    logger.info("request_rejected", path=request.url.path, error=message)
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("storage_error", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"error": "Storage error"})


# ── Routes ────────────────────────────────────────────────────────────────────
from agentobs.services.ingest.routes_events   import router as events_router    # noqa: E402
from agentobs.services.ingest.routes_metrics  import router as metrics_router   # noqa: E402
from agentobs.services.ingest.routes_sessions import router as sessions_router  # noqa: E402
from agentobs.services.ingest.routes_stream   import router as stream_router    # noqa: E402

app.include_router(events_router,                  tags=["Events"])
app.include_router(metrics_router,  prefix="/api", tags=["Metrics"])
app.include_router(sessions_router, prefix="/api", tags=["Sessions"])
app.include_router(stream_router,                  tags=["Stream"])


@app.get("/health", tags=["Health"])
def health():
    return {"status": "healthy", "service": "agentobs-ingest", "version": VERSION}


def run() -> None:
    """Console entry point: serve the ingest API with uvicorn."""
    uvicorn.run(app, host=SERVER_HOST, port=SERVER_PORT)


if __name__ == "__main__":
    run()
