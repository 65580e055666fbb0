"""FastAPI entrypoint for the gridworld turn engine.

Run locally with ``gridworld-api`` (after ``pip install -e .``) or
``uvicorn apps.api.gridworld_api.main:app --reload`` from the repo root.
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from packages.gridworld_core.sim.errors import (
    EmptyHistoryError,
    MissingCredentialError,
    ScenarioGenerationError,
    SessionNotFoundError,
    TurnEngineError,
    TurnFailedError,
    TurnInProgressError,
)
from packages.gridworld_core.world.grid import CellOutOfRangeError

from .routers.llm import router as llm_router
from .routers.scenarios import router as scenarios_router
from .routers.turns import router as turns_router
from .storage.llm_control import init_db as init_llm_db
from .storage.llm_control import ping as ping_llm_db

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("gridworld_api")

app = FastAPI(title="Gridworld Turn Engine API", version="0.1.0")

_cors_origins = [o.strip() for o in os.environ.get("GRIDWORLD_CORS_ORIGINS", "*").split(",")]
_cors_allow_credentials = "*" not in _cors_origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=_cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(turns_router)
app.include_router(scenarios_router)
app.include_router(llm_router)

_STATUS_BY_ERROR: dict[type[TurnEngineError], int] = {
    MissingCredentialError: 401,
    EmptyHistoryError: 400,
    SessionNotFoundError: 404,
    TurnInProgressError: 409,
    ScenarioGenerationError: 502,
    TurnFailedError: 500,
}


@app.exception_handler(TurnInProgressError)
async def _turn_in_progress_handler(request: Request, exc: TurnInProgressError):
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "error_code": exc.error_code},
        headers={"Retry-After": "2"},
    )


@app.exception_handler(TurnFailedError)
async def _turn_failed_handler(request: Request, exc: TurnFailedError):
    logger.error("[TURN] %s %s failed at stage '%s': %s", request.method, request.url.path, exc.stage, exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "turn failed", "stage": exc.stage, "error": str(exc)},
    )


@app.exception_handler(TurnEngineError)
async def _turn_engine_error_handler(request: Request, exc: TurnEngineError):
    status_code = 500
    for error_type, code in _STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            status_code = code
            break
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_code": exc.error_code},
    )


@app.exception_handler(CellOutOfRangeError)
async def _cell_out_of_range_handler(request: Request, exc: CellOutOfRangeError):
    return JSONResponse(
        status_code=400,
        content={"detail": str(exc), "error_code": "cell_out_of_range"},
    )


@app.on_event("startup")
def startup() -> None:
    logger.info("[STARTUP] Gridworld API starting up at %s", datetime.now(timezone.utc).isoformat())
    try:
        logger.info("[STARTUP] Initializing llm control database...")
        init_llm_db()
        logger.info("[STARTUP] LLM control database initialized successfully")
    except Exception as e:
        logger.error("[STARTUP] Failed to initialize llm control database: %s", e)
        raise
    logger.info("[STARTUP] Gridworld API startup complete")


@app.get("/healthz")
def healthz():
    logger.debug("[HEALTH] Health check requested")
    try:
        ping_llm_db()
    except Exception as exc:
        logger.warning("[HEALTH] DB ping failed: %s", exc)
        return JSONResponse(status_code=503, content={"status": "error", "detail": str(exc)})
    return {"status": "ok"}


def run() -> None:
    host = os.environ.get("GRIDWORLD_API_HOST", "127.0.0.1")
    port = int(os.environ.get("GRIDWORLD_API_PORT", "8000"))
    logger.info("[STARTUP] Serving on %s:%d", host, port)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run()
