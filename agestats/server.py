"""
server.py

HTTP transport for the encrypted age statistics service (FastAPI).

    GET  /health      liveness probe
    POST /submit-age  {encryptedAge, userId?} -> stored verbatim
    GET  /stats       encrypted per-threshold counts

The evaluation key is loaded when the app is built: a missing or corrupt key
bundle raises KeyLoadError before any route can be served.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from agestats.config import ServiceConfig, load_service_config
from agestats.errors import EvaluationTimeout, StorageError
from agestats.he import EvaluationKey
from agestats.keys import KeyManager
from agestats.protocol import (
    Accepted,
    AgeSubmission,
    ErrorResponse,
    StatsResponse,
    SubmitResponse,
)
from agestats.service import AgeStatsService
from agestats.storage import CiphertextStore

logger = logging.getLogger(__name__)


def _error(status_code: int, error: str, detail: str, retryable: bool = False) -> JSONResponse:
    body = ErrorResponse(error=error, detail=detail, retryable=retryable)
    return JSONResponse(status_code=status_code, content=body.model_dump())


def create_app(
    config: Optional[ServiceConfig] = None,
    *,
    evaluation_key: Optional[EvaluationKey] = None,
    store: Optional[CiphertextStore] = None,
) -> FastAPI:
    """
    Build the FastAPI app.

    `evaluation_key` and `store` can be injected (tests); otherwise they are
    loaded from `config`.
    """
    if config is None:
        config = load_service_config()
    if evaluation_key is None:
        evaluation_key = KeyManager(config.evaluation_key_path, params=config.scheme).load_for_evaluation()
    if store is None:
        store = CiphertextStore(config.db_path)

    service = AgeStatsService(store, evaluation_key, config.thresholds, mode=config.stats_mode)
    timeout_s = config.stats_timeout_s

    app = FastAPI(title="agestats", version="0.1.0")
    app.state.service = service
    app.state.config = config

    @app.get("/health")
    async def health():
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.post("/submit-age", response_model=SubmitResponse)
    def submit_age(submission: AgeSubmission):
        # Sync handler: FastAPI runs it in the threadpool, keeping decode off the event loop.
        try:
            outcome = service.submit(submission.encrypted_age, submission.user_id)
        except StorageError as e:
            logger.error("Storage failure on submit: %s", e)
            return _error(500, "storage_error", str(e))

        if isinstance(outcome, Accepted):
            return SubmitResponse(userId=outcome.user_id)
        return _error(500, outcome.error, outcome.reason)

    @app.get("/stats", response_model=StatsResponse)
    async def get_stats():
        deadline = time.monotonic() + timeout_s
        try:
            result = await asyncio.wait_for(
                run_in_threadpool(service.get_stats, deadline),
                timeout=timeout_s,
            )
        except (asyncio.TimeoutError, EvaluationTimeout):
            logger.warning("Stats computation exceeded %.1fs", timeout_s)
            return _error(503, "timeout", f"stats computation exceeded {timeout_s:.1f}s", retryable=True)
        except StorageError as e:
            logger.error("Storage failure on stats: %s", e)
            return _error(500, "storage_error", str(e))

        return result.to_response()

    logger.info(
        "Service ready: thresholds=%s mode=%s store=%s",
        list(service.thresholds), service.mode, store.path,
    )
    return app


def serve(config: Optional[ServiceConfig] = None) -> None:
    if config is None:
        config = load_service_config()
    app = create_app(config)
    print(f"[server] Listening on http://{config.host}:{config.port}")
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())
