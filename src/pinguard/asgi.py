"""
FastAPI + Uvicorn ASGI application.

Runs the pinning engine as a service: the scheduler refreshes the policy in a
background thread while the API serves evaluations and operational probes.

  GET  /health    liveness (startup errors, scheduler thread)
  GET  /ready     readiness (a policy has been applied)
  GET  /info      metadata and policy freshness
  GET  /policy    the active policy as a canonical document
  POST /refresh   fetch-now trigger
  POST /evaluate  one pin evaluation

State lives on app.state, so tests build an app around their own Engine.

Entry point for production: uvicorn pinguard.asgi:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from pinguard import __version__
from pinguard.config import AppSettings
from pinguard.domain.models import EvaluationRequest
from pinguard.domain.pins import PublicKeyHash
from pinguard.main import Engine, build_engine, configure_structlog
from pinguard.policy import policy_to_document
from pinguard.railway import ErrorCode, LoggingExecutionContext
from pinguard.scheduler import create_scheduler

log = structlog.get_logger()

_FETCH_ERRORS = {ErrorCode.FETCH_FAILED, ErrorCode.TIMEOUT}


class EvaluateBody(BaseModel):
    hostname: str
    observed_key_hashes: list[str] = Field(default_factory=list, description="Base64 SPKI SHA-256 hashes")
    client_version: str
    client_identifier: str = ""


def _decode_hashes(texts: list[str]) -> list[PublicKeyHash]:
    """Unusable entries are dropped; an empty result makes the request malformed."""
    return [result.value() for result in map(PublicKeyHash.parse, texts) if result.is_success()]


def create_app(engine: Engine | None = None, schedule: bool = True) -> FastAPI:
    """
    Build the ASGI app.

    Without an engine, settings are loaded and the engine is wired during
    startup. With `schedule=False` no background refresh runs.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        log.info("asgi.startup")

        if app.state.engine is None:
            try:
                settings = AppSettings()
            except Exception as e:
                app.state.error = f"Configuration error: {e}"
                log.error("asgi.startup_error", error=app.state.error)
                raise
            configure_structlog(settings.log_level)
            built = build_engine(settings)
            if built.is_failure():
                app.state.error = str(built.error())
                log.error("asgi.init_error", error=app.state.error)
                raise RuntimeError(app.state.error)
            app.state.engine = built.value()

        current: Engine = app.state.engine
        if schedule and current.source is not None:
            scheduler = create_scheduler(
                refresh_fn=current.refresh,
                staleness_fn=current.check_staleness,
                cron=current.settings.scheduler.cron,
                run_on_startup=current.settings.run_on_startup,
            )
            scheduler.start()
            app.state.scheduler = scheduler
            log.info("asgi.scheduler_started", cron=current.settings.scheduler.cron)
        else:
            log.info("asgi.refresh_not_scheduled", has_source=current.source is not None)

        log.info("asgi.startup_complete")
        yield

        log.info("asgi.shutdown", reason="SIGTERM or server stop")
        if app.state.scheduler is not None:
            try:
                app.state.scheduler.shutdown(wait=True)
            except Exception as e:
                log.warning("asgi.scheduler_shutdown_error", error=str(e))
            app.state.scheduler = None
        current.close()
        log.info("asgi.shutdown_complete")

    app = FastAPI(
        title="pinguard",
        description="SPKI public-key pinning policy engine",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.scheduler = None
    app.state.error = None

    @app.get("/health")
    async def health(request: Request) -> JSONResponse:
        """Liveness — 503 on a startup error or a dead scheduler."""
        state = request.app.state
        if state.error:
            log.warning("health.check_failed", error=state.error)
            return JSONResponse(status_code=503, content={"status": "unhealthy", "error": state.error})
        if state.scheduler is not None and not state.scheduler.running:
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "reason": "scheduler not running"},
            )
        return JSONResponse(
            status_code=200,
            content={"status": "healthy", "scheduler_running": state.scheduler is not None},
        )

    @app.get("/ready")
    async def ready(request: Request) -> JSONResponse:
        """
        Readiness — 200 once a policy has been applied.

        202 while the first refresh is outstanding; an engine without a
        source is ready immediately (it serves the disabled policy).
        """
        current: Engine | None = request.app.state.engine
        if current is None:
            return JSONResponse(status_code=503, content={"status": "error", "error": request.app.state.error})
        if current.source is not None and current.store.last_refresh is None:
            return JSONResponse(status_code=202, content={"status": "starting"})
        return JSONResponse(
            status_code=200,
            content={"status": "ready", "policy_version": current.store.current().version},
        )

    @app.get("/info")
    async def info(request: Request) -> dict[str, Any]:
        current: Engine | None = request.app.state.engine
        if current is None:
            return {"name": "pinguard", "version": __version__, "has_error": True}
        policy = current.store.current()
        last_refresh = current.store.last_refresh
        return {
            "name": "pinguard",
            "version": __version__,
            "policy_version": policy.version,
            "policy_enabled": policy.enabled,
            "hosts": sorted(policy.hosts),
            "last_refresh": last_refresh.isoformat() if last_refresh else None,
            "stale": current.store.is_stale(max_age=current.max_policy_age),
            "kill_switch": current.settings.pinning.kill_switch,
            "telemetry_dropped": current.telemetry.dropped,
            "scheduler_running": request.app.state.scheduler is not None,
            "has_error": request.app.state.error is not None,
        }

    @app.get("/policy")
    async def policy(request: Request) -> JSONResponse:
        current: Engine = request.app.state.engine
        return JSONResponse(status_code=200, content=policy_to_document(current.store.current()))

    @app.post("/refresh")
    async def refresh(request: Request) -> JSONResponse:
        """
        Fetch the policy now instead of waiting for the scheduler.

        Runs in a worker thread so the event loop keeps serving evaluations.
        200 on success, 503 without a source, 502 when the source failed,
        422 when the document was rejected, 500 on an unexpected error.
        """
        current: Engine = request.app.state.engine
        if current.source is None or current.settings.pinning.kill_switch:
            return JSONResponse(
                status_code=503,
                content={"status": "unavailable", "reason": current.refresh().error().message},
            )

        log.info("refresh.manual_start", source="REST")
        ctx = LoggingExecutionContext(operation="ManualPolicyRefresh")
        result = await asyncio.to_thread(ctx.execute, current.refresh)

        if result.is_success():
            return JSONResponse(
                status_code=200,
                content={"status": "success", "policy_version": result.value().version},
            )

        failure = result.error()
        if failure.code in _FETCH_ERRORS:
            status_code = 502
        elif failure.code is ErrorCode.TECHNICAL_ERROR:
            status_code = 500
        else:
            status_code = 422
        return JSONResponse(
            status_code=status_code,
            content={
                "status": "failed",
                "error_code": failure.code.value,
                "message": failure.message,
                "active_version": current.store.current().version,
            },
        )

    @app.post("/evaluate")
    async def evaluate(body: EvaluateBody, request: Request) -> dict[str, Any]:
        current: Engine = request.app.state.engine
        result = current.evaluator.evaluate(
            EvaluationRequest(
                hostname=body.hostname,
                observed_key_hashes=_decode_hashes(body.observed_key_hashes),
                client_version=body.client_version,
                client_identifier=body.client_identifier,
            )
        )
        return {
            "verdict": result.verdict.value,
            "reason": result.reason.value,
            "policy_version": result.policy_version,
            "matched_pin": result.matched_pin.to_base64() if result.matched_pin else None,
            "enforced": result.enforced,
            "pin_source": result.pin_source.value,
            "rejects_connection": result.rejects_connection,
        }

    return app


app = create_app()
