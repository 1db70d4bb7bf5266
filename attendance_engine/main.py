import asyncio
from contextlib import suppress
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from attendance_engine.db import engine
from attendance_engine.errors import ApiError, error_response
from attendance_engine.logging_utils import setup_json_logging
from attendance_engine.routers import admin
from attendance_engine.services.reconcile_jobs import run_scheduled_cycle
from attendance_engine.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from attendance_engine.settings import get_settings

setup_json_logging(service="attendance-engine")
logger = logging.getLogger("attendance_engine.request")
reconcile_worker_logger = logging.getLogger("attendance_engine.reconcile_worker")
settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0")


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor = getattr(request.state, "actor", "system")
    request.state.actor_id = getattr(request.state, "actor_id", "system")

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": latency_ms,
                "actor": getattr(request.state, "actor", "system"),
                "actor_id": getattr(request.state, "actor_id", "system"),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
    )


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    status_code = exc.status_code
    code_map = {
        401: "INVALID_TOKEN",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
    }
    code = code_map.get(status_code, "HTTP_ERROR")
    message = str(exc.detail) if exc.detail else "Request failed."
    return error_response(
        request,
        status_code=status_code,
        code=code,
        message=message,
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message=str(exc.errors()),
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Unexpected server error.",
    )


app.include_router(admin.router)


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


async def _reconcile_worker_loop(stop_event: asyncio.Event) -> None:
    interval_seconds = max(60, int(settings.reconcile_worker_interval_seconds))
    while not stop_event.is_set():
        try:
            summary = await asyncio.to_thread(run_scheduled_cycle, datetime.now(timezone.utc))
        except Exception:
            reconcile_worker_logger.exception("reconcile_worker_tick_failed")
        else:
            reconcile_worker_logger.info("reconcile_worker_tick", extra=summary)

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        reconcile_worker_logger.info(
            "schema_guard_ok",
            extra=result.to_dict(),
        )
        return

    reconcile_worker_logger.error(
        "schema_guard_failed",
        extra=result.to_dict(),
    )
    if settings.schema_guard_strict:
        joined_issues = "; ".join(result.issues)
        raise RuntimeError(f"Runtime schema guard failed: {joined_issues}")


@app.on_event("startup")
async def start_reconcile_worker() -> None:
    if not settings.reconcile_worker_enabled:
        return
    if getattr(app.state, "reconcile_worker_task", None) is not None:
        return

    stop_event = asyncio.Event()
    task = asyncio.create_task(_reconcile_worker_loop(stop_event))
    app.state.reconcile_worker_stop_event = stop_event
    app.state.reconcile_worker_task = task
    reconcile_worker_logger.info(
        "reconcile_worker_started",
        extra={
            "interval_seconds": max(60, int(settings.reconcile_worker_interval_seconds)),
            "lookback_days": settings.reconcile_lookback_days,
        },
    )


@app.on_event("shutdown")
async def stop_reconcile_worker() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "reconcile_worker_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "reconcile_worker_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.reconcile_worker_stop_event = None
    app.state.reconcile_worker_task = None


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    return {
        "status": "ok",
        "schema_guard": schema_guard_result.to_dict(),
        "reconcile_worker_enabled": settings.reconcile_worker_enabled,
    }
