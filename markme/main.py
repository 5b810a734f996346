import asyncio
from contextlib import suppress
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from markme.db import engine
from markme.errors import ApiError, error_response
from markme.logging_utils import setup_json_logging
from markme.routers import admin, attendance
from markme.services.absence_sweeper import (
    AbsenceSweepResult,
    absence_sweep_reference_utc,
    next_absence_sweep_run_utc,
    run_absence_sweep,
)
from markme.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from markme.settings import get_cors_origins, get_settings

settings = get_settings()
setup_json_logging(settings.log_level, service="markme")
logger = logging.getLogger("markme.request")
sweep_worker_logger = logging.getLogger("markme.absence_sweep_worker")


app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


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
                "user_id": getattr(request.state, "user_id", None),
                "session_id": getattr(request.state, "session_id", None),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "api_error",
            exc_info=exc,
            extra={
                "request_id": getattr(request.state, "request_id", "unknown"),
                "path": request.url.path,
                "code": exc.code,
            },
        )
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
        429: "TOO_MANY_ATTEMPTS",
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
        message="Server error",
    )


app.include_router(attendance.router)
app.include_router(admin.router)


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


async def _absence_sweep_worker_loop(stop_event: asyncio.Event) -> None:
    while not stop_event.is_set():
        now_utc = datetime.now(timezone.utc)
        next_run_utc = next_absence_sweep_run_utc(
            now_utc,
            settings.absence_sweep_time_local,
            settings.absence_sweep_schedule_timezone,
        )
        app.state.absence_sweep_next_run_utc = next_run_utc
        wait_seconds = max(0.0, (next_run_utc - now_utc).total_seconds())
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=wait_seconds)
        except asyncio.TimeoutError:
            pass
        else:
            return

        reference_utc = absence_sweep_reference_utc(next_run_utc, settings.absence_sweep_target)
        try:
            result: AbsenceSweepResult = await asyncio.to_thread(run_absence_sweep, reference_utc)
        except Exception:
            sweep_worker_logger.exception(
                "absence_sweep_tick_failed",
                extra={"reference_utc": reference_utc.isoformat()},
            )
            continue
        app.state.absence_sweep_last_result = result


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        sweep_worker_logger.info(
            "schema_guard_ok",
            extra=result.to_dict(),
        )
        return

    sweep_worker_logger.error(
        "schema_guard_failed",
        extra=result.to_dict(),
    )
    if settings.schema_guard_strict:
        joined_issues = "; ".join(result.issues)
        raise RuntimeError(f"Runtime schema guard failed: {joined_issues}")


@app.on_event("startup")
async def start_absence_sweep_worker() -> None:
    if not settings.absence_sweep_enabled:
        return
    if getattr(app.state, "absence_sweep_task", None) is not None:
        return

    try:
        first_run_utc = next_absence_sweep_run_utc(
            datetime.now(timezone.utc),
            settings.absence_sweep_time_local,
            settings.absence_sweep_schedule_timezone,
        )
    except (ApiError, ValueError):
        sweep_worker_logger.exception(
            "absence_sweep_schedule_invalid",
            extra={
                "run_at_local": settings.absence_sweep_time_local,
                "schedule_timezone": settings.absence_sweep_schedule_timezone,
            },
        )
        return

    stop_event = asyncio.Event()
    task = asyncio.create_task(_absence_sweep_worker_loop(stop_event))
    app.state.absence_sweep_stop_event = stop_event
    app.state.absence_sweep_task = task
    app.state.absence_sweep_next_run_utc = first_run_utc
    sweep_worker_logger.info(
        "absence_sweep_worker_started",
        extra={
            "run_at_local": settings.absence_sweep_time_local,
            "schedule_timezone": settings.absence_sweep_schedule_timezone,
            "target": settings.absence_sweep_target,
            "next_run_utc": first_run_utc.isoformat(),
        },
    )


@app.on_event("shutdown")
async def stop_absence_sweep_worker() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "absence_sweep_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "absence_sweep_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.absence_sweep_stop_event = None
    app.state.absence_sweep_task = None


def _absence_sweep_health() -> dict[str, Any]:
    next_run_utc: datetime | None = getattr(app.state, "absence_sweep_next_run_utc", None)
    last_result: AbsenceSweepResult | None = getattr(app.state, "absence_sweep_last_result", None)
    return {
        "enabled": settings.absence_sweep_enabled,
        "running": getattr(app.state, "absence_sweep_task", None) is not None,
        "next_run_utc": next_run_utc.isoformat() if next_run_utc is not None else None,
        "last_result": last_result.to_dict() if last_result is not None else None,
    }


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    return {
        "status": "ok",
        "schema_guard": schema_guard_result.to_dict(),
        "absence_sweep": _absence_sweep_health(),
    }
