import asyncio
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from dispatch_api.config import get_settings
from dispatch_api.database import SessionLocal, init_db
from dispatch_api.logging_config import get_logger, setup_logging
from dispatch_api.routers import admin, campaigns, outbox
from dispatch_api.services.alert_service import alert_drain_failed
from dispatch_api.services.drain_service import drain_outbox
from dispatch_api.services.errors import DispatchError
from dispatch_api.services.run_state_machine import InvalidRunTransitionError
from dispatch_api.services.stores import build_stores
from dispatch_api.services.transport import get_transport

setup_logging()

app = FastAPI(
    title="Dispatch API",
    description="Outbound WhatsApp dispatch: outbox, campaign runs and drain worker",
    version="0.1.0",
)

app.include_router(outbox.router)
app.include_router(campaigns.router)
app.include_router(admin.router)

ERROR_STATUS_CODES = {
    "validation": 400,
    "guardrail_violation": 422,
    "not_found": 404,
}


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    status_code = ERROR_STATUS_CODES.get(exc.code, 400)
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "code": exc.code})


@app.exception_handler(InvalidRunTransitionError)
async def run_transition_error_handler(request: Request, exc: InvalidRunTransitionError):
    return JSONResponse(status_code=409, content={"detail": str(exc), "code": "invalid_transition"})


outbox_logger = get_logger("outbox_worker")
_outbox_worker_task: asyncio.Task | None = None


def _is_outbox_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return get_settings().outbox_worker_enabled


async def _run_drain_pass() -> dict:
    settings = get_settings()
    db = SessionLocal()
    try:
        result = await drain_outbox(
            build_stores(db, settings),
            get_transport(settings),
            limit=settings.outbox_process_limit,
            dry_run=settings.outbox_dry_run,
        )
        return result.model_dump(exclude={"items"})
    finally:
        db.close()


async def _outbox_worker_loop() -> None:
    while True:
        try:
            interval_seconds = max(get_settings().outbox_worker_interval_seconds, 0.1)
            await asyncio.sleep(interval_seconds)
            results = await _run_drain_pass()
            if results["processed"]:
                outbox_logger.info(
                    "Outbox worker processed",
                    extra={"context": results},
                )
        except asyncio.CancelledError:
            break
        except Exception as exc:
            outbox_logger.error(
                "Outbox worker loop failed",
                extra={"context": {"error": str(exc)}},
            )
            await alert_drain_failed(str(exc))


@app.on_event("startup")
async def start_outbox_worker() -> None:
    global _outbox_worker_task
    if get_settings().storage_backend == "db":
        init_db()
    if not _is_outbox_worker_enabled():
        return
    if _outbox_worker_task is None or _outbox_worker_task.done():
        _outbox_worker_task = asyncio.create_task(_outbox_worker_loop())
        outbox_logger.info("Outbox worker started")


@app.on_event("shutdown")
async def stop_outbox_worker() -> None:
    global _outbox_worker_task
    if _outbox_worker_task is None:
        return
    _outbox_worker_task.cancel()
    try:
        await _outbox_worker_task
    except asyncio.CancelledError:
        pass
    _outbox_worker_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}
