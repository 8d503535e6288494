import os
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from switchboard.config import settings
from switchboard.database import init_db
from switchboard.logging_config import get_logger, setup_logging
from switchboard.routers import auth, queues, webchat, webhook
from switchboard.services.connection_registry import get_connection_registry
from switchboard.services.conversation_service import get_conversation_store
from switchboard.services.job_queue import get_job_queue_manager
from switchboard.services.job_workers import WorkerPool, build_default_handlers
from switchboard.services.message_dispatcher import get_message_dispatcher
from switchboard.services.session_service import CLOSE_GOING_AWAY

setup_logging(settings.log_level)

app = FastAPI(
    title="Switchboard",
    description="Real-time chat sessions and background job queues",
    version="0.1.0",
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
app.include_router(webchat.router)
app.include_router(webhook.router)
app.include_router(queues.router)

worker_logger = get_logger("worker_pool")
_worker_pool: Optional[WorkerPool] = None


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_workers_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("WORKERS_ENABLED"), default=True)


@app.on_event("startup")
async def startup() -> None:
    global _worker_pool
    init_db()
    if not _is_workers_enabled():
        worker_logger.info("Workers disabled")
        return
    manager = get_job_queue_manager()
    _worker_pool = WorkerPool(
        manager,
        build_default_handlers(manager, get_message_dispatcher()),
        poll_interval=settings.worker_poll_interval_seconds,
        job_timeout=settings.job_timeout_seconds,
        stalled_after=settings.stalled_job_seconds,
        conversations=get_conversation_store(),
    )
    _worker_pool.start()
    worker_logger.info("Worker pool started")


@app.on_event("shutdown")
async def shutdown() -> None:
    global _worker_pool
    if _worker_pool is not None:
        await _worker_pool.stop()
        _worker_pool = None
    await get_connection_registry().close_all(code=CLOSE_GOING_AWAY, reason="ServerShutdown")


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "sessions": len(get_connection_registry()),
        "queues_healthy": get_job_queue_manager().health_check()["healthy"],
    }
