"""FastAPI application hosting the automation engine.

Only a health endpoint is exposed; the app exists to own the database
connection and the periodic sweep for the lifetime of the process.
"""

import asyncio
import logging
import os
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from flowengine.config import EngineSettings
from flowengine.db.database import close_database, init_database
from flowengine.db.secrets import FernetCipher
from flowengine.services.actions import ActionGateway, HttpActionGateway
from flowengine.services.audit import AuditLogger
from flowengine.services.interpreter import NodeInterpreter
from flowengine.services.scheduler import ExecutionScheduler
from flowengine.services.trigger import TriggerDispatcher

# Configure logging
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stdout,
)

logger = logging.getLogger(__name__)

# Background task handle
_sweep_task: asyncio.Task | None = None


def build_gateway(settings: EngineSettings) -> HttpActionGateway:
    return HttpActionGateway(
        settings.actions_base_url,
        timeout=settings.action_timeout_seconds,
        api_token=os.getenv("FLOWENGINE_ACTIONS_API_TOKEN"),
    )


def build_engine(
    settings: EngineSettings, gateway: ActionGateway
) -> tuple[ExecutionScheduler, TriggerDispatcher]:
    """Wire the interpreter, audit logger, scheduler and dispatcher together."""
    interpreter = NodeInterpreter(gateway, settings.action_timeout_seconds)
    audit = AuditLogger(FernetCipher.from_env())
    scheduler = ExecutionScheduler(interpreter, audit, settings)
    dispatcher = TriggerDispatcher(scheduler, settings)
    return scheduler, dispatcher


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup and shutdown."""
    global _sweep_task

    # Startup
    settings = EngineSettings.from_env()
    await init_database(settings.database_path)

    gateway = build_gateway(settings)
    scheduler, dispatcher = build_engine(settings, gateway)
    app.state.scheduler = scheduler
    app.state.dispatcher = dispatcher

    _sweep_task = asyncio.create_task(scheduler.run_forever())
    logger.info("Started execution sweep background task")

    yield

    # Shutdown
    if _sweep_task:
        _sweep_task.cancel()
        try:
            await _sweep_task
        except asyncio.CancelledError:
            pass
        logger.info("Stopped execution sweep background task")

    await gateway.close()
    await close_database()


app = FastAPI(
    title="Clinic Automation Engine",
    description="Versioned automation flows for leads, patients and conversations",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}
