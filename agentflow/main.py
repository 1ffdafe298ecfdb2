"""FastAPI entry-point exposing the orchestration core."""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from agentflow.api.execution import router as execution_router
from agentflow.api.monitoring import router as monitoring_router
from agentflow.api.routes import router as agents_router
from agentflow.api.schedule import router as schedule_router
from agentflow.runtime import start_services, stop_services


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for FastAPI application."""
    # Startup: a scheduler that cannot start aborts the application
    await start_services()
    yield
    # Shutdown: stop timers, let in-flight executions finish
    await stop_services()


app = FastAPI(title="Agentflow Orchestrator", lifespan=lifespan)
app.include_router(schedule_router)
app.include_router(execution_router)
app.include_router(agents_router)
app.include_router(monitoring_router)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}
