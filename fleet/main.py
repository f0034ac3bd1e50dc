"""FastAPI entry-point exposing fleet controls."""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from fleet.api.budgets import costs_router
from fleet.api.budgets import router as budgets_router
from fleet.api.routes import router as fleet_router
from fleet.api.tasks import router as tasks_router
from fleet.runtime import get_runtime


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the fleet with the application and stop it on shutdown."""
    runtime = get_runtime()
    await runtime.start()
    yield
    await runtime.stop()


app = FastAPI(title="Agent Fleet", lifespan=lifespan)
app.include_router(tasks_router)
app.include_router(fleet_router)
app.include_router(budgets_router)
app.include_router(costs_router)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}
