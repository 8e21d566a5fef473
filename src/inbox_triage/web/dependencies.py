"""FastAPI dependency injection helpers.

Extracts shared dependencies from app.state for use in route handlers.
All dependencies are initialized during the FastAPI lifespan and stored
on app.state for concurrent access by the routes and background runs.

Usage:
    from inbox_triage.web.dependencies import get_store

    @router.get("/runs/{run_id}")
    async def get_run(run_id: str, store: DatabaseStore = Depends(get_store)):
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

if TYPE_CHECKING:
    from inbox_triage.config_schema import AppConfig
    from inbox_triage.db.store import DatabaseStore
    from inbox_triage.engine.feedback import FeedbackService
    from inbox_triage.engine.read_model import ClassificationReader
    from inbox_triage.engine.runner import RunManager


def get_store(request: Request) -> DatabaseStore:
    """Get the shared DatabaseStore from app state."""
    store = request.app.state.store
    if store is None:
        raise HTTPException(status_code=503, detail="Store not initialized")
    return store


def get_config(request: Request) -> AppConfig:
    """Get the current AppConfig from app state."""
    return request.app.state.config


def get_run_manager(request: Request) -> RunManager:
    """Get the RunManager; 503 when the LLM client could not be created."""
    run_manager = request.app.state.run_manager
    if run_manager is None:
        raise HTTPException(status_code=503, detail="Triage runs are not available")
    return run_manager


def get_feedback_service(request: Request) -> FeedbackService:
    service = request.app.state.feedback_service
    if service is None:
        raise HTTPException(status_code=503, detail="Feedback service not initialized")
    return service


def get_reader(request: Request) -> ClassificationReader:
    reader = request.app.state.reader
    if reader is None:
        raise HTTPException(status_code=503, detail="Read model not initialized")
    return reader
