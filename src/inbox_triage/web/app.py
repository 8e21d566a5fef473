"""FastAPI application exposing the triage engine as JSON routes.

Creates the FastAPI app with:
- Lifespan context manager for dependency initialization
- The API router (runs, classifications, overrides, rules)

Manual runs execute as asyncio tasks on the server's event loop; the
lifespan waits for them on shutdown.

Usage:
    from inbox_triage.web.app import create_app

    app = create_app()
    # Run with: uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from inbox_triage.core.logging import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize dependencies on startup, clean up on shutdown.

    On startup:
    1. Load config
    2. Initialize database
    3. Create the Anthropic client and the run manager
    4. Create the feedback service and the read model

    On shutdown:
    - Wait for background runs to finish
    """
    import anthropic

    from inbox_triage.config import get_config
    from inbox_triage.core.errors import ConfigLoadError, ConfigValidationError
    from inbox_triage.db.store import DatabaseStore
    from inbox_triage.engine.feedback import FeedbackService
    from inbox_triage.engine.read_model import ClassificationReader
    from inbox_triage.engine.runner import create_run_manager

    app.state.store = None
    app.state.run_manager = None
    app.state.feedback_service = None
    app.state.reader = None

    # 1. Load config
    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        logger.error("config_load_failed", error=str(e))
        app.state.config = None
        yield
        return

    app.state.config = config

    # 2. Initialize database
    db_path = Path(config.database.path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = DatabaseStore(db_path)
    await store.initialize()
    app.state.store = store

    # 3. Anthropic client and run manager (retries are the classifier's job)
    try:
        anthropic_client = anthropic.AsyncAnthropic(max_retries=0)
        app.state.run_manager = create_run_manager(config, store, anthropic_client)
    except anthropic.AnthropicError as e:
        logger.error("anthropic_client_init_failed", error=str(e))

    # 4. Feedback and reads work without the LLM
    app.state.feedback_service = FeedbackService(store)
    app.state.reader = ClassificationReader(store, config)

    logger.info("app_started", database=str(db_path), runs_enabled=app.state.run_manager is not None)
    yield

    # Shutdown
    if app.state.run_manager is not None and app.state.run_manager.active_tasks:
        logger.info("waiting_for_background_runs", runs=app.state.run_manager.active_tasks)
        await app.state.run_manager.wait_for_background_runs()
    logger.info("app_stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance
    """
    from inbox_triage.web.routes import api_router

    app = FastAPI(
        title="Inbox Triage",
        description="Email triage engine: runs, classifications and user feedback",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(api_router)
    return app
