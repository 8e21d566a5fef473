"""Run manager: triggers, per-user serialization and stale-run handling.

A manual trigger creates the run record and returns at once; the run then
executes as an asyncio task and callers poll its status. Cron runs go
through the users one after another.

Runs of one user never overlap in this process (per-user asyncio.Lock).
Across processes the only guard is the stale-run check, which is advisory.

Usage:
    from inbox_triage.engine.runner import create_run_manager

    manager = create_run_manager(config, store, anthropic_client)
    run = await manager.trigger(user_id)
    status = await manager.get_run(run.id)
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from inbox_triage.classifier.engine import BatchClassifier
from inbox_triage.config import get_config, reload_config_if_changed
from inbox_triage.core.errors import RunNotFoundError, TriageError
from inbox_triage.core.logging import get_logger
from inbox_triage.engine.pipeline import PipelineResult, TriagePipeline
from inbox_triage.engine.sync import AccountSyncer
from inbox_triage.sources import default_source_factory

if TYPE_CHECKING:
    import anthropic

    from inbox_triage.config_schema import AppConfig
    from inbox_triage.db.store import AgentRun, DatabaseStore, RunTrigger
    from inbox_triage.sources.base import SourceFactory

logger = get_logger(__name__)

STALE_RUN_MESSAGE = "Run timed out (exceeded {minutes} minutes)"


class RunManager:
    """Starts pipeline runs and tracks the ones executing in the background."""

    def __init__(self, store: DatabaseStore, pipeline: TriagePipeline, config: AppConfig):
        self._store = store
        self._pipeline = pipeline
        self._config = config
        self._locks: dict[str, asyncio.Lock] = {}
        self._tasks: set[asyncio.Task] = set()

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    @property
    def active_tasks(self) -> int:
        return len(self._tasks)

    def _refresh_config(self) -> None:
        """Pick up an edited config file before a run starts."""
        if reload_config_if_changed():
            self._config = get_config()
            self._pipeline.update_config(self._config)

    async def expire_stale_runs(self, user_id: str, now: datetime | None = None) -> int:
        """Mark runs stuck in 'running' past the staleness threshold as failed."""
        minutes = self._config.pipeline.stale_run_minutes
        cutoff = (now or datetime.now(UTC)) - timedelta(minutes=minutes)
        expired = await self._store.fail_stale_runs(
            user_id,
            started_before=cutoff,
            message=STALE_RUN_MESSAGE.format(minutes=minutes),
        )
        if expired:
            logger.warning("stale_runs_failed", user_id=user_id, count=expired, stale_minutes=minutes)
        return expired

    async def trigger(self, user_id: str, trigger: RunTrigger = "manual") -> tuple[AgentRun, bool]:
        """Start a background run for a user.

        Returns:
            (run, started). When a fresh run is already in progress it is
            returned with started=False and nothing new is scheduled.

        Raises:
            TriageError: If the user does not exist
        """
        if await self._store.get_user(user_id) is None:
            raise TriageError(f"User '{user_id}' does not exist")

        await self.expire_stale_runs(user_id)
        running = await self._store.get_running_runs(user_id)
        if running:
            logger.info("run_already_in_progress", user_id=user_id, run_id=running[0].id)
            return running[0], False

        run = await self._store.create_run(user_id, trigger)
        task = asyncio.create_task(self._execute_in_background(run), name=f"triage-run-{run.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("run_triggered", user_id=user_id, run_id=run.id, trigger=trigger)
        return run, True

    async def _execute_in_background(self, run: AgentRun) -> None:
        try:
            await self._execute(run)
        except Exception as e:
            # Nobody awaits a fire-and-forget run; the failure is on the run record
            logger.error(
                "background_run_failed",
                run_id=run.id,
                user_id=run.user_id,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def _execute(self, run: AgentRun) -> PipelineResult | None:
        async with self._lock_for(run.user_id):
            # A queued run may have been expired while waiting for the lock
            current = await self._store.get_run(run.id)
            if current is None or current.status != "running":
                logger.warning("run_superseded", run_id=run.id, status=current.status if current else None)
                return None
            self._refresh_config()
            return await self._pipeline.execute(run)

    async def run_now(self, user_id: str, trigger: RunTrigger = "manual") -> PipelineResult:
        """Run the pipeline for a user and wait for it.

        Raises:
            TriageError: Unknown user, or a catastrophic run failure
        """
        if await self._store.get_user(user_id) is None:
            raise TriageError(f"User '{user_id}' does not exist")

        async with self._lock_for(user_id):
            self._refresh_config()
            await self.expire_stale_runs(user_id)
            run = await self._store.create_run(user_id, trigger)
            return await self._pipeline.execute(run)

    async def run_cron(self, user_ids: list[str] | None = None) -> dict[str, PipelineResult | str]:
        """Run every user (or the given ones) sequentially.

        Returns:
            user id -> PipelineResult, or the error message of a failed run
        """
        if user_ids is None:
            user_ids = [user.id for user in await self._store.list_users()]

        outcomes: dict[str, PipelineResult | str] = {}
        for user_id in user_ids:
            try:
                outcomes[user_id] = await self.run_now(user_id, trigger="cron")
            except TriageError as e:
                logger.error("cron_run_failed", user_id=user_id, error=str(e))
                outcomes[user_id] = str(e)

        logger.info(
            "cron_complete",
            users=len(user_ids),
            failed=sum(1 for outcome in outcomes.values() if isinstance(outcome, str)),
        )
        return outcomes

    async def get_run(self, run_id: str) -> AgentRun:
        """Current status record of a run.

        Raises:
            RunNotFoundError: If no such run exists
        """
        run = await self._store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Run '{run_id}' not found")
        return run

    async def wait_for_background_runs(self) -> None:
        """Wait until every triggered run has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def create_run_manager(
    config: AppConfig,
    store: DatabaseStore,
    anthropic_client: anthropic.AsyncAnthropic,
    source_factory: SourceFactory | None = None,
) -> RunManager:
    """Wire classifier, syncer and pipeline into a RunManager."""
    classifier = BatchClassifier(anthropic_client=anthropic_client, config=config, store=store)
    syncer = AccountSyncer(store, source_factory or default_source_factory(config.sources), config)
    pipeline = TriagePipeline(store, classifier, syncer, config)
    return RunManager(store, pipeline, config)
