"""Tests for RunManager (triggers, serialization, stale runs, cron)."""

import os
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from inbox_triage.config import get_config
from inbox_triage.config_schema import AppConfig
from inbox_triage.core.errors import RunNotFoundError, SyncError, TriageError
from inbox_triage.db.store import DatabaseStore
from inbox_triage.engine.pipeline import PipelineResult
from inbox_triage.engine.runner import RunManager, create_run_manager


def _make_pipeline(side_effect=None) -> MagicMock:
    pipeline = MagicMock()

    async def execute(run):
        if side_effect:
            side_effect(run)
        return PipelineResult(run_id=run.id, user_id=run.user_id, status="completed")

    pipeline.execute = AsyncMock(side_effect=execute)
    return pipeline


@pytest.fixture
async def user_store(store: DatabaseStore) -> DatabaseStore:
    await store.save_user("u1", "me@example.com")
    await store.save_user("u2", "you@example.com")
    return store


class TestTrigger:
    """Tests for RunManager.trigger()."""

    @pytest.mark.asyncio
    async def test_starts_background_run(self, user_store: DatabaseStore) -> None:
        pipeline = _make_pipeline()
        manager = RunManager(user_store, pipeline, AppConfig())

        run, started = await manager.trigger("u1")
        assert started is True
        assert run.status == "running"
        assert run.trigger == "manual"

        await manager.wait_for_background_runs()
        pipeline.execute.assert_awaited_once()
        assert pipeline.execute.await_args.args[0].id == run.id
        assert manager.active_tasks == 0

    @pytest.mark.asyncio
    async def test_existing_run_returned(self, user_store: DatabaseStore) -> None:
        existing = await user_store.create_run("u1", "cron")
        pipeline = _make_pipeline()
        manager = RunManager(user_store, pipeline, AppConfig())

        run, started = await manager.trigger("u1")
        assert started is False
        assert run.id == existing.id
        pipeline.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_user(self, user_store: DatabaseStore) -> None:
        manager = RunManager(user_store, _make_pipeline(), AppConfig())
        with pytest.raises(TriageError, match="does not exist"):
            await manager.trigger("ghost")

    @pytest.mark.asyncio
    async def test_background_failure_not_raised(self, user_store: DatabaseStore) -> None:
        def fail(run):
            raise SyncError("All 1 account(s) failed to sync.")

        manager = RunManager(user_store, _make_pipeline(fail), AppConfig())
        await manager.trigger("u1")
        await manager.wait_for_background_runs()
        assert manager.active_tasks == 0

    @pytest.mark.asyncio
    async def test_expired_queued_run_skipped(self, user_store: DatabaseStore) -> None:
        pipeline = _make_pipeline()
        manager = RunManager(user_store, pipeline, AppConfig())

        async with manager._lock_for("u1"):
            run, _ = await manager.trigger("u1")
            await user_store.finish_run(run.id, "failed", error_message="Run timed out")

        await manager.wait_for_background_runs()
        pipeline.execute.assert_not_awaited()


class TestStaleRuns:
    """Tests for stale run expiry."""

    @pytest.mark.asyncio
    async def test_expire_stale_runs(self, user_store: DatabaseStore) -> None:
        run = await user_store.create_run("u1", "manual")
        manager = RunManager(user_store, _make_pipeline(), AppConfig())

        assert await manager.expire_stale_runs("u1") == 0
        later = datetime.now(UTC) + timedelta(minutes=11)
        assert await manager.expire_stale_runs("u1", now=later) == 1

        expired = await user_store.get_run(run.id)
        assert expired.status == "failed"
        assert expired.error_message == "Run timed out (exceeded 10 minutes)"


class TestRunNowAndCron:
    """Tests for run_now() and run_cron()."""

    @pytest.mark.asyncio
    async def test_run_now_waits_for_result(self, user_store: DatabaseStore) -> None:
        manager = RunManager(user_store, _make_pipeline(), AppConfig())
        result = await manager.run_now("u1")
        assert result.status == "completed"
        assert result.user_id == "u1"

    @pytest.mark.asyncio
    async def test_cron_continues_after_failure(self, user_store: DatabaseStore) -> None:
        def fail_u1(run):
            if run.user_id == "u1":
                raise SyncError("mailbox unreadable")

        pipeline = _make_pipeline(fail_u1)
        manager = RunManager(user_store, pipeline, AppConfig())

        outcomes = await manager.run_cron()
        assert outcomes["u1"] == "mailbox unreadable"
        assert outcomes["u2"].status == "completed"
        assert all(call.args[0].trigger == "cron" for call in pipeline.execute.await_args_list)

    @pytest.mark.asyncio
    async def test_cron_selected_users(self, user_store: DatabaseStore) -> None:
        manager = RunManager(user_store, _make_pipeline(), AppConfig())
        outcomes = await manager.run_cron(["u2"])
        assert list(outcomes) == ["u2"]


class TestGetRun:
    """Tests for RunManager.get_run()."""

    @pytest.mark.asyncio
    async def test_found(self, user_store: DatabaseStore) -> None:
        run = await user_store.create_run("u1", "manual")
        manager = RunManager(user_store, _make_pipeline(), AppConfig())
        assert (await manager.get_run(run.id)).id == run.id

    @pytest.mark.asyncio
    async def test_not_found(self, user_store: DatabaseStore) -> None:
        manager = RunManager(user_store, _make_pipeline(), AppConfig())
        with pytest.raises(RunNotFoundError):
            await manager.get_run("missing")


class TestCreateRunManager:
    """Tests for create_run_manager()."""

    def test_wires_components(self, store: DatabaseStore) -> None:
        manager = create_run_manager(AppConfig(), store, MagicMock())
        assert isinstance(manager, RunManager)
        assert manager.active_tasks == 0


class TestConfigReload:
    """Tests for picking up config edits between runs."""

    @pytest.mark.asyncio
    async def test_edited_file_reaches_pipeline(
        self, user_store: DatabaseStore, set_config_env: None, config_file: Path
    ) -> None:
        pipeline = _make_pipeline()
        manager = RunManager(user_store, pipeline, get_config())

        await manager.run_now("u1")
        pipeline.update_config.assert_not_called()

        config_file.write_text("pipeline:\n  stale_run_minutes: 30\n")
        stat = config_file.stat()
        os.utime(config_file, (stat.st_atime, stat.st_mtime + 10))

        await manager.run_now("u1")
        new_config = pipeline.update_config.call_args.args[0]
        assert new_config.pipeline.stale_run_minutes == 30
