"""Tests for the JSON API routes.

Tests the FastAPI application routes using httpx AsyncClient, covering
runs, the classification read model, user feedback and rule CRUD.
"""

from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from inbox_triage.config_schema import AppConfig
from inbox_triage.core.errors import DatabaseError
from inbox_triage.db.store import DatabaseStore
from inbox_triage.engine.feedback import FeedbackService
from inbox_triage.engine.pipeline import PipelineResult
from inbox_triage.engine.read_model import ClassificationReader
from inbox_triage.engine.runner import RunManager
from inbox_triage.models import ClassificationResult, NormalizedEmail
from inbox_triage.web.app import create_app

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _make_pipeline() -> MagicMock:
    pipeline = MagicMock()

    async def execute(run):
        return PipelineResult(run_id=run.id, user_id=run.user_id, status="completed")

    pipeline.execute = AsyncMock(side_effect=execute)
    return pipeline


@pytest.fixture
def app(store: DatabaseStore, sample_config: AppConfig) -> FastAPI:
    """Create a FastAPI app with test dependencies."""
    test_app = create_app()

    # Override app state with test dependencies
    test_app.state.store = store
    test_app.state.config = sample_config
    test_app.state.run_manager = RunManager(store, _make_pipeline(), sample_config)
    test_app.state.feedback_service = FeedbackService(store)
    test_app.state.reader = ClassificationReader(store, sample_config)

    return test_app


@pytest.fixture
async def client(app: FastAPI) -> AsyncClient:
    """Return an httpx AsyncClient for the test app."""
    # Override lifespan to avoid real initialization
    app.router.lifespan_context = _noop_lifespan
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@asynccontextmanager
async def _noop_lifespan(app: FastAPI):
    """No-op lifespan that preserves existing app.state."""
    yield


async def _seed(store: DatabaseStore, priority: int = 4, sender: str = "sender@partner.com") -> str:
    """Insert a user, an account and one classified email; return the email id."""
    await store.save_user("u1", "me@example.com")
    account = await store.create_account("u1", "maildir", "me@example.com", "/tmp/mail", account_id="acc")
    await store.save_emails(
        account,
        [
            NormalizedEmail(
                external_id="msg-1",
                from_address=sender,
                subject="Test Email Subject",
                snippet="This is a test email body snippet for testing.",
                received_at=datetime.now(UTC) - timedelta(hours=1),
            )
        ],
    )
    email = (await store.get_unclassified_emails("u1", 1))[0]
    await store.save_classification(
        email.id,
        "u1",
        ClassificationResult(
            priority=priority,
            category="fyi",
            needs_reply=False,
            needs_approval=False,
            is_thread_active=False,
            summary="Test summary",
            confidence=0.9,
            classifier_version="llm:test-model",
        ),
        reason="initial",
    )
    return email.id


# ---------------------------------------------------------------------------
# Tests: Health and runs
# ---------------------------------------------------------------------------


async def test_health_returns_200(client: AsyncClient):
    """Health endpoint reports healthy with no runs yet."""
    response = await client.get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["last_run"] is None


async def test_trigger_run_returns_run_id(client: AsyncClient, app: FastAPI, store: DatabaseStore):
    """Triggering a run returns 202 with the run id immediately."""
    await store.save_user("u1", "me@example.com")

    response = await client.post("/api/users/u1/runs")
    assert response.status_code == 202
    data = response.json()
    assert data["started"] is True
    assert data["status"] == "running"

    await app.state.run_manager.wait_for_background_runs()
    poll = await client.get(f"/api/runs/{data['run_id']}")
    assert poll.status_code == 200
    assert poll.json()["user_id"] == "u1"


async def test_trigger_run_in_progress(client: AsyncClient, store: DatabaseStore):
    """A second trigger returns the running run instead of starting one."""
    await store.save_user("u1", "me@example.com")
    existing = await store.create_run("u1", "cron")

    response = await client.post("/api/users/u1/runs")
    assert response.status_code == 202
    data = response.json()
    assert data["run_id"] == existing.id
    assert data["started"] is False
    assert "already in progress" in data["message"]


async def test_trigger_run_unknown_user(client: AsyncClient):
    response = await client.post("/api/users/ghost/runs")
    assert response.status_code == 404


async def test_trigger_run_database_error(client: AsyncClient, app: FastAPI):
    """Store failures while starting a run map to 500."""
    manager = MagicMock()
    manager.trigger = AsyncMock(side_effect=DatabaseError("disk I/O error"))
    app.state.run_manager = manager

    response = await client.post("/api/users/u1/runs")
    assert response.status_code == 500


async def test_runs_unavailable_without_llm(client: AsyncClient, app: FastAPI):
    """Without a run manager the run routes answer 503."""
    app.state.run_manager = None
    response = await client.post("/api/users/u1/runs")
    assert response.status_code == 503


async def test_get_unknown_run(client: AsyncClient):
    response = await client.get("/api/runs/missing")
    assert response.status_code == 404


async def test_list_runs(client: AsyncClient, store: DatabaseStore):
    await store.create_run("u1", "manual")
    await store.create_run("u1", "cron")

    response = await client.get("/api/users/u1/runs", params={"limit": 1})
    assert response.status_code == 200
    assert len(response.json()["runs"]) == 1


# ---------------------------------------------------------------------------
# Tests: Classifications
# ---------------------------------------------------------------------------


async def test_list_classifications(client: AsyncClient, store: DatabaseStore):
    """Listed emails carry stored and effective priority."""
    email_id = await _seed(store)

    response = await client.get("/api/users/u1/classifications")
    assert response.status_code == 200
    data = response.json()
    assert data["count"] == 1
    assert data["emails"][0]["email_id"] == email_id
    assert data["emails"][0]["classification"]["priority"] == 4
    assert data["emails"][0]["effective_priority"] == 4


async def test_list_classifications_effective_filter(client: AsyncClient, store: DatabaseStore):
    """The priority filter applies to effective priority (VIP lifts P4 to P2)."""
    await _seed(store)
    await store.set_sender_vip("u1", "sender@partner.com", True)

    response = await client.get("/api/users/u1/classifications", params={"priority": "1,2"})
    data = response.json()
    assert data["count"] == 1
    assert data["emails"][0]["escalation_reasons"] == ["VIP sender"]


async def test_list_classifications_bad_priority(client: AsyncClient):
    response = await client.get("/api/users/u1/classifications", params={"priority": "high"})
    assert response.status_code == 422


async def test_get_classification(client: AsyncClient, store: DatabaseStore):
    email_id = await _seed(store)
    response = await client.get(f"/api/emails/{email_id}/classification")
    assert response.status_code == 200
    assert response.json()["classification"]["summary"] == "Test summary"


async def test_get_classification_not_found(client: AsyncClient):
    response = await client.get("/api/emails/missing/classification")
    assert response.status_code == 404


# ---------------------------------------------------------------------------
# Tests: Feedback
# ---------------------------------------------------------------------------


async def test_override_and_history(client: AsyncClient, store: DatabaseStore):
    """An override is stored, flagged and visible in the history."""
    email_id = await _seed(store)

    response = await client.patch(
        f"/api/emails/{email_id}/override",
        json={"priority": 1, "category": "finance"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["user_override"] is True
    assert data["classification"]["priority"] == 1
    assert data["classification"]["category"] == "finance"

    history = (await client.get(f"/api/emails/{email_id}/history")).json()["history"]
    assert [entry["reason"] for entry in history] == ["initial", "user-override"]
    assert history[1]["previous_priority"] == 4


async def test_override_clears_deadline(client: AsyncClient, store: DatabaseStore):
    email_id = await _seed(store)
    response = await client.patch(f"/api/emails/{email_id}/override", json={"deadline": None})
    assert response.status_code == 200
    assert response.json()["classification"]["deadline"] is None


@pytest.mark.parametrize(
    "body",
    [
        {"priority": 0},
        {"priority": 6},
        {"category": "not-a-category"},
        {},
    ],
)
async def test_override_invalid(client: AsyncClient, store: DatabaseStore, body: dict[str, Any]):
    email_id = await _seed(store)
    response = await client.patch(f"/api/emails/{email_id}/override", json=body)
    assert response.status_code == 422


async def test_override_unclassified(client: AsyncClient):
    response = await client.patch("/api/emails/missing/override", json={"priority": 2})
    assert response.status_code == 404


async def test_handle_and_snooze(client: AsyncClient, store: DatabaseStore):
    email_id = await _seed(store)

    handled = await client.patch(f"/api/emails/{email_id}/handle", json={"handled": True})
    assert handled.status_code == 200
    assert handled.json()["handled"] is True

    until = "2030-01-01T09:00:00+00:00"
    snoozed = await client.patch(f"/api/emails/{email_id}/snooze", json={"snoozed_until": until})
    assert snoozed.status_code == 200
    assert snoozed.json()["snoozed_until"] == until

    missing = await client.patch("/api/emails/missing/handle", json={"handled": True})
    assert missing.status_code == 404


async def test_update_sender(client: AsyncClient):
    response = await client.put(
        "/api/users/u1/senders/ceo@example.com",
        json={"is_vip": True, "relationship": "manager"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["is_vip"] is True
    assert data["vip_reason"] == "manual"
    assert data["relationship"] == "manager"
    assert data["relationship_manual"] is True


async def test_update_sender_invalid(client: AsyncClient):
    bad = await client.put("/api/users/u1/senders/a@x.com", json={"relationship": "friend"})
    assert bad.status_code == 422
    empty = await client.put("/api/users/u1/senders/a@x.com", json={})
    assert empty.status_code == 422


# ---------------------------------------------------------------------------
# Tests: User rules
# ---------------------------------------------------------------------------


async def test_rule_crud(client: AsyncClient, store: DatabaseStore):
    """Rules can be created, listed, updated and deleted."""
    await store.save_user("u1", "me@example.com")

    created = await client.post(
        "/api/users/u1/rules",
        json={"name": "Billing", "sender_pattern": "*@billing.example.com", "category": "finance", "priority": 4},
    )
    assert created.status_code == 201
    rule_id = created.json()["id"]

    listed = (await client.get("/api/users/u1/rules")).json()["rules"]
    assert [r["name"] for r in listed] == ["Billing"]

    updated = await client.patch(f"/api/rules/{rule_id}", json={"is_active": False})
    assert updated.status_code == 200
    assert updated.json()["is_active"] is False

    deleted = await client.delete(f"/api/rules/{rule_id}")
    assert deleted.status_code == 204
    assert (await client.delete(f"/api/rules/{rule_id}")).status_code == 404


async def test_rule_needs_condition(client: AsyncClient, store: DatabaseStore):
    await store.save_user("u1", "me@example.com")
    response = await client.post("/api/users/u1/rules", json={"name": "Everything", "category": "fyi"})
    assert response.status_code == 422


async def test_rule_unknown_user(client: AsyncClient):
    response = await client.post("/api/users/ghost/rules", json={"name": "R", "subject_contains": "invoice"})
    assert response.status_code == 404


async def test_rule_update_null_name(client: AsyncClient, store: DatabaseStore):
    rule = await store.create_rule("u1", "R", subject_contains="invoice")
    response = await client.patch(f"/api/rules/{rule.id}", json={"name": None})
    assert response.status_code == 422


async def test_rule_update_not_found(client: AsyncClient):
    response = await client.patch("/api/rules/999", json={"is_active": False})
    assert response.status_code == 404
