"""Tests for ClassificationReader (read-time effective priority)."""

from datetime import UTC, datetime, timedelta

import pytest

from inbox_triage.config_schema import AppConfig
from inbox_triage.db.store import DatabaseStore, SenderProfile
from inbox_triage.engine.read_model import ClassificationReader, recent_volume
from inbox_triage.models import ClassificationResult, NormalizedEmail

BASE = datetime(2024, 3, 1, 9, 0, tzinfo=UTC)
NOW = BASE + timedelta(hours=2)


def _make_result(priority: int = 4, category: str = "fyi", **kwargs) -> ClassificationResult:
    return ClassificationResult(
        priority=priority,
        category=category,
        needs_reply=kwargs.pop("needs_reply", False),
        needs_approval=False,
        is_thread_active=False,
        summary="Summary",
        confidence=0.9,
        classifier_version="llm:test-model",
        **kwargs,
    )


async def _seed(store: DatabaseStore, specs: list[tuple[str, str, ClassificationResult]]) -> dict[str, str]:
    """Store (external id, sender, result) triples; returns external id -> email id."""
    await store.save_user("u1", "me@example.com")
    account = await store.create_account("u1", "maildir", "me@example.com", "/tmp/mail", account_id="acc")
    await store.save_emails(
        account,
        [
            NormalizedEmail(
                external_id=external_id,
                from_address=sender,
                subject="Weekly notes",
                body_text="Notes attached.",
                received_at=BASE + timedelta(minutes=i),
            )
            for i, (external_id, sender, _) in enumerate(specs)
        ],
    )
    ids = {e.external_id: e.id for e in await store.get_unclassified_emails("u1", 100)}
    for external_id, _, result in specs:
        await store.save_classification(ids[external_id], "u1", result, reason="initial")
    return ids


class TestGetView:
    """Tests for ClassificationReader.get_view()."""

    @pytest.mark.asyncio
    async def test_vip_lifts_effective_priority(self, store: DatabaseStore) -> None:
        ids = await _seed(store, [("a", "boss@partner.com", _make_result(priority=4))])
        await store.set_sender_vip("u1", "boss@partner.com", True, reason="manual")

        view = await ClassificationReader(store, AppConfig()).get_view(ids["a"], now=NOW)

        assert view.stored.result.priority == 4
        assert view.effective_priority == 2
        assert view.escalation_reasons == ["VIP sender"]

    @pytest.mark.asyncio
    async def test_deadline_escalates(self, store: DatabaseStore) -> None:
        ids = await _seed(store, [("a", "x@partner.com", _make_result(priority=5, deadline=NOW + timedelta(days=1)))])
        view = await ClassificationReader(store, AppConfig()).get_view(ids["a"], now=NOW)
        assert view.effective_priority == 1
        assert view.escalation_reasons == ["Deadline in 1 day"]

    @pytest.mark.asyncio
    async def test_missing(self, store: DatabaseStore) -> None:
        assert await ClassificationReader(store, AppConfig()).get_view("missing") is None

    @pytest.mark.asyncio
    async def test_to_dict(self, store: DatabaseStore) -> None:
        ids = await _seed(store, [("a", "x@partner.com", _make_result())])
        data = (await ClassificationReader(store, AppConfig()).get_view(ids["a"], now=NOW)).to_dict()

        assert data["email_id"] == ids["a"]
        assert data["classification"]["priority"] == 4
        assert data["effective_priority"] == 4
        assert data["handled"] is False
        assert data["snoozed_until"] is None


class TestListViews:
    """Tests for ClassificationReader.list_views()."""

    @pytest.mark.asyncio
    async def test_filters_on_effective_priority(self, store: DatabaseStore) -> None:
        await _seed(
            store,
            [
                ("vip", "boss@partner.com", _make_result(priority=4)),
                ("plain", "other@partner.com", _make_result(priority=4)),
            ],
        )
        await store.set_sender_vip("u1", "boss@partner.com", True)
        reader = ClassificationReader(store, AppConfig())

        views = await reader.list_views("u1", priorities=[1, 2], now=NOW)
        assert [v.email.external_id for v in views] == ["vip"]
        assert len(await reader.list_views("u1", now=NOW)) == 2

    @pytest.mark.asyncio
    async def test_handled_and_snoozed_hidden(self, store: DatabaseStore) -> None:
        ids = await _seed(
            store,
            [
                ("done", "a@partner.com", _make_result()),
                ("later", "b@partner.com", _make_result()),
                ("open", "c@partner.com", _make_result()),
            ],
        )
        await store.set_handled(ids["done"], True)
        await store.snooze(ids["later"], NOW + timedelta(hours=1))
        reader = ClassificationReader(store, AppConfig())

        assert [v.email.external_id for v in await reader.list_views("u1", now=NOW)] == ["open"]
        assert len(await reader.list_views("u1", include_handled=True, include_snoozed=True, now=NOW)) == 3
        # Snooze expired
        later = await reader.list_views("u1", now=NOW + timedelta(hours=2))
        assert {v.email.external_id for v in later} == {"later", "open"}

    @pytest.mark.asyncio
    async def test_category_and_reply_filters(self, store: DatabaseStore) -> None:
        await _seed(
            store,
            [
                ("bill", "a@partner.com", _make_result(category="finance")),
                ("ask", "b@partner.com", _make_result(category="reply-needed", needs_reply=True)),
            ],
        )
        reader = ClassificationReader(store, AppConfig())

        assert [v.email.external_id for v in await reader.list_views("u1", category="finance", now=NOW)] == ["bill"]
        assert [v.email.external_id for v in await reader.list_views("u1", needs_reply=True, now=NOW)] == ["ask"]

    @pytest.mark.asyncio
    async def test_limit(self, store: DatabaseStore) -> None:
        await _seed(store, [(f"m{i}", f"s{i}@partner.com", _make_result()) for i in range(5)])
        views = await ClassificationReader(store, AppConfig()).list_views("u1", limit=2, now=NOW)
        assert [v.email.external_id for v in views] == ["m4", "m3"]

    @pytest.mark.asyncio
    async def test_no_rows(self, store: DatabaseStore) -> None:
        assert await ClassificationReader(store, AppConfig()).list_views("nobody") == []


class TestRecentVolume:
    """Tests for recent_volume()."""

    def test_lapsed_window_is_zero(self) -> None:
        profile = SenderProfile(
            user_id="u1",
            address="a@x.com",
            recent_window_start=NOW - timedelta(days=10),
            recent_email_count=6,
        )
        assert recent_volume(profile, 7, NOW) == 0
        assert recent_volume(profile, 14, NOW) == 6

    def test_no_window(self) -> None:
        assert recent_volume(SenderProfile(user_id="u1", address="a@x.com"), 7, NOW) == 0
