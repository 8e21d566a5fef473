"""Tests for FeedbackService (overrides and the sender learning behind them)."""

from datetime import UTC, datetime

import pytest

from inbox_triage.db.store import DatabaseStore
from inbox_triage.engine.feedback import AUTO_VIP_REASON, FeedbackService, validate_override
from inbox_triage.models import ClassificationResult, NormalizedEmail

BASE = datetime(2024, 3, 1, 9, 0, tzinfo=UTC)


def _make_result(priority: int = 4, category: str = "task") -> ClassificationResult:
    return ClassificationResult(
        priority=priority,
        category=category,
        needs_reply=False,
        needs_approval=False,
        is_thread_active=False,
        summary="Summary",
        confidence=0.8,
        classifier_version="llm:test-model",
    )


async def _seed(store: DatabaseStore, count: int = 3, sender: str = "boss@partner.com") -> list[str]:
    """Store `count` classified emails from one sender; returns their ids."""
    await store.save_user("u1", "me@example.com")
    account = await store.create_account("u1", "maildir", "me@example.com", "/tmp/mail", account_id="acc")
    await store.save_emails(
        account,
        [
            NormalizedEmail(
                external_id=f"{sender}-{i}",
                from_address=sender,
                subject=f"Update {i}",
                received_at=BASE.replace(hour=9 + i),
            )
            for i in range(count)
        ],
    )
    emails = await store.get_unclassified_emails("u1", 100)
    for email in emails:
        await store.save_classification(email.id, "u1", _make_result(), reason="initial")
    return [e.id for e in sorted(emails, key=lambda e: e.received_at)]


class TestValidateOverride:
    """Tests for validate_override()."""

    def test_valid_fields(self) -> None:
        changes = validate_override({"priority": 1, "category": "finance", "needs_reply": True})
        assert changes == {"priority": 1, "category": "finance", "needs_reply": True}

    def test_unknown_field(self) -> None:
        with pytest.raises(ValueError, match="summary"):
            validate_override({"summary": "x"})

    def test_empty(self) -> None:
        with pytest.raises(ValueError, match="no changes"):
            validate_override({})

    @pytest.mark.parametrize("priority", [0, 6, True, "1", 2.5])
    def test_bad_priority(self, priority) -> None:
        with pytest.raises(ValueError, match="priority"):
            validate_override({"priority": priority})

    def test_unknown_category(self) -> None:
        with pytest.raises(ValueError, match="Unknown category"):
            validate_override({"category": "urgent-stuff"})

    def test_boolean_must_be_bool(self) -> None:
        with pytest.raises(ValueError, match="needs_approval"):
            validate_override({"needs_approval": "yes"})

    def test_deadline_parsing(self) -> None:
        assert validate_override({"deadline": "2024-03-08T17:00:00"})["deadline"] == datetime(
            2024, 3, 8, 17, 0, tzinfo=UTC
        )
        assert validate_override({"deadline": "2024-03-08T17:00:00+02:00"})["deadline"] == datetime(
            2024, 3, 8, 15, 0, tzinfo=UTC
        )
        assert validate_override({"deadline": None})["deadline"] is None
        assert validate_override({"deadline": ""})["deadline"] is None

    def test_bad_deadline(self) -> None:
        with pytest.raises(ValueError, match="Invalid deadline"):
            validate_override({"deadline": "next friday"})


class TestOverride:
    """Tests for FeedbackService.override()."""

    @pytest.mark.asyncio
    async def test_applies_and_learns(self, store: DatabaseStore) -> None:
        ids = await _seed(store, count=1)
        outcome = await FeedbackService(store).override(ids[0], {"category": "finance", "priority": 3})

        assert outcome.before.result.category == "task"
        assert outcome.after.result.category == "finance"
        assert outcome.after.user_override is True
        assert outcome.sender_updated is True
        assert outcome.vip_promoted is False

        profile = await store.get_sender_profile("u1", "boss@partner.com")
        assert profile.override_count == 1
        assert profile.topics == ["finance"]

    @pytest.mark.asyncio
    async def test_unclassified_email(self, store: DatabaseStore) -> None:
        assert await FeedbackService(store).override("missing", {"priority": 1}) is None

    @pytest.mark.asyncio
    async def test_repeated_high_priority_overrides_promote_vip(self, store: DatabaseStore) -> None:
        ids = await _seed(store, count=3)
        service = FeedbackService(store)

        first = await service.override(ids[0], {"priority": 1})
        assert first.vip_promoted is False
        second = await service.override(ids[1], {"priority": 2})
        assert second.vip_promoted is True

        profile = await store.get_sender_profile("u1", "boss@partner.com")
        assert profile.is_vip is True
        assert profile.vip_reason == AUTO_VIP_REASON

        third = await service.override(ids[2], {"priority": 1})
        assert third.vip_promoted is False

    @pytest.mark.asyncio
    async def test_low_priority_override_never_promotes(self, store: DatabaseStore) -> None:
        ids = await _seed(store, count=3)
        service = FeedbackService(store)
        for email_id in ids:
            outcome = await service.override(email_id, {"priority": 5})
            assert outcome.vip_promoted is False

    @pytest.mark.asyncio
    async def test_bulk_corrections_mark_sender_automated(self, store: DatabaseStore) -> None:
        ids = await _seed(store, count=3, sender="news@shop.example")
        service = FeedbackService(store)

        await service.override(ids[0], {"category": "newsletter"})
        await service.override(ids[1], {"category": "marketing"})
        outcome = await service.override(ids[2], {"category": "spam"})

        assert outcome.relationship_inferred == "automated"
        profile = await store.get_sender_profile("u1", "news@shop.example")
        assert profile.relationship == "automated"
        assert profile.topics == ["newsletter", "marketing", "spam"]

    @pytest.mark.asyncio
    async def test_manual_relationship_kept(self, store: DatabaseStore) -> None:
        ids = await _seed(store, count=3, sender="news@shop.example")
        service = FeedbackService(store)
        await service.set_relationship("u1", "news@shop.example", "colleague")

        for email_id, category in zip(ids, ("newsletter", "marketing", "spam"), strict=True):
            outcome = await service.override(email_id, {"category": category})
            assert outcome.relationship_inferred is None
        assert (await store.get_sender_profile("u1", "news@shop.example")).relationship == "colleague"


class TestMarks:
    """Tests for handled, snooze, VIP and relationship updates."""

    @pytest.mark.asyncio
    async def test_set_handled_toggle(self, store: DatabaseStore) -> None:
        ids = await _seed(store, count=1)
        service = FeedbackService(store)

        assert (await service.set_handled(ids[0])).handled is True
        unhandled = await service.set_handled(ids[0], False)
        assert unhandled.handled is False
        assert unhandled.handled_at is None
        assert await service.set_handled("missing") is None

    @pytest.mark.asyncio
    async def test_snooze_naive_is_utc(self, store: DatabaseStore) -> None:
        ids = await _seed(store, count=1)
        stored = await FeedbackService(store).snooze(ids[0], datetime(2024, 3, 5, 8, 0))
        assert stored.snoozed_until == datetime(2024, 3, 5, 8, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_manual_vip(self, store: DatabaseStore) -> None:
        service = FeedbackService(store)
        await service.set_vip("u1", "ceo@example.com", True)
        profile = await store.get_sender_profile("u1", "ceo@example.com")
        assert profile.is_vip is True
        assert profile.vip_reason == "manual"

    @pytest.mark.asyncio
    async def test_unknown_relationship(self, store: DatabaseStore) -> None:
        with pytest.raises(ValueError, match="Unknown relationship"):
            await FeedbackService(store).set_relationship("u1", "a@x.com", "friend")
