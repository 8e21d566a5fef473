"""User feedback: overrides, handled/snooze marks and sender learning.

An override flags the classification user-overridden, so no automated pass
touches it again. It also feeds sender intelligence:
- a corrected category is added to the sender's topics
- repeated corrections toward bulk categories mark the sender 'automated'
  (only when no relationship is set)
- repeated corrections to high priority promote the sender to VIP
  (never demoted automatically)

Sender learning is best-effort; its failure never undoes the override.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from inbox_triage.classifier.categories import ALLOWED_CATEGORIES, AUTOMATED_CATEGORIES
from inbox_triage.core.errors import DatabaseError
from inbox_triage.core.logging import get_logger, short_id
from inbox_triage.db.store import OVERRIDABLE_FIELDS
from inbox_triage.models import RELATIONSHIPS

if TYPE_CHECKING:
    from inbox_triage.db.store import DatabaseStore, StoredClassification

logger = get_logger(__name__)

HIGH_PRIORITY = 2
AUTO_VIP_MIN_OVERRIDES = 2
AUTO_VIP_REASON = "auto: repeated high-priority overrides"
AUTOMATED_MIN_OVERRIDES = 2
AUTOMATED_MIN_TOPICS = 2
BOOLEAN_FIELDS = ("needs_reply", "needs_approval", "is_thread_active")


@dataclass
class OverrideOutcome:
    """Classification before and after an override, plus what was learned."""

    before: StoredClassification
    after: StoredClassification
    sender_updated: bool = False
    relationship_inferred: str | None = None
    vip_promoted: bool = False


def validate_override(changes: dict[str, Any]) -> dict[str, Any]:
    """Check and normalize override fields.

    The deadline may be a datetime, an ISO 8601 string or None (clears it).

    Raises:
        ValueError: Unknown field, empty change set or invalid value
    """
    unknown = set(changes) - OVERRIDABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot override field(s): {', '.join(sorted(unknown))}")
    if not changes:
        raise ValueError("Override contains no changes")

    normalized: dict[str, Any] = {}
    if "priority" in changes:
        priority = changes["priority"]
        if isinstance(priority, bool) or not isinstance(priority, int) or not 1 <= priority <= 5:
            raise ValueError("priority must be an integer between 1 and 5")
        normalized["priority"] = priority
    if "category" in changes:
        if changes["category"] not in ALLOWED_CATEGORIES:
            raise ValueError(f"Unknown category '{changes['category']}'")
        normalized["category"] = changes["category"]
    for name in BOOLEAN_FIELDS:
        if name in changes:
            if not isinstance(changes[name], bool):
                raise ValueError(f"{name} must be true or false")
            normalized[name] = changes[name]
    if "deadline" in changes:
        normalized["deadline"] = _parse_deadline(changes["deadline"])
    return normalized


def _parse_deadline(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value))
        except ValueError as e:
            raise ValueError(f"Invalid deadline: {value!r}") from e
    return parsed.replace(tzinfo=UTC) if parsed.tzinfo is None else parsed.astimezone(UTC)


class FeedbackService:
    """Applies user corrections and the sender learning that follows them."""

    def __init__(self, store: DatabaseStore):
        self._store = store

    async def override(self, email_id: str, changes: dict[str, Any]) -> OverrideOutcome | None:
        """Apply a user override.

        Returns:
            OverrideOutcome, or None if the email has no classification

        Raises:
            ValueError: Invalid override fields
            DatabaseError: If the override itself cannot be stored
        """
        changes = validate_override(changes)
        pair = await self._store.apply_override(email_id, changes)
        if pair is None:
            return None
        before, after = pair
        outcome = OverrideOutcome(before=before, after=after)

        email = await self._store.get_email(email_id)
        if email is not None:
            try:
                await self._learn_from_override(outcome, email.from_address, changes)
            except DatabaseError as e:
                logger.warning("sender_override_learning_failed", email_id=short_id(email_id), error=str(e))

        logger.info(
            "classification_overridden",
            email_id=short_id(email_id),
            fields=sorted(changes),
            previous_priority=before.result.priority,
            priority=after.result.priority,
            previous_category=before.result.category,
            category=after.result.category,
            vip_promoted=outcome.vip_promoted,
        )
        return outcome

    async def _learn_from_override(
        self,
        outcome: OverrideOutcome,
        sender: str,
        changes: dict[str, Any],
    ) -> None:
        user_id = outcome.after.user_id
        previous = outcome.before.result
        profile = await self._store.get_sender_profile(user_id, sender)

        topics: list[str] | None = None
        relationship: str | None = None
        new_category = changes.get("category")
        if new_category and new_category != previous.category:
            existing_topics = list(profile.topics) if profile else []
            if new_category not in existing_topics:
                topics = [*existing_topics, new_category]
            if (
                profile is not None
                and new_category in AUTOMATED_CATEGORIES
                and not profile.relationship
                and profile.override_count >= AUTOMATED_MIN_OVERRIDES
            ):
                automated_topics = sum(1 for t in existing_topics if t in AUTOMATED_CATEGORIES) + 1
                if automated_topics >= AUTOMATED_MIN_TOPICS:
                    relationship = "automated"

        await self._store.record_sender_override(user_id, sender, topics=topics, relationship=relationship)
        outcome.sender_updated = True
        outcome.relationship_inferred = relationship

        new_priority = changes.get("priority")
        already_vip = profile is not None and profile.is_vip
        if new_priority is not None and new_priority <= HIGH_PRIORITY < previous.priority and not already_vip:
            count = await self._store.count_high_priority_overrides(user_id, sender, max_priority=HIGH_PRIORITY)
            if count >= AUTO_VIP_MIN_OVERRIDES:
                await self._store.set_sender_vip(user_id, sender, True, reason=AUTO_VIP_REASON)
                outcome.vip_promoted = True
                logger.info("sender_auto_vip", sender_domain=sender.rsplit("@", 1)[-1], overrides=count)

    async def set_handled(self, email_id: str, handled: bool = True) -> StoredClassification | None:
        """User handled/unhandled toggle. None if the email has no classification."""
        if await self._store.get_classification(email_id) is None:
            return None
        await self._store.set_handled(email_id, handled)
        return await self._store.get_classification(email_id)

    async def snooze(self, email_id: str, until: datetime | None) -> StoredClassification | None:
        """Snooze until a time (None unsnoozes)."""
        if await self._store.get_classification(email_id) is None:
            return None
        if until is not None and until.tzinfo is None:
            until = until.replace(tzinfo=UTC)
        await self._store.snooze(email_id, until)
        return await self._store.get_classification(email_id)

    async def set_vip(self, user_id: str, address: str, is_vip: bool) -> None:
        await self._store.set_sender_vip(user_id, address, is_vip, reason="manual" if is_vip else None)

    async def set_relationship(self, user_id: str, address: str, relationship: str | None) -> None:
        """Manual relationship; inference never overrides it afterwards.

        Raises:
            ValueError: Unknown relationship
        """
        if relationship is not None and relationship not in RELATIONSHIPS:
            raise ValueError(f"Unknown relationship '{relationship}'. Use one of: {', '.join(RELATIONSHIPS)}")
        await self._store.set_sender_relationship(user_id, address, relationship)
