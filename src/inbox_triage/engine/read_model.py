"""Classification read model with derived effective priority.

Effective priority and escalation reasons are never stored; every read
recomputes them from the stored classification, the sender profile and the
current time.

Usage:
    from inbox_triage.engine.read_model import ClassificationReader

    reader = ClassificationReader(store, config)
    views = await reader.list_views(user_id, priorities=[1, 2])
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from inbox_triage.core.logging import get_logger
from inbox_triage.engine.priority import (
    PrioritySignals,
    detect_follow_up,
    effective_priority,
    escalation_reasons,
    sender_velocity_anomaly,
)

if TYPE_CHECKING:
    from inbox_triage.config_schema import AppConfig
    from inbox_triage.db.store import DatabaseStore, SenderProfile, StoredClassification, User
    from inbox_triage.models import NormalizedEmail

logger = get_logger(__name__)

DEFAULT_LIST_LIMIT = 100
# Fetched before filtering by effective priority, which SQL cannot see
FILTER_FETCH_MULTIPLIER = 5


@dataclass
class ClassificationView:
    """Stored classification plus its read-time priority."""

    email: NormalizedEmail
    stored: StoredClassification
    effective_priority: int
    escalation_reasons: list[str] = field(default_factory=list)
    velocity_anomaly: bool = False

    def to_dict(self) -> dict[str, Any]:
        email = self.email
        stored = self.stored
        return {
            "email_id": email.id,
            "thread_id": email.thread_id,
            "from_address": email.from_address,
            "from_name": email.from_name,
            "subject": email.subject,
            "snippet": email.snippet,
            "received_at": email.received_at.isoformat(),
            "classification": stored.result.to_dict(),
            "effective_priority": self.effective_priority,
            "escalation_reasons": list(self.escalation_reasons),
            "user_override": stored.user_override,
            "handled": stored.handled,
            "handled_at": stored.handled_at.isoformat() if stored.handled_at else None,
            "thread_resolved": stored.thread_resolved,
            "snoozed_until": stored.snoozed_until.isoformat() if stored.snoozed_until else None,
            "classified_at": stored.classified_at.isoformat() if stored.classified_at else None,
        }


def recent_volume(profile: SenderProfile, recent_window_days: int, now: datetime) -> int:
    """Recent email count, or 0 once the profile's window has lapsed."""
    start = profile.recent_window_start
    if start is None or now - start > timedelta(days=recent_window_days):
        return 0
    return profile.recent_email_count


def build_signals(
    email: NormalizedEmail,
    stored: StoredClassification,
    profile: SenderProfile | None,
    company_domains: list[str] | tuple[str, ...],
    config: AppConfig,
    now: datetime,
) -> tuple[PrioritySignals, bool]:
    """Priority signals for one classified email, and its velocity anomaly flag."""
    result = stored.result
    is_follow_up, is_escalation = detect_follow_up(email.subject, email.plain_body)

    velocity = False
    if profile is not None:
        velocity = sender_velocity_anomaly(
            profile.total_emails,
            recent_volume(profile, config.priority.recent_window_days, now),
            profile.first_email_at,
            now=now,
            config=config.priority,
        )

    signals = PrioritySignals(
        handled=stored.handled,
        thread_resolved=stored.thread_resolved,
        needs_reply=result.needs_reply,
        received_at=email.received_at,
        action_item_due_dates=tuple(item.due_date for item in result.action_items if item.due_date),
        avg_response_time_hours=profile.avg_response_time_hours if profile else None,
        is_follow_up=is_follow_up,
        is_escalation=is_escalation,
        velocity_anomaly=velocity,
        is_vip=bool(profile and profile.is_vip),
        is_starred=email.is_starred,
        sender_domain=email.sender_domain,
        company_domains=tuple(company_domains),
        relationship=profile.relationship if profile else None,
        is_thread_active=result.is_thread_active,
        confidence=result.confidence,
    )
    return signals, velocity


class ClassificationReader:
    """Builds classification views for the API and the CLI."""

    def __init__(self, store: DatabaseStore, config: AppConfig):
        self._store = store
        self._config = config

    def build_view(
        self,
        email: NormalizedEmail,
        stored: StoredClassification,
        profile: SenderProfile | None,
        user: User | None,
        now: datetime | None = None,
    ) -> ClassificationView:
        now = now or datetime.now(UTC)
        company_domains = user.company_domains if user else []
        signals, velocity = build_signals(email, stored, profile, company_domains, self._config, now)
        stored_priority = stored.result.priority
        deadline = stored.result.deadline
        return ClassificationView(
            email=email,
            stored=stored,
            effective_priority=effective_priority(stored_priority, deadline, signals, self._config.priority, now),
            escalation_reasons=escalation_reasons(stored_priority, deadline, signals, self._config.priority, now),
            velocity_anomaly=velocity,
        )

    async def get_view(self, email_id: str, now: datetime | None = None) -> ClassificationView | None:
        """View of one email, or None if it is unknown or not classified."""
        stored = await self._store.get_classification(email_id)
        if stored is None:
            return None
        email = await self._store.get_email(email_id)
        if email is None:
            return None
        user = await self._store.get_user(stored.user_id)
        profile = await self._store.get_sender_profile(stored.user_id, email.from_address)
        return self.build_view(email, stored, profile, user, now)

    async def list_views(
        self,
        user_id: str,
        *,
        priorities: list[int] | None = None,
        category: str | None = None,
        needs_reply: bool | None = None,
        include_handled: bool = False,
        include_snoozed: bool = False,
        limit: int = DEFAULT_LIST_LIMIT,
        now: datetime | None = None,
    ) -> list[ClassificationView]:
        """Classified emails, newest first, filtered by effective priority."""
        now = now or datetime.now(UTC)
        fetch_limit = limit * FILTER_FETCH_MULTIPLIER if (priorities or category or needs_reply is not None) else limit
        rows = await self._store.list_classified_emails(user_id, limit=fetch_limit, include_handled=include_handled)
        if not rows:
            return []

        user = await self._store.get_user(user_id)
        profiles = await self._store.get_sender_profiles(user_id, {email.from_address for email, _ in rows})
        wanted = set(priorities or ())

        views: list[ClassificationView] = []
        for email, stored in rows:
            if category and stored.result.category != category:
                continue
            if needs_reply is not None and stored.result.needs_reply != needs_reply:
                continue
            if not include_snoozed and stored.snoozed_until and stored.snoozed_until > now:
                continue
            view = self.build_view(email, stored, profiles.get(email.from_address.lower()), user, now)
            if wanted and view.effective_priority not in wanted:
                continue
            views.append(view)
            if len(views) >= limit:
                break

        logger.debug("classification_views_built", user_id=user_id, rows=len(rows), views=len(views))
        return views
