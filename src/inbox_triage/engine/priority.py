"""Effective priority: read-time urgency from a stored classification.

The stored priority is what the classifier decided when the email arrived.
The effective priority is recomputed on every read from that value plus
signals that change over time: deadlines approaching, unanswered mail
aging, follow-ups, VIP senders, resolved threads.

Everything here is a pure function of its arguments (`now` included), so the
module has no I/O and no clock dependency in tests.

Algorithm (each step combines with `min`, 1 = most urgent):
1. handled -> stored priority, nothing else applies
2. thread resolved -> max(stored, resolved_floor)
3. deadline bands (overdue and upcoming) on the earliest deadline/due date
4. age escalation for unanswered needs-reply mail (business days)
5. boosts relative to stored: follow-up, escalation language, velocity
6. floors: VIP, starred, company domain, colleague/manager
7. automated-sender cap (only when nothing above forced urgency)
8. active thread awaiting reply boost
9. low-confidence guard: untrusted P1/P2 without a deadline -> P3
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import regex

from inbox_triage.config_schema import DeadlineBand, PriorityConfig
from inbox_triage.core.addresses import is_company_domain

MIN_PRIORITY = 1
MAX_PRIORITY = 5

_DEFAULT_CONFIG = PriorityConfig()
REGEX_TIMEOUT = 1.0

FOLLOW_UP_PATTERN = regex.compile(
    r"\b(?:follow(?:ing)?[\s-]*up|checking\s+in|bump(?:ing)?|circling\s+back|gentle\s+reminder"
    r"|any\s+updates?|haven'?t\s+heard\s+back|friendly\s+reminder|still\s+(?:waiting|pending|need))\b",
    regex.IGNORECASE,
)
ESCALATION_PATTERN = regex.compile(
    r"\b(?:urgent|time[\s-]sensitive|asap|escalat(?:ing|ion|ed)|immediately|critical|blocking"
    r"|overdue|final\s+(?:notice|reminder|warning)|action\s+required)\b",
    regex.IGNORECASE,
)
RESOLUTION_PATTERN = regex.compile(
    r"\b(?:resolved|never\s*mind|done|taken\s+care\s+of|all\s+set|approved|cancell?ed"
    r"|no\s+longer\s+needed|withdrawn|closed|completed|sorted|fixed|handled)\b",
    regex.IGNORECASE,
)
QUOTED_LINE_PATTERN = regex.compile(r"^[ \t]*>.*$", regex.MULTILINE)
REPLY_HEADER_PATTERN = regex.compile(r"^On\s.+wrote:\s*$", regex.MULTILINE)


@dataclass(frozen=True, slots=True)
class PrioritySignals:
    """Context for effective priority, gathered at read time.

    Attributes:
        handled: User marked the email handled
        thread_resolved: A later message in the thread resolved it
        needs_reply: Classification says a reply is expected
        received_at: When the email arrived
        action_item_due_dates: Due dates from extracted action items
        avg_response_time_hours: User's average response time to this sender
        is_follow_up: Subject/body is a follow-up ("checking in", "bump")
        is_escalation: Subject/body uses escalation language
        velocity_anomaly: Sender's recent volume far above their average
        is_vip: Sender profile is VIP
        is_starred: Provider starred/important flag
        sender_domain: Sender's domain, lowercased
        company_domains: The user's own company domains
        relationship: Sender relationship tag
        is_thread_active: Conversation still in motion
        confidence: Classifier confidence of the stored result
    """

    handled: bool = False
    thread_resolved: bool = False
    needs_reply: bool = False
    received_at: datetime | None = None
    action_item_due_dates: tuple[datetime, ...] = ()
    avg_response_time_hours: float | None = None
    is_follow_up: bool = False
    is_escalation: bool = False
    velocity_anomaly: bool = False
    is_vip: bool = False
    is_starred: bool = False
    sender_domain: str | None = None
    company_domains: tuple[str, ...] = ()
    relationship: str | None = None
    is_thread_active: bool = False
    confidence: float | None = None


@dataclass(slots=True)
class _Evaluation:
    priority: int
    reasons: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps are treated as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def clamp_priority(value: int) -> int:
    return max(MIN_PRIORITY, min(MAX_PRIORITY, int(value)))


def business_days_between(start: datetime, end: datetime) -> int:
    """Count Monday-Friday days from the start of `start`'s day up to `end`'s day.

    The start day counts (if a weekday), the end day does not. Returns 0
    when end is not after start.
    """
    start_day = _as_utc(start).date()
    end_day = _as_utc(end).date()
    total_days = (end_day - start_day).days
    if total_days <= 0:
        return 0

    full_weeks, remainder = divmod(total_days, 7)
    count = full_weeks * 5
    weekday = start_day.weekday()
    for offset in range(remainder):
        if (weekday + offset) % 7 < 5:
            count += 1
    return count


def earliest_deadline(
    deadline: datetime | None,
    due_dates: tuple[datetime, ...] | list[datetime] = (),
) -> datetime | None:
    candidates = [_as_utc(d) for d in (deadline, *due_dates) if d is not None]
    return min(candidates) if candidates else None


def _band_priority(days: float, bands: list[DeadlineBand], default: int) -> int:
    for band in bands:
        if days <= band.max_days:
            return band.priority
    return default


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def _boost(current: int, stored: int, step: int) -> int:
    return max(MIN_PRIORITY, min(current, stored - step))


# ---------------------------------------------------------------------------
# Core algorithm
# ---------------------------------------------------------------------------


def _evaluate(
    stored_priority: int,
    deadline: datetime | None,
    signals: PrioritySignals,
    config: PriorityConfig,
    now: datetime,
) -> _Evaluation:
    stored = clamp_priority(stored_priority)

    if signals.handled:
        return _Evaluation(priority=stored)
    if signals.thread_resolved:
        return _Evaluation(
            priority=max(stored, config.resolved_floor),
            reasons=["Thread resolved, de-escalated"],
        )

    now = _as_utc(now)
    result = _Evaluation(priority=stored)
    deadline_escalated = False

    effective_deadline = earliest_deadline(deadline, signals.action_item_due_dates)
    if effective_deadline is not None:
        days = (effective_deadline - now).total_seconds() / 86400
        if days < 0:
            band = _band_priority(-days, config.overdue_bands, stored)
            result.reasons.append(f"Overdue by {_plural(math.ceil(-days), 'day')}")
        else:
            band = _band_priority(days, config.upcoming_bands, stored)
            if days <= config.max_displayed_deadline_days:
                remaining = math.ceil(days)
                result.reasons.append(
                    "Deadline today" if remaining == 0 else f"Deadline in {_plural(remaining, 'day')}"
                )
        deadline_escalated = band < stored
        result.priority = min(result.priority, band)

    if signals.needs_reply and signals.received_at is not None:
        received = _as_utc(signals.received_at)
        business_days = business_days_between(received, now)
        calendar_days = max((now - received).total_seconds() / 86400, 0.0)
        age = max(float(business_days), calendar_days * config.calendar_day_weight)

        if signals.avg_response_time_hours:
            base = max(1.0, signals.avg_response_time_hours * config.response_time_multiplier / 24)
            critical, important, moderate = 3 * base, base, 0.5 * base
        else:
            critical = config.reply_critical_days
            important = config.reply_important_days
            moderate = config.reply_moderate_days

        if age > critical:
            age_priority = 1
        elif age > important:
            age_priority = 2
        elif age > moderate:
            age_priority = min(stored, 3)
        else:
            age_priority = stored
        result.priority = min(result.priority, age_priority)
        if business_days > 1:
            result.reasons.append(f"Unanswered for {business_days} business days")

    if signals.is_follow_up:
        result.priority = _boost(result.priority, stored, config.follow_up_step)
        result.reasons.append("Follow-up detected")
    if signals.is_escalation:
        result.priority = _boost(result.priority, stored, config.escalation_step)
        result.reasons.append("Escalation detected")
    if signals.velocity_anomaly:
        result.priority = _boost(result.priority, stored, config.velocity_step)
        result.reasons.append("Unusual sender activity")

    if signals.is_vip:
        result.priority = min(result.priority, config.vip_floor)
        result.reasons.append("VIP sender")
    if signals.is_starred:
        result.priority = min(result.priority, config.starred_floor)
        result.reasons.append("Starred/important in email client")
    if is_company_domain(signals.sender_domain, signals.company_domains):
        result.priority = min(result.priority, config.company_floor)
        result.reasons.append("Sender from your company")

    relationship = (signals.relationship or "").lower()
    if relationship in ("colleague", "manager"):
        result.priority = min(result.priority, config.relationship_floor)
        result.reasons.append(f"Known {relationship}")
    elif relationship == "automated" and result.priority >= stored:
        result.priority = max(result.priority, config.automated_cap)

    if signals.is_thread_active and signals.needs_reply:
        result.priority = _boost(result.priority, stored, config.active_thread_step)
        result.reasons.append("Active thread needs reply")

    if (
        signals.confidence is not None
        and signals.confidence < config.low_confidence_threshold
        and result.priority <= 2
        and not deadline_escalated
    ):
        result.priority = max(result.priority, config.low_confidence_floor)

    result.priority = clamp_priority(result.priority)
    return result


def effective_priority(
    stored_priority: int,
    deadline: datetime | None = None,
    signals: PrioritySignals | None = None,
    config: PriorityConfig | None = None,
    now: datetime | None = None,
) -> int:
    """Compute the read-time priority of a classified email.

    Args:
        stored_priority: Priority written by the classifier (1-5)
        deadline: Validated deadline of the classification, if any
        signals: Context gathered at read time
        config: Bands and steps (defaults to PriorityConfig())
        now: Current time (defaults to datetime.now(UTC))

    Returns:
        Effective priority in [1, 5]
    """
    return _evaluate(
        stored_priority,
        deadline,
        signals or PrioritySignals(),
        config or _DEFAULT_CONFIG,
        now or datetime.now(UTC),
    ).priority


def escalation_reasons(
    stored_priority: int,
    deadline: datetime | None = None,
    signals: PrioritySignals | None = None,
    config: PriorityConfig | None = None,
    now: datetime | None = None,
) -> list[str]:
    """Explain why the effective priority differs from the stored one.

    Display only. Returns an empty list when nothing escalated the email
    (and it was not de-escalated by a resolved thread).
    """
    signals = signals or PrioritySignals()
    evaluation = _evaluate(
        stored_priority,
        deadline,
        signals,
        config or _DEFAULT_CONFIG,
        now or datetime.now(UTC),
    )
    if signals.handled:
        return []
    if evaluation.priority >= clamp_priority(stored_priority) and not signals.thread_resolved:
        return []
    return evaluation.reasons


def matches_effective_priority(
    stored_priority: int,
    deadline: datetime | None,
    requested: list[int] | tuple[int, ...] | set[int],
    signals: PrioritySignals | None = None,
    config: PriorityConfig | None = None,
    now: datetime | None = None,
) -> bool:
    """Filter helper: is the effective priority one of `requested`?"""
    if not requested:
        return True
    return effective_priority(stored_priority, deadline, signals, config, now) in set(requested)


# ---------------------------------------------------------------------------
# Text signals
# ---------------------------------------------------------------------------


def strip_quoted_text(text: str) -> str:
    """Drop quoted lines and "On ... wrote:" headers so old replies don't count."""
    if not text:
        return ""
    try:
        text = QUOTED_LINE_PATTERN.sub("", text, timeout=REGEX_TIMEOUT)
        return REPLY_HEADER_PATTERN.sub("", text, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        return text


def _search(pattern: regex.Pattern, text: str) -> bool:
    try:
        return pattern.search(text, timeout=REGEX_TIMEOUT) is not None
    except TimeoutError:
        return False


def detect_follow_up(subject: str | None, body_preview: str | None) -> tuple[bool, bool]:
    """Detect follow-up and escalation language.

    Returns:
        (is_follow_up, is_escalation)
    """
    text = f"{subject or ''}\n{strip_quoted_text(body_preview or '')}"
    return _search(FOLLOW_UP_PATTERN, text), _search(ESCALATION_PATTERN, text)


def detect_resolution(subject: str | None, body_preview: str | None) -> bool:
    """Detect resolution language ("all set", "never mind", "approved"...)."""
    text = f"{subject or ''}\n{strip_quoted_text(body_preview or '')}"
    return _search(RESOLUTION_PATTERN, text)


def sender_velocity_anomaly(
    total_emails: int,
    recent_email_count: int,
    first_seen_at: datetime | None,
    now: datetime | None = None,
    config: PriorityConfig | None = None,
) -> bool:
    """Recent volume from a sender far above their weekly average.

    The weekly average spreads total volume over the weeks since the sender
    was first seen (at least one week).
    """
    if first_seen_at is None or total_emails <= 0 or recent_email_count <= 0:
        return False
    config = config or _DEFAULT_CONFIG
    now = _as_utc(now or datetime.now(UTC))
    weeks_active = max(1.0, (now - _as_utc(first_seen_at)) / timedelta(days=7))
    weekly_average = total_emails / weeks_active
    return recent_email_count > weekly_average * config.velocity_multiplier
