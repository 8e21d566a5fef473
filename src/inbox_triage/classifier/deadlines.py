"""Deadline parsing, validation and the date-like text pre-scan.

Model-provided deadlines are untrusted. A value is kept only when it parses
and lands in a plausible window around the email: no more than one year
after now, no more than a week before the email arrived.

The pre-scan finds date-like phrases in a body so the classifier can flag
emails whose deadline the model may have missed on a truncated preview.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta

import regex

from inbox_triage.core.logging import get_logger

logger = get_logger(__name__)

MAX_FUTURE_DAYS = 365
MAX_PAST_DAYS = 7
MAX_CANDIDATES = 5
REGEX_TIMEOUT = 1.0

_MONTH = (
    r"(?:jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?"
    r"|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)"
)
_WEEKDAY = r"(?:mon|tues?|wed(?:nes)?|thu(?:rs?)?|fri|sat(?:ur)?|sun)(?:day)?"

CANDIDATE_DATE_PATTERNS = [
    regex.compile(r"\b\d{4}-\d{2}-\d{2}\b"),
    regex.compile(r"\b\d{1,2}/\d{1,2}(?:/\d{2,4})?\b"),
    regex.compile(rf"\b{_MONTH}\.?\s+\d{{1,2}}(?:st|nd|rd|th)?\b", regex.IGNORECASE),
    regex.compile(rf"\b\d{{1,2}}(?:st|nd|rd|th)?\s+(?:of\s+)?{_MONTH}\b", regex.IGNORECASE),
    regex.compile(rf"\b(?:by|before|until|due|on|this|next)\s+{_WEEKDAY}\b", regex.IGNORECASE),
    regex.compile(
        r"\b(?:tomorrow|tonight|end\s+of\s+(?:the\s+)?(?:day|week|month|quarter)|eod|eow|cob)\b",
        regex.IGNORECASE,
    ),
]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_datetime(value: object) -> datetime | None:
    """Parse an ISO date or datetime into an aware UTC datetime.

    Date-only values mean "by the end of that day".
    """
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time(23, 59, 59), tzinfo=UTC)
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text or text.lower() in ("null", "none", "n/a"):
        return None

    try:
        if len(text) == 10:
            return datetime.combine(date.fromisoformat(text), time(23, 59, 59), tzinfo=UTC)
        return _as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        return None


def validate_deadline(
    value: object,
    received_at: datetime,
    now: datetime | None = None,
) -> datetime | None:
    """Return the deadline if it is plausible, else None.

    Rejected when unparseable, more than MAX_FUTURE_DAYS after now, or more
    than MAX_PAST_DAYS before the email was received.

    Args:
        value: Raw deadline from the model (string, date, datetime or junk)
        received_at: When the email arrived
        now: Current time (defaults to datetime.now(UTC))

    Returns:
        Aware UTC datetime or None
    """
    parsed = parse_datetime(value)
    if parsed is None:
        if value not in (None, ""):
            logger.debug("deadline_unparseable", value=str(value)[:40])
        return None

    now = _as_utc(now or datetime.now(UTC))
    if parsed > now + timedelta(days=MAX_FUTURE_DAYS):
        logger.debug("deadline_rejected_future", deadline=parsed.isoformat())
        return None
    if parsed < _as_utc(received_at) - timedelta(days=MAX_PAST_DAYS):
        logger.debug("deadline_rejected_past", deadline=parsed.isoformat())
        return None
    return parsed


def find_candidate_dates(text: str | None, limit: int = MAX_CANDIDATES) -> list[str]:
    """Date-like phrases in text, in order of appearance, deduplicated."""
    if not text:
        return []

    found: list[tuple[int, str]] = []
    for pattern in CANDIDATE_DATE_PATTERNS:
        try:
            for match in pattern.finditer(text, timeout=REGEX_TIMEOUT):
                found.append((match.start(), match.group(0)))
        except TimeoutError:
            logger.warning("candidate_date_scan_timeout", pattern=pattern.pattern[:50])

    seen: set[str] = set()
    candidates: list[str] = []
    for _, phrase in sorted(found):
        key = phrase.lower()
        if key not in seen:
            seen.add(key)
            candidates.append(phrase)
        if len(candidates) >= limit:
            break
    return candidates
