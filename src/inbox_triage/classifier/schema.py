"""Lenient validation of model output and normalization into results.

The model answers through the `classify_emails` tool. Its input is checked
with permissive Pydantic models: wrong-but-recoverable values (priority 7,
confidence "0.9", category "Invoice", action items as bare strings) are
coerced here, once, at the boundary. Only structurally unusable payloads
(no classifications list, entries without an email id) raise, and that makes
the attempt retryable.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from inbox_triage.classifier.categories import normalize_category
from inbox_triage.classifier.deadlines import validate_deadline
from inbox_triage.core.errors import LLMResponseError
from inbox_triage.models import SENTIMENTS, ActionItem, ClassificationResult

MAX_SUMMARY_LENGTH = 200
MAX_TOPICS = 3
MAX_ACTION_ITEMS = 10

_TRUE_STRINGS = frozenset({"true", "yes", "y", "1"})


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int | float):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return False


def _finite_float(value: Any) -> float | None:
    """Numeric value of a model field, or None for junk, NaN and infinities."""
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


class RawActionItem(BaseModel):
    """Object form of an action item."""

    model_config = ConfigDict(extra="ignore")

    description: str = Field(validation_alias=AliasChoices("description", "task", "text", "action"))
    due_date: str | None = Field(default=None, validation_alias=AliasChoices("due_date", "dueDate", "due"))

    @field_validator("due_date", mode="before")
    @classmethod
    def stringify_due_date(cls, v: Any) -> str | None:
        return None if v is None else str(v)


# Action items arrive either as bare strings or as objects
ActionItemPayload = str | RawActionItem


class RawClassification(BaseModel):
    """One entry of the tool input, before normalization."""

    model_config = ConfigDict(extra="ignore")

    email_id: str = Field(validation_alias=AliasChoices("email_id", "emailId", "id"))
    priority: int = 3
    category: str | None = None
    needs_reply: bool = Field(default=False, validation_alias=AliasChoices("needs_reply", "needsReply"))
    needs_approval: bool = Field(
        default=False, validation_alias=AliasChoices("needs_approval", "needsApproval")
    )
    is_thread_active: bool = Field(
        default=False, validation_alias=AliasChoices("is_thread_active", "isThreadActive")
    )
    action_items: list[ActionItemPayload] = Field(
        default_factory=list, validation_alias=AliasChoices("action_items", "actionItems")
    )
    deadline: str | None = None
    summary: str = ""
    confidence: float = 0.5
    topics: list[str] = Field(default_factory=list)
    sentiment: str | None = None

    @field_validator("email_id", mode="before")
    @classmethod
    def stringify_id(cls, v: Any) -> str:
        if v is None or (isinstance(v, str) and not v.strip()):
            raise ValueError("email_id is required")
        return str(v).strip()

    @field_validator("priority", mode="before")
    @classmethod
    def clamp_priority(cls, v: Any) -> int:
        number = _finite_float(v)
        if number is None:
            return 3
        return max(1, min(5, round(number)))

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> float:
        number = _finite_float(v)
        if number is None:
            return 0.0
        # Percent form (85, "90"); 1.2 is a slightly high fraction
        if 1.0 < number <= 100.0 and (number > 1.5 or (isinstance(v, int) and not isinstance(v, bool))):
            number = number / 100
        return max(0.0, min(1.0, number))

    @field_validator("needs_reply", "needs_approval", "is_thread_active", mode="before")
    @classmethod
    def coerce_flags(cls, v: Any) -> bool:
        return _coerce_bool(v)

    @field_validator("category", "sentiment", "deadline", mode="before")
    @classmethod
    def stringify_text(cls, v: Any) -> str | None:
        if v is None:
            return None
        return v if isinstance(v, str) else str(v)

    @field_validator("summary", mode="before")
    @classmethod
    def stringify_summary(cls, v: Any) -> str:
        if v is None:
            return ""
        return v if isinstance(v, str) else str(v)

    @field_validator("topics", mode="before")
    @classmethod
    def coerce_topics(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [part for part in (p.strip() for p in v.split(",")) if part]
        if isinstance(v, list):
            return [str(item) for item in v if item is not None]
        return []

    @field_validator("action_items", mode="before")
    @classmethod
    def drop_unusable_items(cls, v: Any) -> list[Any]:
        if v is None:
            return []
        if isinstance(v, str | dict):
            v = [v]
        if not isinstance(v, list):
            return []
        usable: list[Any] = []
        for item in v:
            if isinstance(item, str) and item.strip():
                usable.append(item.strip())
            elif isinstance(item, dict) and any(
                isinstance(item.get(key), str) and item[key].strip()
                for key in ("description", "task", "text", "action")
            ):
                usable.append(item)
        return usable


class RawClassificationBatch(BaseModel):
    """The complete tool input."""

    model_config = ConfigDict(extra="ignore")

    classifications: list[RawClassification]


def parse_tool_input(data: Any) -> list[RawClassification]:
    """Validate a tool call payload.

    Raises:
        LLMResponseError: If the payload is structurally unusable
    """
    if isinstance(data, list):
        data = {"classifications": data}
    if not isinstance(data, dict):
        raise LLMResponseError(f"Tool input must be an object, got {type(data).__name__}")
    try:
        batch = RawClassificationBatch.model_validate(data)
    except ValidationError as e:
        raise LLMResponseError(f"Tool input failed validation: {e.error_count()} error(s): {e}") from e
    return batch.classifications


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def normalize_action_items(
    items: list[ActionItemPayload],
    received_at: datetime,
    now: datetime | None = None,
) -> tuple[ActionItem, ...]:
    """Collapse the string/object union into ActionItem records."""
    normalized: list[ActionItem] = []
    for item in items[:MAX_ACTION_ITEMS]:
        if isinstance(item, str):
            normalized.append(ActionItem(description=item[:300]))
        else:
            normalized.append(
                ActionItem(
                    description=item.description.strip()[:300],
                    due_date=validate_deadline(item.due_date, received_at, now),
                )
            )
    return tuple(normalized)


def normalize_topics(topics: list[str], category: str) -> tuple[str, ...]:
    """Lowercase, dedupe, cap at three; fall back to the category."""
    cleaned: list[str] = []
    for topic in topics:
        tag = " ".join(topic.strip().lower().split())[:40]
        if tag and tag not in cleaned:
            cleaned.append(tag)
        if len(cleaned) == MAX_TOPICS:
            break
    return tuple(cleaned) or (category,)


def normalize_sentiment(value: str | None) -> str:
    if value and value.strip().lower() in SENTIMENTS:
        return value.strip().lower()
    return "neutral"


def to_result(
    raw: RawClassification,
    received_at: datetime,
    classifier_version: str,
    now: datetime | None = None,
) -> ClassificationResult:
    """Build a ClassificationResult from one validated tool entry."""
    category = normalize_category(raw.category)
    summary = " ".join(raw.summary.split())
    if len(summary) > MAX_SUMMARY_LENGTH:
        summary = summary[: MAX_SUMMARY_LENGTH - 3].rstrip() + "..."

    return ClassificationResult(
        priority=raw.priority,
        category=category,
        needs_reply=raw.needs_reply,
        needs_approval=raw.needs_approval,
        is_thread_active=raw.is_thread_active,
        action_items=normalize_action_items(raw.action_items, received_at, now),
        deadline=validate_deadline(raw.deadline, received_at, now),
        summary=summary,
        confidence=raw.confidence,
        topics=normalize_topics(raw.topics, category),
        sentiment=normalize_sentiment(raw.sentiment),
        classifier_version=classifier_version,
    )
