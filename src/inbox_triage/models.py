"""Domain records shared by the mail sources, classifier and pipeline.

Store-specific records (runs, profiles, rules...) live in
`inbox_triage.db.store`; these are the types that cross component borders.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

Sentiment = Literal["positive", "neutral", "negative", "urgent"]
SENTIMENTS: tuple[str, ...] = ("positive", "neutral", "negative", "urgent")

RELATIONSHIPS: tuple[str, ...] = ("internal", "automated", "colleague", "newsletter", "manager")

# Provider labels that mean "the user flagged this"
STARRED_LABELS = frozenset({"STARRED", "IMPORTANT", "FLAGGED"})


@dataclass(frozen=True, slots=True)
class AttachmentMeta:
    """Attachment metadata (never the attachment content)."""

    filename: str | None
    mime_type: str
    size: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"filename": self.filename, "mime_type": self.mime_type, "size": self.size}


@dataclass(slots=True)
class NormalizedEmail:
    """Provider-agnostic email record.

    Mail sources fill everything except `id`/`account_id`/`user_id`, which
    the store assigns on insert.
    """

    external_id: str
    from_address: str
    subject: str
    received_at: datetime
    thread_id: str | None = None
    from_name: str | None = None
    to: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    snippet: str = ""
    body_text: str | None = None
    body_html: str | None = None
    is_read: bool = False
    has_attachments: bool = False
    attachments: list[AttachmentMeta] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    is_mailing_list: bool = False
    list_id: str | None = None
    id: str | None = None
    account_id: str | None = None
    user_id: str | None = None

    @property
    def sender_domain(self) -> str:
        return self.from_address.rsplit("@", 1)[-1].lower() if "@" in self.from_address else ""

    @property
    def plain_body(self) -> str:
        """Body text for the regex detectors; HTML-only mail is converted."""
        if self.body_text:
            return self.body_text
        if self.body_html:
            # content.mime imports this module
            from inbox_triage.content.prep import html_to_plain_text

            text = html_to_plain_text(self.body_html)
            if text:
                return text
        return self.snippet or ""

    @property
    def is_starred(self) -> bool:
        return any(label.upper() in STARRED_LABELS for label in self.labels)


@dataclass(frozen=True, slots=True)
class ActionItem:
    """A concrete action extracted from an email."""

    description: str
    due_date: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "due_date": self.due_date.isoformat() if self.due_date else None,
        }


@dataclass(frozen=True, slots=True)
class ClassificationResult:
    """Structured classification of one email.

    Attributes:
        priority: 1 (most urgent) to 5
        category: One of the 16 taxonomy categories
        needs_reply: The user is expected to answer
        needs_approval: The user is asked to approve/sign off
        is_thread_active: Conversation still in motion
        action_items: Extracted actions with optional due dates
        deadline: Validated deadline, if any
        summary: One line, at most 200 characters
        confidence: 0.0 to 1.0
        topics: 1-3 lowercase topic tags
        sentiment: positive | neutral | negative | urgent
        classifier_version: Which path produced it ('llm:<model>', 'user-rule', 'fallback-rules')
    """

    priority: int
    category: str
    needs_reply: bool
    needs_approval: bool
    is_thread_active: bool
    summary: str
    confidence: float
    classifier_version: str
    action_items: tuple[ActionItem, ...] = ()
    deadline: datetime | None = None
    topics: tuple[str, ...] = ()
    sentiment: str = "neutral"

    def to_dict(self) -> dict[str, Any]:
        return {
            "priority": self.priority,
            "category": self.category,
            "needs_reply": self.needs_reply,
            "needs_approval": self.needs_approval,
            "is_thread_active": self.is_thread_active,
            "action_items": [item.to_dict() for item in self.action_items],
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "summary": self.summary,
            "confidence": self.confidence,
            "topics": list(self.topics),
            "sentiment": self.sentiment,
            "classifier_version": self.classifier_version,
        }


# ---------------------------------------------------------------------------
# Classifier input (email + enrichment)
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SiblingPreview:
    """Short view of another message in the same thread."""

    from_address: str
    received_at: datetime
    preview: str


@dataclass(frozen=True, slots=True)
class ThreadContext:
    """Thread signals for one email."""

    message_count: int = 1
    participants: tuple[str, ...] = ()
    user_has_replied: bool = False
    is_reply_to_user: bool = False
    is_fatigued: bool = False
    latest_messages: tuple[SiblingPreview, ...] = ()


@dataclass(frozen=True, slots=True)
class SenderContext:
    """Sender history for one email."""

    total_emails: int = 0
    relationship: str | None = None
    is_vip: bool = False
    recent_email_count: int = 0
    avg_response_time_hours: float | None = None


@dataclass(frozen=True, slots=True)
class ClassificationInput:
    """An email enriched with everything the classifier may look at."""

    email: NormalizedEmail
    thread: ThreadContext = field(default_factory=ThreadContext)
    sender: SenderContext = field(default_factory=SenderContext)
    is_forwarded: bool = False
    is_directly_addressed: bool = True
    is_follow_up: bool = False
    has_escalation_language: bool = False
    recipient_count: int = 1
    company_domains: tuple[str, ...] = ()

    @property
    def email_id(self) -> str:
        # Store id when persisted; external id for ad-hoc classification
        return self.email.id or self.email.external_id
