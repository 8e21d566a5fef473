"""Prompt construction for batch email classification.

Three pieces go into every request:
- SYSTEM_PROMPT: the fixed contract (taxonomy, flag semantics, output rules)
- CLASSIFY_EMAILS_TOOL: the forced tool whose input schema is the output format
- the user message: optional correction block, then one block per email

Email blocks are also what the batcher measures, so `render_email_block`
must be deterministic for a given input and budget.
"""

from __future__ import annotations

from typing import Any

from inbox_triage.classifier.categories import ALLOWED_CATEGORIES
from inbox_triage.classifier.deadlines import find_candidate_dates
from inbox_triage.content.prep import prepare_email_content
from inbox_triage.models import SENTIMENTS, ClassificationInput

MAX_LISTED_RECIPIENTS = 5
MAX_LISTED_LABELS = 10
MAX_LISTED_ATTACHMENTS = 5
SIBLING_PREVIEW_CHARS = 160

TOOL_NAME = "classify_emails"

SYSTEM_PROMPT = f"""You triage a busy professional's inbox. For every email you are given, \
decide how urgent it is, what kind of email it is, and whether the user has to do anything.

## Priority (1 = most urgent, 5 = least)
1: Needs the user today. A real person is blocked on them, money or access is at risk, \
or a deadline is within two days.
2: Needs the user this week. Direct requests, approvals, questions from people they work with.
3: Worth reading soon but nothing breaks if it waits. Meeting logistics, project updates \
addressed to the user.
4: Low value. Automated notices, receipts, shipping updates, social notifications.
5: Noise. Marketing, newsletters the user never engages with, spam.
Do not inflate priority because of alarming words in marketing or automated mail.

## Categories (use exactly one of these values)
{", ".join(ALLOWED_CATEGORIES)}
- approval: the user is asked to approve, sign or authorize something
- reply-needed: a human expects a written answer from the user
- task: the user must do something other than reply
- meeting: invitations, reschedules, agendas
- fyi: informational mail from humans, no action
- personal: friends and family
- support: help desk tickets and customer support threads
- finance: invoices, receipts, statements, payments, taxes
- travel: bookings, itineraries, check-in
- shipping: orders, delivery and tracking
- security: sign-in alerts, verification codes, password resets
- social: social network notifications
- notification: other automated system mail
- newsletter: editorial mail the user subscribed to
- marketing: promotions and sales
- spam: unsolicited junk and phishing

## Flags
- needs_reply: true only when a human is waiting on a written answer from the user. \
Never true for automated senders, newsletters or mail where the user is only in Cc \
unless they are asked something by name.
- needs_approval: true only for explicit approval or sign-off requests.
- is_thread_active: true when the conversation is still moving (recent back-and-forth, \
open questions).

## Other fields
- action_items: concrete things the user must do, each with an optional due_date (ISO 8601).
- deadline: the single most important due date as an ISO 8601 date, or null. Use the \
"Date-like text in body" hints and the email date to resolve relative dates. Never invent one.
- summary: one line, at most 200 characters, saying what the email wants.
- topics: one to three short lowercase topic tags.
- sentiment: one of {", ".join(SENTIMENTS)}.
- confidence: 0.0 to 1.0, how sure you are of priority and category together. \
Be honest: a low score gets the email a second look with more of its body.

## Output
Call the {TOOL_NAME} tool exactly once with one entry per email. Copy each email_id \
verbatim from the input. Do not skip emails and do not add emails that were not given."""

_ACTION_ITEM_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "description": {"type": "string"},
        "due_date": {"type": ["string", "null"], "description": "ISO 8601 date or null"},
    },
    "required": ["description"],
}

CLASSIFY_EMAILS_TOOL: dict[str, Any] = {
    "name": TOOL_NAME,
    "description": "Record the triage classification of every email in the batch.",
    "input_schema": {
        "type": "object",
        "properties": {
            "classifications": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "email_id": {"type": "string"},
                        "priority": {"type": "integer", "minimum": 1, "maximum": 5},
                        "category": {"type": "string", "enum": list(ALLOWED_CATEGORIES)},
                        "needs_reply": {"type": "boolean"},
                        "needs_approval": {"type": "boolean"},
                        "is_thread_active": {"type": "boolean"},
                        "action_items": {"type": "array", "items": _ACTION_ITEM_SCHEMA},
                        "deadline": {"type": ["string", "null"]},
                        "summary": {"type": "string", "maxLength": 200},
                        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                        "topics": {"type": "array", "items": {"type": "string"}, "maxItems": 3},
                        "sentiment": {"type": "string", "enum": list(SENTIMENTS)},
                    },
                    "required": [
                        "email_id",
                        "priority",
                        "category",
                        "needs_reply",
                        "needs_approval",
                        "is_thread_active",
                        "summary",
                        "confidence",
                    ],
                },
            }
        },
        "required": ["classifications"],
    },
}


def _format_list(values: list[str], limit: int) -> str:
    if len(values) <= limit:
        return ", ".join(values)
    return f"{', '.join(values[:limit])} (+{len(values) - limit} more)"


def _format_size(size: int) -> str:
    if size >= 1024 * 1024:
        return f"{size / (1024 * 1024):.1f} MB"
    return f"{max(size, 0) // 1024} KB"


def render_email_block(item: ClassificationInput, char_budget: int) -> str:
    """Render one email for the user message.

    Args:
        item: Enriched classifier input
        char_budget: Body excerpt budget (preview or full)

    Returns:
        The email block, deterministic for the same arguments
    """
    email = item.email
    sender = f"{email.from_name} <{email.from_address}>" if email.from_name else email.from_address
    lines = [
        "<email>",
        f"email_id: {item.email_id}",
        f"From: {sender}",
    ]
    if email.to:
        lines.append(f"To: {_format_list(email.to, MAX_LISTED_RECIPIENTS)}")
    if email.cc:
        lines.append(f"Cc: {_format_list(email.cc, MAX_LISTED_RECIPIENTS)}")
    lines.append(f"Subject: {email.subject or '(no subject)'}")
    lines.append(f"Date: {email.received_at.isoformat()}")
    if email.labels:
        lines.append(f"Labels: {_format_list(email.labels, MAX_LISTED_LABELS)}")
    if email.attachments:
        listed = [
            f"{a.filename or 'unnamed'} ({a.mime_type}, {_format_size(a.size)})"
            for a in email.attachments[:MAX_LISTED_ATTACHMENTS]
        ]
        extra = len(email.attachments) - len(listed)
        lines.append("Attachments: " + "; ".join(listed) + (f" (+{extra} more)" if extra > 0 else ""))
    elif email.has_attachments:
        lines.append("Attachments: yes")

    flags = [
        "directly addressed" if item.is_directly_addressed else "user not in To",
        f"recipients: {item.recipient_count}",
    ]
    if item.is_forwarded:
        flags.append("forwarded")
    if email.is_mailing_list:
        flags.append(f"mailing list{f' ({email.list_id})' if email.list_id else ''}")
    if item.is_follow_up:
        flags.append("follow-up")
    if item.has_escalation_language:
        flags.append("escalation language")
    lines.append(f"Signals: {', '.join(flags)}")

    history = [f"{item.sender.total_emails} previous emails"]
    if item.sender.relationship:
        history.append(f"relationship: {item.sender.relationship}")
    if item.sender.is_vip:
        history.append("VIP")
    if item.sender.recent_email_count:
        history.append(f"{item.sender.recent_email_count} in the last week")
    lines.append(f"Sender history: {', '.join(history)}")

    thread = item.thread
    if thread.message_count > 1:
        details = [f"{thread.message_count} messages"]
        if thread.participants:
            details.append(f"participants: {_format_list(list(thread.participants), MAX_LISTED_RECIPIENTS)}")
        if thread.user_has_replied:
            details.append("user has replied")
        if thread.is_reply_to_user:
            details.append("this is a reply to the user")
        if thread.is_fatigued:
            details.append("long thread")
        lines.append(f"Thread: {', '.join(details)}")
        if thread.latest_messages:
            lines.append("Recent thread messages:")
            for sibling in thread.latest_messages:
                preview = " ".join(sibling.preview.split())[:SIBLING_PREVIEW_CHARS]
                lines.append(f"  - {sibling.from_address} ({sibling.received_at.date().isoformat()}): {preview}")

    candidates = find_candidate_dates(email.plain_body)
    if candidates:
        lines.append(f"Date-like text in body: {'; '.join(candidates)}")

    prepared = prepare_email_content(email.body_text, email.body_html, email.subject, char_budget)
    body = prepared.text or email.snippet or "(empty body)"
    label = "Body (excerpt, truncated)" if prepared.was_truncated else "Body"
    lines.append(f"{label}:")
    lines.append(body)
    lines.append("</email>")
    return "\n".join(lines)


def build_user_message(blocks: list[str], feedback_block: str | None = None) -> str:
    """Assemble the batch user message from rendered email blocks."""
    parts: list[str] = []
    if feedback_block:
        parts.append(feedback_block)
    parts.append(f"Classify the following {len(blocks)} email(s).")
    parts.extend(blocks)
    return "\n\n".join(parts)
