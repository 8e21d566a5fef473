"""Deterministic rule-based classification.

Used when the model cannot be reached or keeps returning unusable output.
Keyword and sender matching covers the bulk categories and Re:/Fwd:
subjects mark conversations. Starred mail gets a priority boost. Every
result carries a low fixed confidence.
"""

from __future__ import annotations

from dataclasses import dataclass

from inbox_triage.classifier.senders import is_automated_outside_company
from inbox_triage.content.prep import prepare_email_content
from inbox_triage.models import ClassificationInput, ClassificationResult

FALLBACK_VERSION = "fallback-rules"
DEFAULT_FALLBACK_CONFIDENCE = 0.3
SCAN_CHARS = 600
STARRED_PRIORITY = 2


@dataclass(frozen=True, slots=True)
class KeywordRule:
    category: str
    priority: int
    keywords: tuple[str, ...] = ()
    sender_domains: tuple[str, ...] = ()


# Evaluated in order; first match wins
KEYWORD_RULES: tuple[KeywordRule, ...] = (
    KeywordRule(
        "security",
        3,
        keywords=(
            "verification code",
            "security alert",
            "password reset",
            "reset your password",
            "new sign-in",
            "sign-in attempt",
            "login attempt",
            "two-factor",
            "2fa",
            "one-time code",
            "one-time password",
        ),
    ),
    KeywordRule(
        "finance",
        3,
        keywords=(
            "invoice",
            "receipt",
            "payment",
            "statement",
            "billing",
            "refund",
            "transaction",
            "amount due",
        ),
    ),
    KeywordRule(
        "shipping",
        4,
        keywords=(
            "has shipped",
            "shipped",
            "out for delivery",
            "delivered",
            "tracking number",
            "track your",
            "your order",
            "shipment",
        ),
    ),
    KeywordRule(
        "travel",
        3,
        keywords=("itinerary", "boarding pass", "flight", "check-in", "booking confirmation", "reservation"),
    ),
    KeywordRule(
        "social",
        4,
        keywords=("connection request", "mentioned you", "new follower", "tagged you", "commented on"),
        sender_domains=(
            "linkedin.com",
            "facebookmail.com",
            "facebook.com",
            "twitter.com",
            "x.com",
            "instagram.com",
        ),
    ),
    KeywordRule(
        "meeting",
        3,
        keywords=(
            "invitation:",
            "updated invitation",
            "meeting",
            "calendar",
            "reschedule",
            "zoom.us",
            "teams meeting",
        ),
    ),
    KeywordRule("newsletter", 5, keywords=("newsletter", "weekly digest", "daily digest")),
    KeywordRule(
        "marketing",
        5,
        keywords=("% off", "limited time", "special offer", "promo code", "sale ends", "exclusive deal"),
    ),
)

REPLY_PREFIXES = ("re:", "aw:", "sv:")
FORWARD_PREFIXES = ("fwd:", "fw:")


def _sender_matches(domain: str, domains: tuple[str, ...]) -> bool:
    return any(domain == d or domain.endswith("." + d) for d in domains)


def _has_calendar_attachment(item: ClassificationInput) -> bool:
    return any(
        a.mime_type == "text/calendar" or (a.filename or "").lower().endswith(".ics")
        for a in item.email.attachments
    )


def classify_with_rules(
    item: ClassificationInput,
    confidence: float = DEFAULT_FALLBACK_CONFIDENCE,
) -> ClassificationResult:
    """Classify one email without the model.

    Args:
        item: Enriched classifier input
        confidence: Confidence to report (fixed, low)

    Returns:
        ClassificationResult tagged with the fallback version
    """
    email = item.email
    subject = (email.subject or "").strip()
    subject_lower = subject.lower()
    prepared = prepare_email_content(email.body_text, email.body_html, subject, SCAN_CHARS)
    primary = prepared.text or email.snippet or ""
    haystack = f"{subject_lower}\n{primary.lower()}"
    domain = email.sender_domain
    automated = is_automated_outside_company(email.from_address, item.company_domains)

    category = "fyi"
    priority = 3
    needs_reply = False
    is_thread_active = False

    matched = next(
        (
            rule
            for rule in KEYWORD_RULES
            if _sender_matches(domain, rule.sender_domains) or any(k in haystack for k in rule.keywords)
        ),
        None,
    )
    if _has_calendar_attachment(item):
        category, priority = "meeting", 3
    elif matched is not None:
        category, priority = matched.category, matched.priority
    elif email.is_mailing_list:
        category, priority = "newsletter", 5
    elif automated:
        category, priority = "notification", 4
    elif subject_lower.startswith(REPLY_PREFIXES):
        is_thread_active = True
        if item.is_directly_addressed and "?" in primary:
            category, priority, needs_reply = "reply-needed", 2, True
    elif subject_lower.startswith(FORWARD_PREFIXES) or item.is_forwarded:
        category, priority = "fyi", 3
    elif item.is_directly_addressed and "?" in primary:
        category, priority, needs_reply = "reply-needed", 3, True

    if email.is_starred:
        priority = min(priority, STARRED_PRIORITY)

    summary = subject or "(no subject)"
    if len(summary) > 200:
        summary = summary[:197] + "..."

    return ClassificationResult(
        priority=priority,
        category=category,
        needs_reply=needs_reply and not automated,
        needs_approval=False,
        is_thread_active=is_thread_active,
        summary=summary,
        confidence=confidence,
        topics=(category,),
        sentiment="neutral",
        classifier_version=FALLBACK_VERSION,
    )
