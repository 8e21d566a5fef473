"""Category taxonomy, alias normalization and confidence thresholds.

Models answer with free-form category strings ("Invoice", "to-do",
"social_media"...). Everything the classifier writes goes through
`normalize_category`, which maps known aliases onto the fixed taxonomy and
coerces anything else to "fyi". It never rejects a value.

Thresholds come in two layers: static per-category baselines, and
`tuned_threshold`, which lowers a baseline when users keep overriding that
category. Both are pure functions of their inputs.
"""

from __future__ import annotations

from typing import Final

ALLOWED_CATEGORIES: Final[tuple[str, ...]] = (
    "approval",
    "reply-needed",
    "task",
    "meeting",
    "fyi",
    "personal",
    "support",
    "finance",
    "travel",
    "shipping",
    "security",
    "social",
    "notification",
    "newsletter",
    "marketing",
    "spam",
)

DEFAULT_CATEGORY: Final = "fyi"

# Bulk categories the automated-relationship inference counts
AUTOMATED_CATEGORIES: Final[frozenset[str]] = frozenset(
    {"newsletter", "marketing", "notification", "spam", "shipping", "social"}
)

CATEGORY_ALIASES: Final[dict[str, str]] = {
    # reply-needed
    "reply_needed": "reply-needed",
    "reply needed": "reply-needed",
    "needs-reply": "reply-needed",
    "question": "reply-needed",
    "request": "reply-needed",
    # task
    "action-required": "task",
    "action_required": "task",
    "action required": "task",
    "assignment": "task",
    "todo": "task",
    "to-do": "task",
    # finance
    "financial": "finance",
    "receipt": "finance",
    "invoice": "finance",
    "billing": "finance",
    "payment": "finance",
    "bank": "finance",
    "tax": "finance",
    # marketing
    "promotion": "marketing",
    "promotional": "marketing",
    "promo": "marketing",
    "offer": "marketing",
    "deal": "marketing",
    "sale": "marketing",
    # social
    "social-media": "social",
    "social_media": "social",
    "linkedin": "social",
    "twitter": "social",
    "facebook": "social",
    "instagram": "social",
    # shipping
    "delivery": "shipping",
    "tracking": "shipping",
    "order": "shipping",
    "shipment": "shipping",
    # security
    "2fa": "security",
    "mfa": "security",
    "password": "security",
    "login-alert": "security",
    "verification": "security",
    # travel
    "flight": "travel",
    "hotel": "travel",
    "booking": "travel",
    "itinerary": "travel",
    "trip": "travel",
    "reservation": "travel",
    # support
    "helpdesk": "support",
    "ticket": "support",
    "customer-service": "support",
    # meeting
    "calendar": "meeting",
    "invitation": "meeting",
    "invite": "meeting",
    # notification
    "alert": "notification",
    "reminder": "notification",
    "automated": "notification",
    "system": "notification",
    "transactional": "notification",
    # fyi
    "update": "fyi",
    "updates": "fyi",
    "info": "fyi",
    # newsletter
    "digest": "newsletter",
    "subscription": "newsletter",
    # spam
    "junk": "spam",
    "phishing": "spam",
}

DEFAULT_CONFIDENCE_THRESHOLDS: Final[dict[str, float]] = {
    "spam": 0.6,
    "newsletter": 0.6,
    "marketing": 0.6,
    "social": 0.6,
    "shipping": 0.6,
    "notification": 0.6,
    "meeting": 0.65,
    "travel": 0.65,
    "finance": 0.7,
    "security": 0.7,
    "personal": 0.7,
    "support": 0.7,
    "fyi": 0.75,
    "task": 0.75,
    "reply-needed": 0.8,
    "approval": 0.8,
}

_ALLOWED_SET: Final[frozenset[str]] = frozenset(ALLOWED_CATEGORIES)


def normalize_category(raw: object) -> str:
    """Map any model-provided category onto the taxonomy.

    Total and idempotent: every input yields an allowed category, and
    normalizing an allowed category returns it unchanged.

    Args:
        raw: Category value as returned by the model (any type)

    Returns:
        One of ALLOWED_CATEGORIES
    """
    if not isinstance(raw, str):
        return DEFAULT_CATEGORY

    value = raw.strip().lower()
    if value in _ALLOWED_SET:
        return value

    alias = CATEGORY_ALIASES.get(value)
    if alias is not None:
        return alias

    # "Social Media" / "customer service" style spacing
    hyphenated = "-".join(value.replace("_", " ").split())
    if hyphenated in _ALLOWED_SET:
        return hyphenated
    return CATEGORY_ALIASES.get(hyphenated, DEFAULT_CATEGORY)


def threshold_for(
    category: str,
    thresholds: dict[str, float] | None = None,
    default: float = 0.7,
) -> float:
    """Look up the first-pass acceptance threshold for a category."""
    table = DEFAULT_CONFIDENCE_THRESHOLDS if thresholds is None else thresholds
    return table.get(category, default)


def tuned_threshold(
    category: str,
    total: int,
    overrides: int,
    baseline: float | None = None,
    *,
    trigger_rate: float = 0.2,
    floor: float = 0.4,
    scale: float = 0.5,
    min_samples: int = 5,
) -> float:
    """Self-tuned acceptance threshold for one category.

    When the trailing override rate exceeds trigger_rate, the threshold drops
    by scale * (rate - trigger_rate), never below floor. Categories without
    enough samples keep their baseline. A baseline already at or under the
    floor is returned unchanged.

    Args:
        category: Taxonomy category
        total: Classifications of this category in the trailing window
        overrides: How many of those the user overrode
        baseline: Static threshold (defaults to the built-in table)
        trigger_rate: Override rate above which tuning applies
        floor: Minimum threshold
        scale: Reduction per unit of excess override rate
        min_samples: Minimum classifications in the window

    Returns:
        The threshold to apply in the next run
    """
    base = threshold_for(category) if baseline is None else baseline
    if total < min_samples or total <= 0:
        return base

    rate = min(1.0, max(0, overrides) / total)
    if rate <= trigger_rate or base <= floor:
        return base

    return max(floor, base - scale * (rate - trigger_rate))
