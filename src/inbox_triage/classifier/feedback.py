"""Learning from user overrides.

Two things feed back into each run:
- a prompt block of recent corrections (same-sender corrections first,
  one example per sender+category pattern, capped)
- per-category confidence thresholds lowered for categories the user keeps
  overriding (see categories.tuned_threshold)

Usage:
    from inbox_triage.classifier.feedback import FeedbackLearner

    learner = FeedbackLearner(store, config)
    block = await learner.build_feedback_block(user_id, {"a@example.com"})
    thresholds = await learner.tuned_thresholds(user_id)
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from inbox_triage.classifier.categories import threshold_for, tuned_threshold
from inbox_triage.core.logging import get_logger

if TYPE_CHECKING:
    from inbox_triage.config_schema import AppConfig
    from inbox_triage.db.store import DatabaseStore

logger = get_logger(__name__)

# Overrides fetched per example slot before dedup
FETCH_MULTIPLIER = 5


@dataclass(frozen=True, slots=True)
class OverrideExample:
    """One user correction of an automated classification."""

    sender_address: str
    subject: str
    original_priority: int | None
    original_category: str | None
    corrected_priority: int
    corrected_category: str
    overridden_at: datetime


def select_feedback_examples(
    examples: Iterable[OverrideExample],
    sender_addresses: set[str],
    limit: int,
) -> list[OverrideExample]:
    """Pick the correction examples worth showing the model.

    Same-sender corrections come first, then the rest by recency. Only the
    newest example per (sender, corrected category) pattern is kept.
    """
    if limit <= 0:
        return []

    senders = {s.lower() for s in sender_addresses}
    newest_first = sorted(examples, key=lambda e: e.overridden_at, reverse=True)
    ordered = sorted(newest_first, key=lambda e: e.sender_address.lower() not in senders)

    selected: list[OverrideExample] = []
    seen: set[tuple[str, str]] = set()
    for example in ordered:
        key = (example.sender_address.lower(), example.corrected_category)
        if key in seen:
            continue
        seen.add(key)
        selected.append(example)
        if len(selected) >= limit:
            break
    return selected


def format_feedback_block(examples: list[OverrideExample]) -> str | None:
    """Render correction examples as a prompt section (None when empty)."""
    if not examples:
        return None

    lines = [
        "## Corrections from this user",
        "The user corrected these earlier classifications. Follow the same judgment "
        "for similar emails.",
    ]
    for example in examples:
        original = []
        if example.original_category:
            original.append(example.original_category)
        if example.original_priority is not None:
            original.append(f"P{example.original_priority}")
        was = "/".join(original) or "unknown"
        lines.append(
            f'- From {example.sender_address}, subject "{example.subject[:80]}": '
            f"was {was}, user set {example.corrected_category}/P{example.corrected_priority}"
        )
    return "\n".join(lines)


class FeedbackLearner:
    """Turns stored overrides into prompt feedback and tuned thresholds."""

    def __init__(self, store: DatabaseStore, config: AppConfig) -> None:
        self._store = store
        self._config = config

    def update_config(self, config: AppConfig) -> None:
        self._config = config

    async def build_feedback_block(self, user_id: str, sender_addresses: set[str]) -> str | None:
        """Feedback block for a batch whose senders are `sender_addresses`."""
        learning = self._config.learning
        if learning.feedback_examples_max == 0:
            return None

        since = datetime.now(UTC) - timedelta(days=learning.feedback_window_days)
        overrides = await self._store.get_recent_overrides(
            user_id,
            since=since,
            limit=learning.feedback_examples_max * FETCH_MULTIPLIER,
        )
        examples = select_feedback_examples(overrides, sender_addresses, learning.feedback_examples_max)
        if examples:
            logger.debug("feedback_block_built", user_id=user_id, examples=len(examples))
        return format_feedback_block(examples)

    async def tuned_thresholds(self, user_id: str) -> dict[str, float]:
        """Per-category thresholds for the next run, recomputed from the store."""
        learning = self._config.learning
        classifier = self._config.classifier
        since = datetime.now(UTC) - timedelta(days=learning.threshold_window_days)
        stats = await self._store.get_category_override_stats(user_id, since=since)

        thresholds = dict(classifier.confidence_thresholds)
        for category, (total, overrides) in stats.items():
            baseline = threshold_for(category, classifier.confidence_thresholds, classifier.default_threshold)
            tuned = tuned_threshold(
                category,
                total,
                overrides,
                baseline,
                trigger_rate=learning.override_rate_trigger,
                floor=learning.threshold_floor,
                scale=learning.adjustment_scale,
                min_samples=learning.min_samples,
            )
            thresholds[category] = tuned
            if tuned < baseline:
                logger.info(
                    "threshold_tuned",
                    category=category,
                    baseline=baseline,
                    tuned=round(tuned, 3),
                    total=total,
                    overrides=overrides,
                )
        return thresholds
