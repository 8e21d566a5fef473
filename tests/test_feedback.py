"""Tests for the override feedback loop (prompt examples and tuned thresholds)."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from inbox_triage.classifier.feedback import (
    FeedbackLearner,
    OverrideExample,
    format_feedback_block,
    select_feedback_examples,
)
from inbox_triage.config_schema import AppConfig

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


def _make_example(
    sender: str = "alice@partner.com",
    category: str = "task",
    minutes_ago: int = 0,
    subject: str = "Quarterly numbers",
) -> OverrideExample:
    return OverrideExample(
        sender_address=sender,
        subject=subject,
        original_priority=4,
        original_category="fyi",
        corrected_priority=2,
        corrected_category=category,
        overridden_at=NOW - timedelta(minutes=minutes_ago),
    )


def _make_store(overrides=None, stats=None) -> MagicMock:
    store = MagicMock()
    store.get_recent_overrides = AsyncMock(return_value=overrides or [])
    store.get_category_override_stats = AsyncMock(return_value=stats or {})
    return store


class TestSelectFeedbackExamples:
    """Tests for select_feedback_examples()."""

    def test_same_sender_first(self) -> None:
        examples = [
            _make_example("bob@other.com", minutes_ago=1),
            _make_example("alice@partner.com", minutes_ago=60),
        ]
        selected = select_feedback_examples(examples, {"Alice@Partner.com"}, limit=5)
        assert [e.sender_address for e in selected] == ["alice@partner.com", "bob@other.com"]

    def test_one_example_per_pattern(self) -> None:
        examples = [
            _make_example(minutes_ago=1, subject="newest"),
            _make_example(minutes_ago=5, subject="older"),
            _make_example(category="finance", minutes_ago=10),
        ]
        selected = select_feedback_examples(examples, set(), limit=5)
        assert len(selected) == 2
        assert selected[0].subject == "newest"

    def test_limit(self) -> None:
        examples = [_make_example(f"s{i}@x.com", minutes_ago=i) for i in range(10)]
        assert len(select_feedback_examples(examples, set(), limit=3)) == 3
        assert select_feedback_examples(examples, set(), limit=0) == []


class TestFormatFeedbackBlock:
    """Tests for format_feedback_block()."""

    def test_renders_corrections(self) -> None:
        block = format_feedback_block([_make_example()])
        assert block.startswith("## Corrections from this user")
        assert 'From alice@partner.com, subject "Quarterly numbers": was fyi/P4, user set task/P2' in block

    def test_empty_is_none(self) -> None:
        assert format_feedback_block([]) is None


class TestFeedbackLearner:
    """Tests for FeedbackLearner."""

    @pytest.mark.asyncio
    async def test_feedback_block_from_store(self) -> None:
        store = _make_store(overrides=[_make_example()])
        learner = FeedbackLearner(store, AppConfig())
        block = await learner.build_feedback_block("u1", {"alice@partner.com"})
        assert "alice@partner.com" in block
        assert store.get_recent_overrides.await_args.kwargs["limit"] == 50

    @pytest.mark.asyncio
    async def test_feedback_disabled(self) -> None:
        store = _make_store(overrides=[_make_example()])
        learner = FeedbackLearner(store, AppConfig(learning={"feedback_examples_max": 0}))
        assert await learner.build_feedback_block("u1", set()) is None
        store.get_recent_overrides.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_forty_percent_override_rate_lowers_threshold(self) -> None:
        config = AppConfig()
        store = _make_store(stats={"finance": (10, 4), "spam": (10, 1)})
        thresholds = await FeedbackLearner(store, config).tuned_thresholds("u1")

        baseline = config.classifier.confidence_thresholds["finance"]
        assert thresholds["finance"] < baseline
        assert thresholds["finance"] >= 0.4
        assert thresholds["spam"] == config.classifier.confidence_thresholds["spam"]
        # Categories without stats keep their configured value
        assert thresholds["approval"] == config.classifier.confidence_thresholds["approval"]
