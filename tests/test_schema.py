"""Tests for tool-input validation and result normalization."""

from datetime import UTC, datetime

import pytest

from inbox_triage.classifier.schema import parse_tool_input, to_result
from inbox_triage.core.errors import LLMResponseError

RECEIVED = datetime(2024, 3, 1, 9, 0, tzinfo=UTC)
NOW = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


def _entry(**overrides) -> dict:
    entry = {
        "email_id": "e1",
        "priority": 2,
        "category": "task",
        "needs_reply": True,
        "needs_approval": False,
        "is_thread_active": True,
        "action_items": [],
        "deadline": None,
        "summary": "Send the Q1 numbers",
        "confidence": 0.85,
        "topics": ["Q1 Report"],
        "sentiment": "neutral",
    }
    entry.update(overrides)
    return entry


class TestParseToolInput:
    """Tests for parse_tool_input()."""

    def test_valid_payload(self) -> None:
        raws = parse_tool_input({"classifications": [_entry()]})
        assert len(raws) == 1
        assert raws[0].email_id == "e1"
        assert raws[0].priority == 2

    def test_bare_list_accepted(self) -> None:
        assert len(parse_tool_input([_entry(), _entry(email_id="e2")])) == 2

    def test_camel_case_aliases(self) -> None:
        raw = parse_tool_input([{"emailId": "e9", "needsReply": "yes", "actionItems": ["Call Bob"]}])[0]
        assert raw.email_id == "e9"
        assert raw.needs_reply is True
        assert raw.action_items == ["Call Bob"]

    @pytest.mark.parametrize(
        "value,expected",
        [
            (7, 5),
            (0, 1),
            ("2", 2),
            (2.6, 3),
            ("high", 3),
            (None, 3),
            ("Infinity", 3),
            (float("inf"), 3),
            (float("-inf"), 3),
            (float("nan"), 3),
            (10**400, 3),
        ],
    )
    def test_priority_clamped(self, value: object, expected: int) -> None:
        assert parse_tool_input([_entry(priority=value)])[0].priority == expected

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("0.9", 0.9),
            (85, 0.85),
            ("90", 0.9),
            (2, 0.02),
            (1.2, 1.0),
            (1.5, 1.0),
            (-1, 0.0),
            ("sure", 0.0),
            (1.0, 1.0),
            (float("inf"), 0.0),
            (10**400, 0.0),
        ],
    )
    def test_confidence_clamped(self, value: object, expected: float) -> None:
        assert parse_tool_input([_entry(confidence=value)])[0].confidence == pytest.approx(expected)

    def test_topics_as_comma_string(self) -> None:
        assert parse_tool_input([_entry(topics="budget, q1")])[0].topics == ["budget", "q1"]

    def test_unusable_action_items_dropped(self) -> None:
        raw = parse_tool_input([_entry(action_items=["", {"foo": "bar"}, {"task": "Review"}, 5])])[0]
        assert len(raw.action_items) == 1
        assert raw.action_items[0].description == "Review"

    def test_missing_classifications_raises(self) -> None:
        with pytest.raises(LLMResponseError):
            parse_tool_input({"results": []})

    def test_missing_email_id_raises(self) -> None:
        with pytest.raises(LLMResponseError):
            parse_tool_input([_entry(email_id=None)])

    def test_non_object_raises(self) -> None:
        with pytest.raises(LLMResponseError):
            parse_tool_input("classifications")


class TestToResult:
    """Tests for to_result()."""

    def test_normalizes_fields(self) -> None:
        raw = parse_tool_input(
            [
                _entry(
                    category="Invoice",
                    topics=["Billing", "billing", "Q1  Report", "Extra", "More"],
                    sentiment="ANGRY",
                    deadline="2024-03-08",
                )
            ]
        )[0]
        result = to_result(raw, RECEIVED, "llm:test-model", now=NOW)
        assert result.category == "finance"
        assert result.topics == ("billing", "q1 report", "extra")
        assert result.sentiment == "neutral"
        assert result.deadline == datetime(2024, 3, 8, 23, 59, 59, tzinfo=UTC)
        assert result.classifier_version == "llm:test-model"

    def test_implausible_deadline_dropped(self) -> None:
        raw = parse_tool_input([_entry(deadline="2031-01-01")])[0]
        assert to_result(raw, RECEIVED, "llm:m", now=NOW).deadline is None

    def test_topics_fall_back_to_category(self) -> None:
        raw = parse_tool_input([_entry(topics=[])])[0]
        assert to_result(raw, RECEIVED, "llm:m", now=NOW).topics == ("task",)

    def test_summary_capped(self) -> None:
        raw = parse_tool_input([_entry(summary="word " * 100)])[0]
        summary = to_result(raw, RECEIVED, "llm:m", now=NOW).summary
        assert len(summary) <= 200
        assert summary.endswith("...")

    def test_action_item_due_dates_validated(self) -> None:
        raw = parse_tool_input(
            [
                _entry(
                    action_items=[
                        "Call Bob",
                        {"description": "Sign contract", "due_date": "2024-03-05"},
                        {"description": "Someday", "due_date": "2030-01-01"},
                    ]
                )
            ]
        )[0]
        items = to_result(raw, RECEIVED, "llm:m", now=NOW).action_items
        assert [i.description for i in items] == ["Call Bob", "Sign contract", "Someday"]
        assert items[0].due_date is None
        assert items[1].due_date == datetime(2024, 3, 5, 23, 59, 59, tzinfo=UTC)
        assert items[2].due_date is None
