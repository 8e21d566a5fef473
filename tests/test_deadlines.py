"""Tests for deadline parsing and validation."""

from datetime import UTC, date, datetime, timedelta

from inbox_triage.classifier.deadlines import (
    find_candidate_dates,
    parse_datetime,
    validate_deadline,
)

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


class TestParseDatetime:
    """Tests for parse_datetime()."""

    def test_date_only_means_end_of_day(self) -> None:
        assert parse_datetime("2024-03-15") == datetime(2024, 3, 15, 23, 59, 59, tzinfo=UTC)

    def test_zulu_suffix(self) -> None:
        assert parse_datetime("2024-03-15T09:30:00Z") == datetime(2024, 3, 15, 9, 30, tzinfo=UTC)

    def test_offset_converted_to_utc(self) -> None:
        assert parse_datetime("2024-03-15T09:30:00+02:00") == datetime(2024, 3, 15, 7, 30, tzinfo=UTC)

    def test_naive_datetime_assumed_utc(self) -> None:
        assert parse_datetime(datetime(2024, 3, 15, 9, 0)) == datetime(2024, 3, 15, 9, 0, tzinfo=UTC)

    def test_date_object(self) -> None:
        assert parse_datetime(date(2024, 3, 15)) == datetime(2024, 3, 15, 23, 59, 59, tzinfo=UTC)

    def test_junk(self) -> None:
        assert parse_datetime("next Friday") is None
        assert parse_datetime("null") is None
        assert parse_datetime(12345) is None
        assert parse_datetime(None) is None


class TestValidateDeadline:
    """Tests for validate_deadline()."""

    def test_plausible_deadline_kept(self) -> None:
        assert validate_deadline("2024-03-10", NOW, now=NOW) == datetime(2024, 3, 10, 23, 59, 59, tzinfo=UTC)

    def test_far_future_rejected(self) -> None:
        assert validate_deadline((NOW + timedelta(days=400)).isoformat(), NOW, now=NOW) is None

    def test_long_before_receipt_rejected(self) -> None:
        assert validate_deadline((NOW - timedelta(days=8)).isoformat(), NOW, now=NOW) is None

    def test_slightly_before_receipt_kept(self) -> None:
        value = NOW - timedelta(days=3)
        assert validate_deadline(value.isoformat(), NOW, now=NOW) == value

    def test_unparseable_is_none(self) -> None:
        assert validate_deadline("whenever", NOW, now=NOW) is None


class TestFindCandidateDates:
    """Tests for find_candidate_dates()."""

    def test_finds_phrases_in_order(self) -> None:
        text = "Please send it by Friday. The contract starts 2024-04-01 and the review is March 5th."
        assert find_candidate_dates(text) == ["by Friday", "2024-04-01", "March 5th"]

    def test_relative_phrases(self) -> None:
        assert find_candidate_dates("Need this by EOD or tomorrow at the latest") == ["EOD", "tomorrow"]

    def test_dedupes_and_limits(self) -> None:
        text = "tomorrow tomorrow 1/2 1/3 1/4 1/5 1/6 1/7"
        found = find_candidate_dates(text, limit=3)
        assert found == ["tomorrow", "1/2", "1/3"]

    def test_empty(self) -> None:
        assert find_candidate_dates(None) == []
        assert find_candidate_dates("no dates in here at all") == []
