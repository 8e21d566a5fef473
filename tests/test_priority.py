"""Tests for effective priority and the text signals feeding it."""

from datetime import UTC, datetime, timedelta

import pytest

from inbox_triage.config_schema import PriorityConfig
from inbox_triage.engine.priority import (
    PrioritySignals,
    business_days_between,
    detect_follow_up,
    detect_resolution,
    effective_priority,
    escalation_reasons,
    matches_effective_priority,
    sender_velocity_anomaly,
)

# Tuesday
NOW = datetime(2024, 3, 12, 9, 0, tzinfo=UTC)


class TestEffectivePriority:
    """Tests for effective_priority()."""

    @pytest.mark.parametrize("stored", [1, 2, 3, 4, 5])
    def test_handled_returns_stored(self, stored: int) -> None:
        signals = PrioritySignals(
            handled=True,
            is_vip=True,
            needs_reply=True,
            received_at=NOW - timedelta(days=30),
        )
        assert effective_priority(stored, NOW - timedelta(days=2), signals, now=NOW) == stored

    def test_resolved_thread_deescalates(self) -> None:
        signals = PrioritySignals(thread_resolved=True, is_vip=True)
        assert effective_priority(1, signals=signals, now=NOW) >= 4

    def test_vip_floor(self) -> None:
        assert effective_priority(4, signals=PrioritySignals(is_vip=True), now=NOW) <= 2

    def test_starred_floor(self) -> None:
        assert effective_priority(5, signals=PrioritySignals(is_starred=True), now=NOW) == 2

    def test_deadline_in_ten_days(self) -> None:
        assert effective_priority(4, NOW + timedelta(days=10), now=NOW) == 3

    def test_deadline_tomorrow(self) -> None:
        assert effective_priority(5, NOW + timedelta(days=1), now=NOW) == 1

    def test_overdue_deadline(self) -> None:
        assert effective_priority(3, NOW - timedelta(days=3), now=NOW) == 1

    def test_far_deadline_keeps_stored(self) -> None:
        assert effective_priority(4, NOW + timedelta(days=60), now=NOW) == 4

    def test_action_item_due_date_counts(self) -> None:
        signals = PrioritySignals(action_item_due_dates=(NOW + timedelta(days=1),))
        assert effective_priority(4, signals=signals, now=NOW) == 1

    def test_needs_reply_after_six_business_days(self) -> None:
        # Monday of the previous week
        signals = PrioritySignals(needs_reply=True, received_at=datetime(2024, 3, 4, 9, 0, tzinfo=UTC))
        assert effective_priority(3, signals=signals, now=NOW) == 1

    def test_needs_reply_fresh_keeps_stored(self) -> None:
        signals = PrioritySignals(needs_reply=True, received_at=NOW - timedelta(hours=2))
        assert effective_priority(3, signals=signals, now=NOW) == 3

    def test_reply_windows_scale_with_response_time(self) -> None:
        signals = PrioritySignals(
            needs_reply=True,
            received_at=datetime(2024, 3, 4, 9, 0, tzinfo=UTC),
            avg_response_time_hours=48,
        )
        assert effective_priority(3, signals=signals, now=datetime(2024, 3, 8, 9, 0, tzinfo=UTC)) == 2

    def test_low_confidence_guard(self) -> None:
        signals = PrioritySignals(confidence=0.4)
        assert effective_priority(1, signals=signals, now=NOW) >= 3

    def test_low_confidence_guard_skipped_for_deadline(self) -> None:
        signals = PrioritySignals(confidence=0.4)
        assert effective_priority(3, NOW + timedelta(days=1), signals, now=NOW) == 1

    def test_follow_up_and_escalation_boosts(self) -> None:
        assert effective_priority(3, signals=PrioritySignals(is_follow_up=True), now=NOW) == 2
        assert effective_priority(4, signals=PrioritySignals(is_escalation=True), now=NOW) == 2

    def test_velocity_boost(self) -> None:
        assert effective_priority(4, signals=PrioritySignals(velocity_anomaly=True), now=NOW) == 3

    def test_company_domain_floor(self) -> None:
        signals = PrioritySignals(sender_domain="eng.example.com", company_domains=("example.com",))
        assert effective_priority(5, signals=signals, now=NOW) == 3

    def test_colleague_floor(self) -> None:
        assert effective_priority(5, signals=PrioritySignals(relationship="colleague"), now=NOW) == 3

    def test_automated_cap(self) -> None:
        assert effective_priority(3, signals=PrioritySignals(relationship="automated"), now=NOW) == 4

    def test_automated_cap_not_applied_when_urgent(self) -> None:
        signals = PrioritySignals(relationship="automated")
        assert effective_priority(3, NOW + timedelta(days=1), signals, now=NOW) == 1

    def test_active_thread_needing_reply(self) -> None:
        signals = PrioritySignals(
            needs_reply=True,
            is_thread_active=True,
            received_at=NOW - timedelta(hours=1),
        )
        assert effective_priority(3, signals=signals, now=NOW) == 2

    def test_never_out_of_range(self) -> None:
        signals = PrioritySignals(is_follow_up=True, is_escalation=True, velocity_anomaly=True, is_vip=True)
        assert effective_priority(1, NOW - timedelta(days=1), signals, now=NOW) == 1
        assert effective_priority(9, now=NOW) == 5

    def test_custom_config(self) -> None:
        config = PriorityConfig(vip_floor=1)
        assert effective_priority(4, signals=PrioritySignals(is_vip=True), config=config, now=NOW) == 1


class TestEscalationReasons:
    """Tests for escalation_reasons()."""

    def test_no_escalation_no_reasons(self) -> None:
        assert escalation_reasons(3, now=NOW) == []

    def test_deadline_reason(self) -> None:
        assert escalation_reasons(4, NOW + timedelta(days=10), now=NOW) == ["Deadline in 10 days"]

    def test_overdue_reason(self) -> None:
        assert "Overdue by 3 days" in escalation_reasons(3, NOW - timedelta(days=3), now=NOW)

    def test_unanswered_reason(self) -> None:
        signals = PrioritySignals(needs_reply=True, received_at=datetime(2024, 3, 4, 9, 0, tzinfo=UTC))
        assert "Unanswered for 6 business days" in escalation_reasons(3, signals=signals, now=NOW)

    def test_vip_reason(self) -> None:
        assert escalation_reasons(4, signals=PrioritySignals(is_vip=True), now=NOW) == ["VIP sender"]

    def test_resolved_reason(self) -> None:
        signals = PrioritySignals(thread_resolved=True)
        assert escalation_reasons(1, signals=signals, now=NOW) == ["Thread resolved, de-escalated"]

    def test_handled_has_no_reasons(self) -> None:
        signals = PrioritySignals(handled=True, is_vip=True)
        assert escalation_reasons(4, signals=signals, now=NOW) == []


class TestMatchesEffectivePriority:
    """Tests for matches_effective_priority()."""

    def test_filters_on_effective_value(self) -> None:
        signals = PrioritySignals(is_vip=True)
        assert matches_effective_priority(4, None, [1, 2], signals, now=NOW) is True
        assert matches_effective_priority(4, None, [4], signals, now=NOW) is False

    def test_empty_filter_matches(self) -> None:
        assert matches_effective_priority(5, None, [], now=NOW) is True


class TestBusinessDays:
    """Tests for business_days_between()."""

    def test_friday_to_monday(self) -> None:
        friday = datetime(2024, 3, 8, 17, 0, tzinfo=UTC)
        monday = datetime(2024, 3, 11, 9, 0, tzinfo=UTC)
        assert business_days_between(friday, monday) == 1

    def test_weekend_only(self) -> None:
        saturday = datetime(2024, 3, 9, tzinfo=UTC)
        monday = datetime(2024, 3, 11, tzinfo=UTC)
        assert business_days_between(saturday, monday) == 0

    def test_two_weeks(self) -> None:
        assert business_days_between(datetime(2024, 3, 4, tzinfo=UTC), datetime(2024, 3, 18, tzinfo=UTC)) == 10

    def test_end_before_start(self) -> None:
        assert business_days_between(NOW, NOW - timedelta(days=3)) == 0


class TestTextSignals:
    """Tests for detect_follow_up() and detect_resolution()."""

    def test_follow_up(self) -> None:
        assert detect_follow_up("Re: proposal", "Just following up on this.") == (True, False)

    def test_escalation(self) -> None:
        assert detect_follow_up("URGENT: server down", "Production is down") == (False, True)

    def test_quoted_text_ignored(self) -> None:
        body = "Thanks for the update.\n\nOn Mon, Bob wrote:\n> following up, this is urgent"
        assert detect_follow_up("Re: status", body) == (False, False)

    def test_resolution(self) -> None:
        assert detect_resolution("Re: access issue", "All set now, thanks!") is True
        assert detect_resolution("Re: access issue", "Still broken for me") is False

    def test_resolution_in_quote_ignored(self) -> None:
        assert detect_resolution("Re: ticket", "Any news?\n> resolved on our side") is False


class TestSenderVelocity:
    """Tests for sender_velocity_anomaly()."""

    def test_burst_is_anomaly(self) -> None:
        first_seen = NOW - timedelta(weeks=10)
        assert sender_velocity_anomaly(10, 5, first_seen, now=NOW) is True

    def test_normal_volume(self) -> None:
        first_seen = NOW - timedelta(weeks=10)
        assert sender_velocity_anomaly(10, 2, first_seen, now=NOW) is False

    def test_new_sender_uses_one_week(self) -> None:
        assert sender_velocity_anomaly(4, 4, NOW - timedelta(days=1), now=NOW) is False

    def test_unknown_first_seen(self) -> None:
        assert sender_velocity_anomaly(10, 10, None, now=NOW) is False
