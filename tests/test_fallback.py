"""Tests for rule-based fallback classification and automated sender detection."""

from datetime import UTC, datetime

import pytest

from inbox_triage.classifier.fallback import FALLBACK_VERSION, classify_with_rules
from inbox_triage.classifier.senders import is_automated_outside_company, is_automated_sender
from inbox_triage.models import AttachmentMeta, ClassificationInput, NormalizedEmail


def _make_input(
    subject: str = "Hello",
    body: str = "Just checking in.",
    from_address: str = "alice@partner.com",
    **email_kwargs,
) -> ClassificationInput:
    email = NormalizedEmail(
        external_id="ext-1",
        from_address=from_address,
        subject=subject,
        received_at=datetime(2024, 3, 1, 9, 0, tzinfo=UTC),
        body_text=body,
        **email_kwargs,
    )
    return ClassificationInput(email=email, company_domains=("example.com",))


class TestAutomatedSenders:
    """Tests for is_automated_sender() and is_automated_outside_company()."""

    @pytest.mark.parametrize(
        "address",
        [
            "noreply@github.com",
            "no-reply@accounts.google.com",
            "Notifications@Service.io",
            "team-noreply@vendor.com",
            "p+abc123@bounce.example.org",
            "news@em.sendgrid.net",
        ],
    )
    def test_automated(self, address: str) -> None:
        assert is_automated_sender(address) is True

    @pytest.mark.parametrize("address", ["alice@partner.com", "bob.smith@example.com", "", None, "not-an-address"])
    def test_human(self, address: str | None) -> None:
        assert is_automated_sender(address) is False

    def test_company_domain_excluded(self) -> None:
        assert is_automated_outside_company("noreply@example.com", ("example.com",)) is False
        assert is_automated_outside_company("noreply@vendor.com", ("example.com",)) is True


class TestClassifyWithRules:
    """Tests for classify_with_rules()."""

    def test_tagged_with_fallback_version_and_low_confidence(self) -> None:
        result = classify_with_rules(_make_input())
        assert result.classifier_version == FALLBACK_VERSION
        assert result.confidence == 0.3
        assert result.needs_approval is False

    def test_security_keywords(self) -> None:
        result = classify_with_rules(_make_input(subject="Your verification code", body="Use 123456"))
        assert result.category == "security"

    def test_invoice_is_finance(self) -> None:
        result = classify_with_rules(_make_input(subject="Invoice #123", body="Amount due: $40"))
        assert result.category == "finance"

    def test_social_sender_domain(self) -> None:
        result = classify_with_rules(_make_input(from_address="messages@linkedin.com", body="Hi there"))
        assert result.category == "social"

    def test_calendar_attachment_is_meeting(self) -> None:
        item = _make_input(
            subject="Sync",
            attachments=[AttachmentMeta(filename="invite.ics", mime_type="text/calendar")],
        )
        assert classify_with_rules(item).category == "meeting"

    def test_mailing_list_is_newsletter(self) -> None:
        result = classify_with_rules(_make_input(subject="Community update", is_mailing_list=True))
        assert result.category == "newsletter"
        assert result.priority == 5

    def test_automated_sender_is_notification_without_reply(self) -> None:
        result = classify_with_rules(
            _make_input(subject="Build finished?", body="Did it pass?", from_address="noreply@ci.io")
        )
        assert result.category == "notification"
        assert result.needs_reply is False

    def test_reply_with_question_needs_reply(self) -> None:
        result = classify_with_rules(_make_input(subject="Re: plans", body="Can you confirm by Friday?"))
        assert result.category == "reply-needed"
        assert result.needs_reply is True
        assert result.is_thread_active is True
        assert result.priority == 2

    def test_starred_boosts_priority(self) -> None:
        result = classify_with_rules(_make_input(subject="Hello", labels=["STARRED"]))
        assert result.priority <= 2

    def test_summary_is_subject(self) -> None:
        assert classify_with_rules(_make_input(subject="Lunch?", body="")).summary == "Lunch?"
        assert classify_with_rules(_make_input(subject="", body="")).summary == "(no subject)"
