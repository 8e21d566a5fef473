"""Tests for the local Maildir/mbox mail source."""

import mailbox
from datetime import UTC, datetime, timedelta
from email import message_from_bytes, policy
from email.utils import format_datetime
from pathlib import Path

import pytest

from inbox_triage.config_schema import SourcesConfig
from inbox_triage.core.errors import InvalidCursorError, MailSourceError
from inbox_triage.db.store import Account
from inbox_triage.sources import LocalMailboxSource, default_source_factory, normalize_message
from inbox_triage.sources.mailbox import parse_cursor

NOW = datetime.now(UTC).replace(microsecond=0)


def _raw(
    msg_id: str,
    when: datetime,
    subject: str = "Hello",
    sender: str = "Alice Smith <Alice@Partner.com>",
    extra_headers: str = "",
) -> bytes:
    return (
        f"From: {sender}\n"
        "To: Me <me@example.com>, bob@example.com\n"
        f"Subject: {subject}\n"
        f"Message-ID: <{msg_id}>\n"
        f"Date: {format_datetime(when)}\n"
        f"{extra_headers}"
        "Content-Type: text/plain; charset=utf-8\n"
        "\n"
        "Could you   review the\nattached numbers?\n"
    ).encode()


def _make_maildir(path: Path, messages: list[tuple[bytes, str]]) -> Path:
    box = mailbox.Maildir(path, create=True)
    for raw, flags in messages:
        message = mailbox.MaildirMessage(raw)
        message.set_subdir("cur")
        message.set_flags(flags)
        box.add(message)
    box.close()
    return path


def _make_account(path: Path, provider: str = "maildir") -> Account:
    return Account(
        id="acc-1",
        user_id="u1",
        provider=provider,
        address="me@example.com",
        source_path=str(path),
    )


class TestNormalizeMessage:
    """Tests for normalize_message()."""

    def test_basic_fields(self) -> None:
        message = message_from_bytes(_raw("m1@partner.com", NOW), policy=policy.default)
        email = normalize_message(message, "key-1", "S")

        assert email.external_id == "<m1@partner.com>"
        assert email.thread_id == "<m1@partner.com>"
        assert email.from_address == "alice@partner.com"
        assert email.from_name == "Alice Smith"
        assert email.to == ["me@example.com", "bob@example.com"]
        assert email.received_at == NOW
        assert email.snippet == "Could you review the attached numbers?"
        assert email.is_read is True
        assert email.is_mailing_list is False

    def test_thread_from_references(self) -> None:
        headers = "In-Reply-To: <parent@x>\nReferences: <root@x> <parent@x>\n"
        message = message_from_bytes(_raw("m2@x", NOW, extra_headers=headers), policy=policy.default)
        assert normalize_message(message, "k").thread_id == "<root@x>"

    def test_thread_from_in_reply_to(self) -> None:
        headers = "In-Reply-To: <parent@x>\n"
        message = message_from_bytes(_raw("m2@x", NOW, extra_headers=headers), policy=policy.default)
        assert normalize_message(message, "k").thread_id == "<parent@x>"

    def test_mailing_list_markers(self) -> None:
        headers = "List-Id: Weekly digest <digest.lists.example.org>\n"
        message = message_from_bytes(_raw("m3@x", NOW, extra_headers=headers), policy=policy.default)
        email = normalize_message(message, "k")
        assert email.is_mailing_list is True
        assert email.list_id.endswith("digest.lists.example.org")

    def test_bulk_precedence_is_mailing_list(self) -> None:
        message = message_from_bytes(
            _raw("m4@x", NOW, extra_headers="Precedence: bulk\n"), policy=policy.default
        )
        assert normalize_message(message, "k").is_mailing_list is True

    def test_flags_and_importance(self) -> None:
        message = message_from_bytes(
            _raw("m5@x", NOW, extra_headers="Importance: High\n"), policy=policy.default
        )
        email = normalize_message(message, "k", "F")
        assert email.labels == ["FLAGGED", "IMPORTANT"]
        assert email.is_starred is True
        assert email.is_read is False

    def test_missing_date_skipped(self) -> None:
        raw = b"From: a@x.com\nSubject: no date\n\nbody\n"
        assert normalize_message(message_from_bytes(raw, policy=policy.default), "k") is None

    def test_missing_sender_skipped(self) -> None:
        raw = f"Subject: nobody\nDate: {format_datetime(NOW)}\n\nbody\n".encode()
        assert normalize_message(message_from_bytes(raw, policy=policy.default), "k") is None


class TestParseCursor:
    """Tests for parse_cursor()."""

    def test_none(self) -> None:
        assert parse_cursor(None) is None

    def test_naive_is_utc(self) -> None:
        assert parse_cursor("2024-03-01T09:00:00") == datetime(2024, 3, 1, 9, 0, tzinfo=UTC)

    def test_garbage_rejected(self) -> None:
        with pytest.raises(InvalidCursorError):
            parse_cursor("page-token-abc")


class TestLocalMailboxSource:
    """Tests for LocalMailboxSource.sync()."""

    @pytest.mark.asyncio
    async def test_full_sync_window(self, tmp_path: Path) -> None:
        path = _make_maildir(
            tmp_path / "Maildir",
            [
                (_raw("new@x", NOW - timedelta(hours=1)), "S"),
                (_raw("older@x", NOW - timedelta(days=2)), ""),
                (_raw("ancient@x", NOW - timedelta(days=90)), ""),
            ],
        )
        result = await LocalMailboxSource().sync(_make_account(path), None, window_days=30)

        assert result.full_sync is True
        assert [e.external_id for e in result.emails] == ["<older@x>", "<new@x>"]
        assert result.new_cursor == (NOW - timedelta(hours=1)).isoformat()

    @pytest.mark.asyncio
    async def test_incremental_sync_is_exclusive(self, tmp_path: Path) -> None:
        first = NOW - timedelta(days=2)
        path = _make_maildir(
            tmp_path / "Maildir",
            [(_raw("a@x", first), ""), (_raw("b@x", NOW - timedelta(hours=1)), "")],
        )
        result = await LocalMailboxSource().sync(_make_account(path), first.isoformat())

        assert result.full_sync is False
        assert [e.external_id for e in result.emails] == ["<b@x>"]

    @pytest.mark.asyncio
    async def test_nothing_new_keeps_cursor(self, tmp_path: Path) -> None:
        path = _make_maildir(tmp_path / "Maildir", [(_raw("a@x", NOW - timedelta(days=1)), "")])
        result = await LocalMailboxSource().sync(_make_account(path), NOW.isoformat())
        assert result.emails == []
        assert result.new_cursor is None

    @pytest.mark.asyncio
    async def test_cap_keeps_newest(self, tmp_path: Path) -> None:
        path = _make_maildir(
            tmp_path / "Maildir",
            [(_raw(f"m{i}@x", NOW - timedelta(hours=i)), "") for i in range(1, 5)],
        )
        source = LocalMailboxSource(SourcesConfig(max_messages_per_sync=2))
        result = await source.sync(_make_account(path), None)
        assert [e.external_id for e in result.emails] == ["<m2@x>", "<m1@x>"]

    @pytest.mark.asyncio
    async def test_mbox(self, tmp_path: Path) -> None:
        path = tmp_path / "inbox.mbox"
        box = mailbox.mbox(path, create=True)
        box.add(mailbox.mboxMessage(_raw("mb@x", NOW - timedelta(hours=3))))
        box.close()

        result = await LocalMailboxSource().sync(_make_account(path, provider="mbox"), None)
        assert [e.external_id for e in result.emails] == ["<mb@x>"]

    @pytest.mark.asyncio
    async def test_invalid_cursor(self, tmp_path: Path) -> None:
        path = _make_maildir(tmp_path / "Maildir", [])
        with pytest.raises(InvalidCursorError):
            await LocalMailboxSource().sync(_make_account(path), "not-a-date")

    @pytest.mark.asyncio
    async def test_missing_mailbox(self, tmp_path: Path) -> None:
        with pytest.raises(MailSourceError, match="Mailbox not found"):
            await LocalMailboxSource().sync(_make_account(tmp_path / "nope"), None)

    @pytest.mark.asyncio
    async def test_unsupported_provider(self, tmp_path: Path) -> None:
        with pytest.raises(MailSourceError, match="Unsupported"):
            await LocalMailboxSource().sync(_make_account(tmp_path, provider="imap"), None)


class TestDefaultSourceFactory:
    """Tests for default_source_factory()."""

    def test_local_providers(self, tmp_path: Path) -> None:
        factory = default_source_factory()
        assert isinstance(factory(_make_account(tmp_path)), LocalMailboxSource)
        assert isinstance(factory(_make_account(tmp_path, provider="mbox")), LocalMailboxSource)

    def test_unknown_provider(self, tmp_path: Path) -> None:
        with pytest.raises(MailSourceError) as exc_info:
            default_source_factory()(_make_account(tmp_path, provider="exchange"))
        assert exc_info.value.account_id == "acc-1"
