"""Local mailbox source (Maildir or mbox).

Reads a mailbox on disk with the standard library and normalizes every
message through the MIME tree. Used for offline runs, imports and tests.

The sync cursor is the ISO 8601 receive time of the newest message seen;
an incremental sync returns messages strictly newer than it.

Usage:
    from inbox_triage.sources.mailbox import LocalMailboxSource

    source = LocalMailboxSource(config.sources)
    result = await source.sync(account, account.sync_cursor)
"""

from __future__ import annotations

import asyncio
import mailbox
from datetime import UTC, datetime, timedelta
from email import message_from_bytes, policy
from email.message import Message
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import TYPE_CHECKING

from inbox_triage.config_schema import SourcesConfig
from inbox_triage.content.mime import build_mime_tree, extract_bodies
from inbox_triage.content.prep import html_to_plain_text
from inbox_triage.core.addresses import parse_address, parse_address_list
from inbox_triage.core.errors import InvalidCursorError, MailSourceError
from inbox_triage.core.logging import get_logger
from inbox_triage.models import NormalizedEmail
from inbox_triage.sources.base import SyncResult

if TYPE_CHECKING:
    from inbox_triage.db.store import Account

logger = get_logger(__name__)

SUPPORTED_PROVIDERS = ("maildir", "mbox")
SNIPPET_CHARS = 200

# Mailbox flags: Maildir uses S (seen), mbox uses R (read); both use F (flagged)
READ_FLAGS = frozenset("SR")
FLAGGED_FLAG = "F"


def parse_cursor(cursor: str | None) -> datetime | None:
    """Parse a cursor; raise InvalidCursorError for anything unusable."""
    if cursor is None:
        return None
    try:
        value = datetime.fromisoformat(cursor)
    except (TypeError, ValueError) as e:
        raise InvalidCursorError(f"Unparseable mailbox cursor: {cursor!r}") from e
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


def _header(message: Message, name: str) -> str:
    value = message.get(name)
    return str(value).strip() if value is not None else ""


def _received_at(message: Message) -> datetime | None:
    raw = _header(message, "Date")
    if not raw:
        return None
    try:
        value = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


def _thread_id(message: Message, external_id: str) -> str:
    # Root of the References chain, then In-Reply-To, then the message itself
    references = _header(message, "References").split()
    if references:
        return references[0]
    in_reply_to = _header(message, "In-Reply-To").split()
    if in_reply_to:
        return in_reply_to[0]
    return external_id


def normalize_message(
    message: Message,
    key: str,
    flags: str = "",
    config: SourcesConfig | None = None,
) -> NormalizedEmail | None:
    """Normalize one parsed message; None if it has no usable date or sender."""
    config = config or SourcesConfig()
    received_at = _received_at(message)
    from_name, from_address = parse_address(_header(message, "From"))
    if received_at is None or not from_address:
        return None

    external_id = _header(message, "Message-ID") or key
    tree = build_mime_tree(message, max_nodes=config.max_mime_parts, max_depth=config.max_mime_depth)
    bodies = extract_bodies(tree)
    preview_source = bodies.text or (html_to_plain_text(bodies.html) if bodies.html else "")
    snippet = " ".join(preview_source.split())[:SNIPPET_CHARS]

    list_id = _header(message, "List-Id") or None
    precedence = _header(message, "Precedence").lower()
    is_mailing_list = bool(list_id or _header(message, "List-Unsubscribe") or precedence in ("bulk", "list"))

    labels: list[str] = []
    if FLAGGED_FLAG in flags:
        labels.append("FLAGGED")
    if _header(message, "Importance").lower() == "high" or _header(message, "X-Priority").startswith("1"):
        labels.append("IMPORTANT")

    return NormalizedEmail(
        external_id=external_id,
        thread_id=_thread_id(message, external_id),
        from_address=from_address,
        from_name=from_name,
        to=parse_address_list(str(v) for v in message.get_all("To", [])),
        cc=parse_address_list(str(v) for v in message.get_all("Cc", [])),
        subject=_header(message, "Subject"),
        snippet=snippet,
        body_text=bodies.text,
        body_html=bodies.html,
        received_at=received_at,
        is_read=bool(READ_FLAGS & set(flags)),
        has_attachments=bool(bodies.attachments),
        attachments=list(bodies.attachments),
        labels=labels,
        is_mailing_list=is_mailing_list,
        list_id=list_id.strip("<>") if list_id else None,
    )


class LocalMailboxSource:
    """Mail source over a Maildir directory or an mbox file.

    The account's `source_path` points at the mailbox; `provider` selects
    the format.
    """

    def __init__(self, config: SourcesConfig | None = None):
        self._config = config or SourcesConfig()

    async def sync(
        self,
        account: Account,
        cursor: str | None,
        *,
        window_days: int = 30,
    ) -> SyncResult:
        since = parse_cursor(cursor)
        full_sync = since is None
        if since is None:
            since = datetime.now(UTC) - timedelta(days=window_days)

        emails = await asyncio.to_thread(self._read_mailbox, account, since, not full_sync)
        new_cursor = max(e.received_at for e in emails).isoformat() if emails else None
        logger.info(
            "mailbox_synced",
            account_id=account.id,
            provider=account.provider,
            emails=len(emails),
            full_sync=full_sync,
        )
        return SyncResult(emails=emails, new_cursor=new_cursor, full_sync=full_sync)

    def _open(self, account: Account) -> mailbox.Mailbox:
        if account.provider not in SUPPORTED_PROVIDERS:
            raise MailSourceError(
                f"Unsupported local mailbox provider '{account.provider}'. "
                f"Use one of: {', '.join(SUPPORTED_PROVIDERS)}",
                account_id=account.id,
            )
        if not account.source_path:
            raise MailSourceError("Account has no mailbox path configured", account_id=account.id)

        path = Path(account.source_path).expanduser()
        if not path.exists():
            raise MailSourceError(f"Mailbox not found: {path}", account_id=account.id)
        if account.provider == "maildir":
            return mailbox.Maildir(path, factory=None, create=False)
        return mailbox.mbox(path, factory=None, create=False)

    def _read_mailbox(self, account: Account, since: datetime, exclusive: bool) -> list[NormalizedEmail]:
        box = self._open(account)
        emails: list[NormalizedEmail] = []
        skipped = 0
        try:
            for key in box.iterkeys():
                try:
                    flags = box.get_message(key).get_flags()
                    message = message_from_bytes(box.get_bytes(key), policy=policy.default)
                except (OSError, KeyError, ValueError) as e:
                    logger.warning("mailbox_message_unreadable", account_id=account.id, error=str(e))
                    skipped += 1
                    continue

                email = normalize_message(message, str(key), flags, self._config)
                if email is None:
                    skipped += 1
                    continue
                if email.received_at < since or (exclusive and email.received_at == since):
                    continue
                emails.append(email)
        except OSError as e:
            raise MailSourceError(f"Failed to read mailbox: {e}", account_id=account.id) from e
        finally:
            box.close()

        if skipped:
            logger.debug("mailbox_messages_skipped", account_id=account.id, skipped=skipped)

        # Keep the newest messages when over the cap, returned oldest first
        emails.sort(key=lambda e: e.received_at)
        return emails[-self._config.max_messages_per_sync :]
