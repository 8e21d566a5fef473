"""Database store with typed operations for every table.

DatabaseStore encapsulates all database access for the triage engine. It uses
aiosqlite for async access and converts rows to dataclasses.

Timestamps are stored as ISO 8601 strings normalized to UTC, so string
comparison in SQL matches chronological order.

Usage:
    from inbox_triage.db.store import DatabaseStore

    store = DatabaseStore("data/triage.db")
    await store.initialize()

    stored = await store.save_classification(email_id, user_id, result, reason="initial")
    profiles = await store.get_sender_profiles(user_id, {"a@example.com"})
"""

from __future__ import annotations

import json
import uuid
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Literal

import aiosqlite

from inbox_triage.classifier.feedback import OverrideExample
from inbox_triage.core.errors import DatabaseError
from inbox_triage.core.logging import get_correlation_id, get_logger, short_id
from inbox_triage.db.models import init_database
from inbox_triage.models import ActionItem, AttachmentMeta, ClassificationResult, NormalizedEmail

logger = get_logger(__name__)

# Security limit: snippets are previews, never full bodies
MAX_SNIPPET_LENGTH = 1000
MAX_SENDER_TOPICS = 20

RunStatus = Literal["running", "completed", "failed"]
RunTrigger = Literal["manual", "cron"]
HistoryReason = Literal["initial", "user-rule", "fallback", "hot-thread", "user-override", "auto-action"]

# History reasons that count as automated first classifications for threshold tuning
AUTOMATED_REASONS = ("initial", "fallback", "hot-thread")

OVERRIDABLE_FIELDS = frozenset(
    {"priority", "category", "needs_reply", "needs_approval", "is_thread_active", "deadline"}
)


# =============================================================================
# Records
# =============================================================================


@dataclass
class User:
    """Triage user with company domains and auto-action settings."""

    id: str
    email: str
    display_name: str | None = None
    company_domains: list[str] = field(default_factory=list)
    auto_handle_min_priority: int | None = None
    auto_handle_categories: list[str] = field(default_factory=list)
    created_at: datetime | None = None


@dataclass
class Account:
    """Mail account belonging to a user."""

    id: str
    user_id: str
    provider: str
    address: str
    source_path: str | None = None
    sync_cursor: str | None = None
    is_active: bool = True
    last_sync_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class StoredClassification:
    """Classification row: the result plus user-facing state."""

    email_id: str
    user_id: str
    result: ClassificationResult
    user_override: bool = False
    handled: bool = False
    handled_at: datetime | None = None
    thread_resolved: bool = False
    snoozed_until: datetime | None = None
    classified_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class HistoryEntry:
    """Append-only classification audit row."""

    id: int
    email_id: str
    user_id: str
    priority: int | None
    category: str | None
    confidence: float | None
    classifier_version: str | None
    reason: str
    previous_priority: int | None = None
    previous_category: str | None = None
    run_id: str | None = None
    created_at: datetime | None = None


@dataclass
class SenderProfile:
    """Per-(user, sender) intelligence."""

    user_id: str
    address: str
    display_name: str | None = None
    domain: str | None = None
    total_emails: int = 0
    first_email_at: datetime | None = None
    last_email_at: datetime | None = None
    relationship: str | None = None
    relationship_manual: bool = False
    is_vip: bool = False
    vip_reason: str | None = None
    recent_window_start: datetime | None = None
    recent_email_count: int = 0
    avg_response_time_hours: float | None = None
    override_count: int = 0
    topics: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class SenderActivity:
    """Sender observations from one pipeline run."""

    address: str
    display_name: str | None
    count: int
    first_at: datetime
    last_at: datetime
    inferred_relationship: str | None = None


@dataclass
class UserRule:
    """User-authored classification rule."""

    id: int
    user_id: str
    name: str
    sender_pattern: str | None = None
    subject_contains: str | None = None
    is_mailing_list: bool | None = None
    has_attachments: bool | None = None
    category: str | None = None
    priority: int | None = None
    needs_reply: bool | None = None
    mark_handled: bool = False
    is_active: bool = True
    created_at: datetime | None = None


@dataclass
class AgentRun:
    """Pipeline run status record."""

    id: str
    user_id: str
    trigger: RunTrigger
    status: RunStatus
    emails_fetched: int = 0
    emails_classified: int = 0
    emails_failed: int = 0
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class LLMLogEntry:
    """LLM request log entry."""

    id: int
    timestamp: datetime | None
    task_type: str | None = None
    model: str | None = None
    run_id: str | None = None
    email_count: int | None = None
    prompt_json: dict[str, Any] | None = None
    response_json: dict[str, Any] | None = None
    tool_call_json: dict[str, Any] | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    duration_ms: int | None = None
    error: str | None = None


# =============================================================================
# Conversion helpers
# =============================================================================


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed.replace(tzinfo=UTC) if parsed.tzinfo is None else parsed


def _now() -> datetime:
    return datetime.now(UTC)


def _dumps(value: Any) -> str:
    return json.dumps(value)


def _loads(value: str | None, default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def _bool_or_none(value: Any) -> bool | None:
    return None if value is None else bool(value)


def _int_or_none(value: bool | None) -> int | None:
    return None if value is None else int(value)


def _placeholders(count: int) -> str:
    return ",".join("?" * count)


class DatabaseStore:
    """Async store for all triage engine data.

    Attributes:
        db_path: Path to the SQLite database file
        _initialized: Whether initialize() has run
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Create tables if needed. Must be called before any other operation."""
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        PRAGMAs:
        - busy_timeout: 10s for concurrent access from runs + web API
        - foreign_keys: ON to enforce referential integrity
        - synchronous: NORMAL (safe with WAL, faster writes)
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA temp_store = MEMORY")
            db.row_factory = aiosqlite.Row
            yield db

    async def checkpoint_wal(self) -> None:
        """Run a WAL checkpoint to keep the WAL file bounded (end of each run)."""
        try:
            async with self._db() as db:
                await db.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            logger.debug("wal_checkpoint_complete")
        except aiosqlite.Error as e:
            logger.warning("wal_checkpoint_failed", error=str(e))

    # =========================================================================
    # Users and accounts
    # =========================================================================

    async def save_user(
        self,
        user_id: str,
        email: str,
        display_name: str | None = None,
        company_domains: Iterable[str] = (),
        auto_handle_min_priority: int | None = None,
        auto_handle_categories: Iterable[str] = (),
    ) -> User:
        """Insert or update a user."""
        domains = sorted({d.strip().lower() for d in company_domains if d.strip()})
        categories = list(dict.fromkeys(auto_handle_categories))
        now = _iso(_now())
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO users (
                        id, email, display_name, company_domains_json,
                        auto_handle_min_priority, auto_handle_categories_json, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        email = excluded.email,
                        display_name = excluded.display_name,
                        company_domains_json = excluded.company_domains_json,
                        auto_handle_min_priority = excluded.auto_handle_min_priority,
                        auto_handle_categories_json = excluded.auto_handle_categories_json
                    """,
                    (
                        user_id,
                        email.lower(),
                        display_name,
                        _dumps(domains),
                        auto_handle_min_priority,
                        _dumps(categories),
                        now,
                    ),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("user_save_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to save user {user_id}: {e}") from e

        user = await self.get_user(user_id)
        assert user is not None
        return user

    async def get_user(self, user_id: str) -> User | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM users WHERE id = ?", (user_id,))
                row = await cursor.fetchone()
                return self._row_to_user(row) if row else None
        except aiosqlite.Error as e:
            logger.error("user_get_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to get user {user_id}: {e}") from e

    async def list_users(self) -> list[User]:
        """All users, oldest first (cron order)."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM users ORDER BY created_at, id")
                return [self._row_to_user(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            logger.error("users_list_failed", error=str(e))
            raise DatabaseError(f"Failed to list users: {e}") from e

    def _row_to_user(self, row: aiosqlite.Row) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            display_name=row["display_name"],
            company_domains=_loads(row["company_domains_json"], []),
            auto_handle_min_priority=row["auto_handle_min_priority"],
            auto_handle_categories=_loads(row["auto_handle_categories_json"], []),
            created_at=_parse_dt(row["created_at"]),
        )

    async def create_account(
        self,
        user_id: str,
        provider: str,
        address: str,
        source_path: str | None = None,
        account_id: str | None = None,
    ) -> Account:
        """Register a mail account for a user."""
        account_id = account_id or uuid.uuid4().hex
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO accounts (id, user_id, provider, address, source_path, is_active, created_at)
                    VALUES (?, ?, ?, ?, ?, 1, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        provider = excluded.provider,
                        address = excluded.address,
                        source_path = excluded.source_path
                    """,
                    (account_id, user_id, provider, address.lower(), source_path, _iso(_now())),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("account_create_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to create account for user {user_id}: {e}") from e

        account = await self.get_account(account_id)
        assert account is not None
        return account

    async def get_account(self, account_id: str) -> Account | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM accounts WHERE id = ?", (account_id,))
                row = await cursor.fetchone()
                return self._row_to_account(row) if row else None
        except aiosqlite.Error as e:
            logger.error("account_get_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to get account {account_id}: {e}") from e

    async def get_active_accounts(self, user_id: str) -> list[Account]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM accounts WHERE user_id = ? AND is_active = 1 ORDER BY created_at, id",
                    (user_id,),
                )
                return [self._row_to_account(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            logger.error("accounts_get_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to get accounts for user {user_id}: {e}") from e

    async def set_account_active(self, account_id: str, is_active: bool) -> None:
        try:
            async with self._db() as db:
                await db.execute(
                    "UPDATE accounts SET is_active = ? WHERE id = ?",
                    (int(is_active), account_id),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to update account {account_id}: {e}") from e

    async def update_account_sync(
        self,
        account_id: str,
        sync_cursor: str | None,
        synced_at: datetime | None = None,
        replace_cursor: bool = False,
    ) -> None:
        """Record a successful sync.

        A None cursor keeps the previous one unless `replace_cursor` is set
        (used after the source rejected the stored cursor).
        """
        cursor_sql = "?" if replace_cursor else "COALESCE(?, sync_cursor)"
        try:
            async with self._db() as db:
                await db.execute(
                    f"UPDATE accounts SET sync_cursor = {cursor_sql}, last_sync_at = ? WHERE id = ?",
                    (sync_cursor, _iso(synced_at or _now()), account_id),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("account_sync_update_failed", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to update sync state for account {account_id}: {e}") from e

    def _row_to_account(self, row: aiosqlite.Row) -> Account:
        return Account(
            id=row["id"],
            user_id=row["user_id"],
            provider=row["provider"],
            address=row["address"],
            source_path=row["source_path"],
            sync_cursor=row["sync_cursor"],
            is_active=bool(row["is_active"]),
            last_sync_at=_parse_dt(row["last_sync_at"]),
            created_at=_parse_dt(row["created_at"]),
        )

    # =========================================================================
    # Emails
    # =========================================================================

    async def save_emails(self, account: Account, emails: list[NormalizedEmail]) -> int:
        """Upsert synced emails for an account in one transaction.

        New rows get a generated id. Re-synced rows only refresh the read
        flag, labels and mailing-list markers; content is immutable.

        Returns:
            Number of emails written
        """
        if not emails:
            return 0

        now = _iso(_now())
        try:
            async with self._db() as db:
                for email in emails:
                    snippet = email.snippet or ""
                    if len(snippet) > MAX_SNIPPET_LENGTH:
                        snippet = snippet[:MAX_SNIPPET_LENGTH]
                    await db.execute(
                        """
                        INSERT INTO emails (
                            id, account_id, user_id, external_id, thread_id,
                            from_address, from_name, to_json, cc_json, subject,
                            snippet, body_text, body_html, received_at, is_read,
                            has_attachments, attachments_json, labels_json,
                            is_mailing_list, list_id, created_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(account_id, external_id) DO UPDATE SET
                            is_read = excluded.is_read,
                            labels_json = excluded.labels_json,
                            is_mailing_list = excluded.is_mailing_list,
                            list_id = excluded.list_id
                        """,
                        (
                            uuid.uuid4().hex,
                            account.id,
                            account.user_id,
                            email.external_id,
                            email.thread_id,
                            email.from_address.lower(),
                            email.from_name,
                            _dumps(email.to),
                            _dumps(email.cc),
                            email.subject,
                            snippet,
                            email.body_text,
                            email.body_html,
                            _iso(email.received_at),
                            int(email.is_read),
                            int(email.has_attachments),
                            _dumps([a.to_dict() for a in email.attachments]),
                            _dumps(email.labels),
                            int(email.is_mailing_list),
                            email.list_id,
                            now,
                        ),
                    )
                await db.commit()
                logger.debug("emails_saved", account_id=account.id, count=len(emails))
                return len(emails)

        except aiosqlite.Error as e:
            logger.error("emails_save_failed", account_id=account.id, count=len(emails), error=str(e))
            raise DatabaseError(f"Failed to save emails for account {account.id}: {e}") from e

    async def get_email(self, email_id: str) -> NormalizedEmail | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM emails WHERE id = ?", (email_id,))
                row = await cursor.fetchone()
                return self._row_to_email(row) if row else None
        except aiosqlite.Error as e:
            logger.error("email_get_failed", email_id=short_id(email_id), error=str(e))
            raise DatabaseError(f"Failed to get email {email_id}: {e}") from e

    async def get_unclassified_emails(self, user_id: str, limit: int) -> list[NormalizedEmail]:
        """Emails of active accounts with no classification, newest first."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT e.* FROM emails e
                    JOIN accounts a ON a.id = e.account_id
                    LEFT JOIN classifications c ON c.email_id = e.id
                    WHERE e.user_id = ? AND a.is_active = 1 AND c.email_id IS NULL
                    ORDER BY e.received_at DESC
                    LIMIT ?
                    """,
                    (user_id, limit),
                )
                return [self._row_to_email(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            logger.error("unclassified_get_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to get unclassified emails: {e}") from e

    async def get_thread_emails(
        self,
        user_id: str,
        thread_ids: Iterable[str],
    ) -> dict[str, list[NormalizedEmail]]:
        """All emails of the given threads, each list newest first."""
        ids = sorted({t for t in thread_ids if t})
        if not ids:
            return {}
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    SELECT * FROM emails
                    WHERE user_id = ? AND thread_id IN ({_placeholders(len(ids))})
                    ORDER BY received_at DESC
                    """,
                    (user_id, *ids),
                )
                threads: dict[str, list[NormalizedEmail]] = {}
                for row in await cursor.fetchall():
                    threads.setdefault(row["thread_id"], []).append(self._row_to_email(row))
                return threads
        except aiosqlite.Error as e:
            logger.error("thread_emails_get_failed", user_id=user_id, threads=len(ids), error=str(e))
            raise DatabaseError(f"Failed to get thread emails: {e}") from e

    def _row_to_email(self, row: aiosqlite.Row) -> NormalizedEmail:
        attachments = [
            AttachmentMeta(
                filename=a.get("filename"),
                mime_type=a.get("mime_type") or "application/octet-stream",
                size=int(a.get("size") or 0),
            )
            for a in _loads(row["attachments_json"], [])
            if isinstance(a, dict)
        ]
        return NormalizedEmail(
            id=row["id"],
            account_id=row["account_id"],
            user_id=row["user_id"],
            external_id=row["external_id"],
            thread_id=row["thread_id"],
            from_address=row["from_address"],
            from_name=row["from_name"],
            to=_loads(row["to_json"], []),
            cc=_loads(row["cc_json"], []),
            subject=row["subject"] or "",
            snippet=row["snippet"] or "",
            body_text=row["body_text"],
            body_html=row["body_html"],
            received_at=_parse_dt(row["received_at"]) or _now(),
            is_read=bool(row["is_read"]),
            has_attachments=bool(row["has_attachments"]),
            attachments=attachments,
            labels=_loads(row["labels_json"], []),
            is_mailing_list=bool(row["is_mailing_list"]),
            list_id=row["list_id"],
        )

    # =========================================================================
    # Classifications
    # =========================================================================

    async def save_classification(
        self,
        email_id: str,
        user_id: str,
        result: ClassificationResult,
        reason: HistoryReason,
        run_id: str | None = None,
    ) -> bool:
        """Upsert an automated classification and append a history row.

        Rows the user overrode are never touched.

        Returns:
            True if written, False if skipped because of a user override
        """
        now = _iso(_now())
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT priority, category, user_override FROM classifications WHERE email_id = ?",
                    (email_id,),
                )
                existing = await cursor.fetchone()
                if existing is not None and existing["user_override"]:
                    logger.debug("classification_skipped_override", email_id=short_id(email_id))
                    return False

                await db.execute(
                    """
                    INSERT INTO classifications (
                        email_id, user_id, priority, category, needs_reply,
                        needs_approval, is_thread_active, action_items_json,
                        deadline, summary, confidence, topics_json, sentiment,
                        classifier_version, classified_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(email_id) DO UPDATE SET
                        priority = excluded.priority,
                        category = excluded.category,
                        needs_reply = excluded.needs_reply,
                        needs_approval = excluded.needs_approval,
                        is_thread_active = excluded.is_thread_active,
                        action_items_json = excluded.action_items_json,
                        deadline = excluded.deadline,
                        summary = excluded.summary,
                        confidence = excluded.confidence,
                        topics_json = excluded.topics_json,
                        sentiment = excluded.sentiment,
                        classifier_version = excluded.classifier_version,
                        classified_at = excluded.classified_at,
                        updated_at = excluded.updated_at
                    WHERE classifications.user_override = 0
                    """,
                    (
                        email_id,
                        user_id,
                        result.priority,
                        result.category,
                        int(result.needs_reply),
                        int(result.needs_approval),
                        int(result.is_thread_active),
                        _dumps([item.to_dict() for item in result.action_items]),
                        _iso(result.deadline),
                        result.summary,
                        result.confidence,
                        _dumps(list(result.topics)),
                        result.sentiment,
                        result.classifier_version,
                        now,
                        now,
                    ),
                )
                await self._insert_history(
                    db,
                    email_id=email_id,
                    user_id=user_id,
                    priority=result.priority,
                    category=result.category,
                    confidence=result.confidence,
                    classifier_version=result.classifier_version,
                    reason=reason,
                    previous_priority=existing["priority"] if existing else None,
                    previous_category=existing["category"] if existing else None,
                    run_id=run_id,
                    created_at=now,
                )
                await db.commit()
                return True

        except aiosqlite.Error as e:
            logger.error("classification_save_failed", email_id=short_id(email_id), error=str(e))
            raise DatabaseError(f"Failed to save classification for email {email_id}: {e}") from e

    async def get_classification(self, email_id: str) -> StoredClassification | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM classifications WHERE email_id = ?", (email_id,))
                row = await cursor.fetchone()
                return self._row_to_classification(row) if row else None
        except aiosqlite.Error as e:
            logger.error("classification_get_failed", email_id=short_id(email_id), error=str(e))
            raise DatabaseError(f"Failed to get classification for email {email_id}: {e}") from e

    async def get_classifications(self, email_ids: Iterable[str]) -> dict[str, StoredClassification]:
        ids = list(dict.fromkeys(email_ids))
        if not ids:
            return {}
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"SELECT * FROM classifications WHERE email_id IN ({_placeholders(len(ids))})",
                    ids,
                )
                return {row["email_id"]: self._row_to_classification(row) for row in await cursor.fetchall()}
        except aiosqlite.Error as e:
            logger.error("classifications_get_failed", count=len(ids), error=str(e))
            raise DatabaseError(f"Failed to get classifications: {e}") from e

    async def list_classified_emails(
        self,
        user_id: str,
        limit: int = 100,
        include_handled: bool = False,
    ) -> list[tuple[NormalizedEmail, StoredClassification]]:
        """Classified emails for the read model, newest first."""
        query = """
            SELECT e.*, c.email_id AS c_email_id, c.user_id AS c_user_id, c.priority, c.category,
                   c.needs_reply, c.needs_approval, c.is_thread_active, c.action_items_json,
                   c.deadline, c.summary, c.confidence, c.topics_json, c.sentiment,
                   c.classifier_version, c.user_override, c.handled, c.handled_at,
                   c.thread_resolved, c.snoozed_until, c.classified_at, c.updated_at
            FROM classifications c
            JOIN emails e ON e.id = c.email_id
            WHERE c.user_id = ?
        """
        params: list[Any] = [user_id]
        if not include_handled:
            query += " AND c.handled = 0"
        query += " ORDER BY e.received_at DESC LIMIT ?"
        params.append(limit)
        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                return [
                    (self._row_to_email(row), self._row_to_classification(row, prefix="c_"))
                    for row in await cursor.fetchall()
                ]
        except aiosqlite.Error as e:
            logger.error("classified_list_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to list classified emails: {e}") from e

    async def apply_override(
        self,
        email_id: str,
        changes: dict[str, Any],
    ) -> tuple[StoredClassification, StoredClassification] | None:
        """Apply a user correction and flag the row user-overridden.

        Args:
            email_id: Email whose classification is corrected
            changes: Subset of OVERRIDABLE_FIELDS (deadline as datetime or None)

        Returns:
            (before, after) classifications, or None if the email has none

        Raises:
            ValueError: On an unknown field
        """
        unknown = set(changes) - OVERRIDABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot override field(s): {', '.join(sorted(unknown))}")

        columns: list[str] = ["user_override = 1", "updated_at = ?"]
        now = _iso(_now())
        params: list[Any] = [now]
        for name, value in changes.items():
            columns.append(f"{name} = ?")
            if name == "deadline":
                params.append(_iso(value))
            elif isinstance(value, bool):
                params.append(int(value))
            else:
                params.append(value)

        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM classifications WHERE email_id = ?", (email_id,))
                row = await cursor.fetchone()
                if row is None:
                    return None
                before = self._row_to_classification(row)

                await db.execute(
                    f"UPDATE classifications SET {', '.join(columns)} WHERE email_id = ?",
                    (*params, email_id),
                )
                cursor = await db.execute("SELECT * FROM classifications WHERE email_id = ?", (email_id,))
                after = self._row_to_classification(await cursor.fetchone())

                await self._insert_history(
                    db,
                    email_id=email_id,
                    user_id=after.user_id,
                    priority=after.result.priority,
                    category=after.result.category,
                    confidence=after.result.confidence,
                    classifier_version=after.result.classifier_version,
                    reason="user-override",
                    previous_priority=before.result.priority,
                    previous_category=before.result.category,
                    run_id=None,
                    created_at=now,
                )
                await db.commit()
                return before, after

        except aiosqlite.Error as e:
            logger.error("override_apply_failed", email_id=short_id(email_id), error=str(e))
            raise DatabaseError(f"Failed to apply override for email {email_id}: {e}") from e

    async def set_handled(
        self,
        email_id: str,
        handled: bool = True,
        *,
        automated: bool = False,
        run_id: str | None = None,
    ) -> bool:
        """Mark a classification handled (or not).

        Automated callers never touch user-overridden rows and leave an
        `auto-action` history entry.

        Returns:
            True if a row changed
        """
        now = _iso(_now())
        query = "UPDATE classifications SET handled = ?, handled_at = ?, updated_at = ? WHERE email_id = ?"
        if automated:
            query += " AND user_override = 0 AND handled = 0"
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    query,
                    (int(handled), now if handled else None, now, email_id),
                )
                changed = cursor.rowcount > 0
                if changed and automated:
                    cursor = await db.execute("SELECT * FROM classifications WHERE email_id = ?", (email_id,))
                    row = await cursor.fetchone()
                    await self._insert_history(
                        db,
                        email_id=email_id,
                        user_id=row["user_id"],
                        priority=row["priority"],
                        category=row["category"],
                        confidence=row["confidence"],
                        classifier_version=row["classifier_version"],
                        reason="auto-action",
                        previous_priority=row["priority"],
                        previous_category=row["category"],
                        run_id=run_id,
                        created_at=now,
                    )
                await db.commit()
                return changed
        except aiosqlite.Error as e:
            logger.error("handled_update_failed", email_id=short_id(email_id), error=str(e))
            raise DatabaseError(f"Failed to update handled state for email {email_id}: {e}") from e

    async def mark_thread_resolved(self, email_ids: Iterable[str]) -> int:
        """Flag unhandled, non-overridden classifications as thread-resolved."""
        ids = list(dict.fromkeys(email_ids))
        if not ids:
            return 0
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    UPDATE classifications
                    SET thread_resolved = 1, updated_at = ?
                    WHERE email_id IN ({_placeholders(len(ids))})
                      AND user_override = 0 AND handled = 0 AND thread_resolved = 0
                    """,
                    (_iso(_now()), *ids),
                )
                await db.commit()
                return cursor.rowcount
        except aiosqlite.Error as e:
            logger.error("thread_resolve_failed", count=len(ids), error=str(e))
            raise DatabaseError(f"Failed to mark threads resolved: {e}") from e

    async def snooze(self, email_id: str, until: datetime | None) -> bool:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "UPDATE classifications SET snoozed_until = ?, updated_at = ? WHERE email_id = ?",
                    (_iso(until), _iso(_now()), email_id),
                )
                await db.commit()
                return cursor.rowcount > 0
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to snooze email {email_id}: {e}") from e

    def _row_to_classification(self, row: aiosqlite.Row, prefix: str = "") -> StoredClassification:
        action_items = tuple(
            ActionItem(
                description=str(item.get("description", "")),
                due_date=_parse_dt(item.get("due_date")),
            )
            for item in _loads(row["action_items_json"], [])
            if isinstance(item, dict)
        )
        result = ClassificationResult(
            priority=row["priority"],
            category=row["category"],
            needs_reply=bool(row["needs_reply"]),
            needs_approval=bool(row["needs_approval"]),
            is_thread_active=bool(row["is_thread_active"]),
            summary=row["summary"] or "",
            confidence=row["confidence"],
            classifier_version=row["classifier_version"],
            action_items=action_items,
            deadline=_parse_dt(row["deadline"]),
            topics=tuple(_loads(row["topics_json"], [])),
            sentiment=row["sentiment"] or "neutral",
        )
        return StoredClassification(
            email_id=row[f"{prefix}email_id"],
            user_id=row[f"{prefix}user_id"],
            result=result,
            user_override=bool(row["user_override"]),
            handled=bool(row["handled"]),
            handled_at=_parse_dt(row["handled_at"]),
            thread_resolved=bool(row["thread_resolved"]),
            snoozed_until=_parse_dt(row["snoozed_until"]),
            classified_at=_parse_dt(row["classified_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )

    # =========================================================================
    # Classification history
    # =========================================================================

    async def _insert_history(self, db: aiosqlite.Connection, **values: Any) -> None:
        await db.execute(
            """
            INSERT INTO classification_history (
                email_id, user_id, priority, category, confidence,
                classifier_version, reason, previous_priority,
                previous_category, run_id, created_at
            ) VALUES (
                :email_id, :user_id, :priority, :category, :confidence,
                :classifier_version, :reason, :previous_priority,
                :previous_category, :run_id, :created_at
            )
            """,
            values,
        )

    async def get_history(self, email_id: str) -> list[HistoryEntry]:
        """Audit trail of one email, oldest first."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM classification_history WHERE email_id = ? ORDER BY id",
                    (email_id,),
                )
                return [
                    HistoryEntry(
                        id=row["id"],
                        email_id=row["email_id"],
                        user_id=row["user_id"],
                        priority=row["priority"],
                        category=row["category"],
                        confidence=row["confidence"],
                        classifier_version=row["classifier_version"],
                        reason=row["reason"],
                        previous_priority=row["previous_priority"],
                        previous_category=row["previous_category"],
                        run_id=row["run_id"],
                        created_at=_parse_dt(row["created_at"]),
                    )
                    for row in await cursor.fetchall()
                ]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get history for email {email_id}: {e}") from e

    async def get_recent_overrides(
        self,
        user_id: str,
        since: datetime,
        limit: int,
    ) -> list[OverrideExample]:
        """User corrections since `since`, newest first."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT h.priority, h.category, h.previous_priority, h.previous_category,
                           h.created_at, e.from_address, e.subject
                    FROM classification_history h
                    JOIN emails e ON e.id = h.email_id
                    WHERE h.user_id = ? AND h.reason = 'user-override' AND h.created_at >= ?
                    ORDER BY h.created_at DESC, h.id DESC
                    LIMIT ?
                    """,
                    (user_id, _iso(since), limit),
                )
                return [
                    OverrideExample(
                        sender_address=row["from_address"],
                        subject=row["subject"] or "",
                        original_priority=row["previous_priority"],
                        original_category=row["previous_category"],
                        corrected_priority=row["priority"],
                        corrected_category=row["category"],
                        overridden_at=_parse_dt(row["created_at"]) or _now(),
                    )
                    for row in await cursor.fetchall()
                ]
        except aiosqlite.Error as e:
            logger.error("overrides_get_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to get recent overrides: {e}") from e

    async def get_category_override_stats(
        self,
        user_id: str,
        since: datetime,
    ) -> dict[str, tuple[int, int]]:
        """Per category: (automated classifications, of which user-overridden) since `since`.

        Overrides count against the category the classifier had assigned.
        """
        since_iso = _iso(since)
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    SELECT category, COUNT(DISTINCT email_id) AS total
                    FROM classification_history
                    WHERE user_id = ? AND created_at >= ?
                      AND reason IN ({_placeholders(len(AUTOMATED_REASONS))})
                    GROUP BY category
                    """,
                    (user_id, since_iso, *AUTOMATED_REASONS),
                )
                totals = {row["category"]: row["total"] for row in await cursor.fetchall()}

                cursor = await db.execute(
                    """
                    SELECT previous_category AS category, COUNT(DISTINCT email_id) AS overrides
                    FROM classification_history
                    WHERE user_id = ? AND created_at >= ? AND reason = 'user-override'
                      AND previous_category IS NOT NULL
                    GROUP BY previous_category
                    """,
                    (user_id, since_iso),
                )
                overrides = {row["category"]: row["overrides"] for row in await cursor.fetchall()}

            return {
                category: (total, min(overrides.get(category, 0), total))
                for category, total in totals.items()
            }
        except aiosqlite.Error as e:
            logger.error("override_stats_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to get override stats: {e}") from e

    # =========================================================================
    # Sender profiles
    # =========================================================================

    async def get_sender_profile(self, user_id: str, address: str) -> SenderProfile | None:
        profiles = await self.get_sender_profiles(user_id, [address])
        return profiles.get(address.lower())

    async def get_sender_profiles(self, user_id: str, addresses: Iterable[str]) -> dict[str, SenderProfile]:
        """Batch lookup keyed by lowercased address."""
        keys = sorted({a.lower() for a in addresses if a})
        if not keys:
            return {}
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    f"""
                    SELECT * FROM sender_profiles
                    WHERE user_id = ? AND address IN ({_placeholders(len(keys))})
                    """,
                    (user_id, *keys),
                )
                return {row["address"]: self._row_to_sender_profile(row) for row in await cursor.fetchall()}
        except aiosqlite.Error as e:
            logger.error("sender_profiles_get_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to get sender profiles: {e}") from e

    async def record_sender_activity(
        self,
        user_id: str,
        activity: list[SenderActivity],
        recent_window_days: int,
        now: datetime | None = None,
    ) -> int:
        """Fold one run's sender observations into the profiles.

        Creates profiles lazily. The recent-volume window restarts once it is
        older than `recent_window_days`. An inferred relationship is written
        only when the profile has none and it was not set manually.

        Returns:
            Number of profiles written
        """
        if not activity:
            return 0

        now = now or _now()
        now_iso = _iso(now)
        window_cutoff = _iso(now - timedelta(days=recent_window_days))
        try:
            async with self._db() as db:
                for item in activity:
                    address = item.address.lower()
                    await db.execute(
                        """
                        INSERT INTO sender_profiles (
                            user_id, address, display_name, domain, total_emails,
                            first_email_at, last_email_at, relationship,
                            recent_window_start, recent_email_count, created_at, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(user_id, address) DO UPDATE SET
                            display_name = COALESCE(excluded.display_name, display_name),
                            total_emails = total_emails + excluded.total_emails,
                            first_email_at = MIN(
                                COALESCE(first_email_at, excluded.first_email_at),
                                excluded.first_email_at
                            ),
                            last_email_at = MAX(
                                COALESCE(last_email_at, excluded.last_email_at),
                                excluded.last_email_at
                            ),
                            relationship = CASE
                                WHEN relationship IS NULL AND relationship_manual = 0
                                THEN excluded.relationship ELSE relationship END,
                            recent_email_count = CASE
                                WHEN recent_window_start IS NULL OR recent_window_start < ?
                                THEN excluded.recent_email_count
                                ELSE recent_email_count + excluded.recent_email_count END,
                            recent_window_start = CASE
                                WHEN recent_window_start IS NULL OR recent_window_start < ?
                                THEN excluded.recent_window_start
                                ELSE recent_window_start END,
                            updated_at = excluded.updated_at
                        """,
                        (
                            user_id,
                            address,
                            item.display_name,
                            address.rsplit("@", 1)[-1] if "@" in address else None,
                            item.count,
                            _iso(item.first_at),
                            _iso(item.last_at),
                            item.inferred_relationship,
                            now_iso,
                            item.count,
                            now_iso,
                            now_iso,
                            window_cutoff,
                            window_cutoff,
                        ),
                    )
                await db.commit()
                return len(activity)
        except aiosqlite.Error as e:
            logger.error("sender_activity_failed", user_id=user_id, senders=len(activity), error=str(e))
            raise DatabaseError(f"Failed to record sender activity: {e}") from e

    async def record_sender_override(
        self,
        user_id: str,
        address: str,
        topics: list[str] | None = None,
        relationship: str | None = None,
    ) -> None:
        """Count an override against a sender, optionally storing learned facts.

        A relationship is only written when none is set yet.
        """
        address = address.lower()
        now = _iso(_now())
        topics_json = _dumps(topics[-MAX_SENDER_TOPICS:]) if topics is not None else None
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO sender_profiles (
                        user_id, address, domain, override_count, topics_json,
                        relationship, created_at, updated_at
                    ) VALUES (?, ?, ?, 1, COALESCE(?, '[]'), ?, ?, ?)
                    ON CONFLICT(user_id, address) DO UPDATE SET
                        override_count = override_count + 1,
                        topics_json = COALESCE(?, topics_json),
                        relationship = CASE
                            WHEN relationship IS NULL AND relationship_manual = 0
                            THEN excluded.relationship ELSE relationship END,
                        updated_at = excluded.updated_at
                    """,
                    (
                        user_id,
                        address,
                        address.rsplit("@", 1)[-1] if "@" in address else None,
                        topics_json,
                        relationship,
                        now,
                        now,
                        topics_json,
                    ),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("sender_override_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to record override for sender: {e}") from e

    async def set_sender_vip(self, user_id: str, address: str, is_vip: bool, reason: str | None = None) -> None:
        address = address.lower()
        now = _iso(_now())
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO sender_profiles (user_id, address, domain, is_vip, vip_reason, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, address) DO UPDATE SET
                        is_vip = excluded.is_vip,
                        vip_reason = excluded.vip_reason,
                        updated_at = excluded.updated_at
                    """,
                    (
                        user_id,
                        address,
                        address.rsplit("@", 1)[-1] if "@" in address else None,
                        int(is_vip),
                        reason if is_vip else None,
                        now,
                        now,
                    ),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to update VIP flag: {e}") from e

    async def set_sender_relationship(self, user_id: str, address: str, relationship: str | None) -> None:
        """Manually set (or clear) a relationship; inference never overwrites it afterwards."""
        address = address.lower()
        now = _iso(_now())
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO sender_profiles (
                        user_id, address, domain, relationship, relationship_manual, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, 1, ?, ?)
                    ON CONFLICT(user_id, address) DO UPDATE SET
                        relationship = excluded.relationship,
                        relationship_manual = 1,
                        updated_at = excluded.updated_at
                    """,
                    (
                        user_id,
                        address,
                        address.rsplit("@", 1)[-1] if "@" in address else None,
                        relationship,
                        now,
                        now,
                    ),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to update sender relationship: {e}") from e

    async def count_high_priority_overrides(self, user_id: str, address: str, max_priority: int = 2) -> int:
        """Overridden classifications from a sender that the user set to <= max_priority."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT COUNT(*) FROM classifications c
                    JOIN emails e ON e.id = c.email_id
                    WHERE c.user_id = ? AND e.from_address = ?
                      AND c.user_override = 1 AND c.priority <= ?
                    """,
                    (user_id, address.lower(), max_priority),
                )
                return (await cursor.fetchone())[0]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to count high-priority overrides: {e}") from e

    def _row_to_sender_profile(self, row: aiosqlite.Row) -> SenderProfile:
        return SenderProfile(
            user_id=row["user_id"],
            address=row["address"],
            display_name=row["display_name"],
            domain=row["domain"],
            total_emails=row["total_emails"] or 0,
            first_email_at=_parse_dt(row["first_email_at"]),
            last_email_at=_parse_dt(row["last_email_at"]),
            relationship=row["relationship"],
            relationship_manual=bool(row["relationship_manual"]),
            is_vip=bool(row["is_vip"]),
            vip_reason=row["vip_reason"],
            recent_window_start=_parse_dt(row["recent_window_start"]),
            recent_email_count=row["recent_email_count"] or 0,
            avg_response_time_hours=row["avg_response_time_hours"],
            override_count=row["override_count"] or 0,
            topics=_loads(row["topics_json"], []),
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )

    # =========================================================================
    # User rules
    # =========================================================================

    async def create_rule(
        self,
        user_id: str,
        name: str,
        *,
        sender_pattern: str | None = None,
        subject_contains: str | None = None,
        is_mailing_list: bool | None = None,
        has_attachments: bool | None = None,
        category: str | None = None,
        priority: int | None = None,
        needs_reply: bool | None = None,
        mark_handled: bool = False,
        is_active: bool = True,
    ) -> UserRule:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO user_rules (
                        user_id, name, sender_pattern, subject_contains, is_mailing_list,
                        has_attachments, category, priority, needs_reply, mark_handled,
                        is_active, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        name,
                        sender_pattern,
                        subject_contains,
                        _int_or_none(is_mailing_list),
                        _int_or_none(has_attachments),
                        category,
                        priority,
                        _int_or_none(needs_reply),
                        int(mark_handled),
                        int(is_active),
                        _iso(_now()),
                    ),
                )
                await db.commit()
                rule_id = cursor.lastrowid
        except aiosqlite.Error as e:
            logger.error("rule_create_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to create rule '{name}': {e}") from e

        logger.info("rule_created", user_id=user_id, rule_id=rule_id, name=name)
        rule = await self.get_rule(rule_id)
        assert rule is not None
        return rule

    async def get_rule(self, rule_id: int) -> UserRule | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM user_rules WHERE id = ?", (rule_id,))
                row = await cursor.fetchone()
                return self._row_to_rule(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get rule {rule_id}: {e}") from e

    async def get_rules(self, user_id: str, active_only: bool = True) -> list[UserRule]:
        """Rules of a user in evaluation order (oldest first)."""
        query = "SELECT * FROM user_rules WHERE user_id = ?"
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY created_at, id"
        try:
            async with self._db() as db:
                cursor = await db.execute(query, (user_id,))
                return [self._row_to_rule(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            logger.error("rules_get_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to get rules: {e}") from e

    async def update_rule(self, rule_id: int, changes: dict[str, Any]) -> UserRule | None:
        """Update rule fields; booleans may be set to None (= any)."""
        allowed = {
            "name",
            "sender_pattern",
            "subject_contains",
            "is_mailing_list",
            "has_attachments",
            "category",
            "priority",
            "needs_reply",
            "mark_handled",
            "is_active",
        }
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Unknown rule field(s): {', '.join(sorted(unknown))}")
        if changes:
            assignments = ", ".join(f"{name} = ?" for name in changes)
            values = [int(v) if isinstance(v, bool) else v for v in changes.values()]
            try:
                async with self._db() as db:
                    await db.execute(
                        f"UPDATE user_rules SET {assignments} WHERE id = ?",
                        (*values, rule_id),
                    )
                    await db.commit()
            except aiosqlite.Error as e:
                raise DatabaseError(f"Failed to update rule {rule_id}: {e}") from e
        return await self.get_rule(rule_id)

    async def delete_rule(self, rule_id: int) -> bool:
        try:
            async with self._db() as db:
                cursor = await db.execute("DELETE FROM user_rules WHERE id = ?", (rule_id,))
                await db.commit()
                return cursor.rowcount > 0
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to delete rule {rule_id}: {e}") from e

    def _row_to_rule(self, row: aiosqlite.Row) -> UserRule:
        return UserRule(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            sender_pattern=row["sender_pattern"],
            subject_contains=row["subject_contains"],
            is_mailing_list=_bool_or_none(row["is_mailing_list"]),
            has_attachments=_bool_or_none(row["has_attachments"]),
            category=row["category"],
            priority=row["priority"],
            needs_reply=_bool_or_none(row["needs_reply"]),
            mark_handled=bool(row["mark_handled"]),
            is_active=bool(row["is_active"]),
            created_at=_parse_dt(row["created_at"]),
        )

    # =========================================================================
    # Agent runs
    # =========================================================================

    async def create_run(self, user_id: str, trigger: RunTrigger, run_id: str | None = None) -> AgentRun:
        run = AgentRun(
            id=run_id or uuid.uuid4().hex,
            user_id=user_id,
            trigger=trigger,
            status="running",
            started_at=_now(),
        )
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO agent_runs (id, user_id, trigger, status, started_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (run.id, user_id, trigger, run.status, _iso(run.started_at)),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("run_create_failed", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to create run for user {user_id}: {e}") from e
        return run

    async def get_run(self, run_id: str) -> AgentRun | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM agent_runs WHERE id = ?", (run_id,))
                row = await cursor.fetchone()
                return self._row_to_run(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get run {run_id}: {e}") from e

    async def get_recent_runs(self, user_id: str | None = None, limit: int = 20) -> list[AgentRun]:
        query = "SELECT * FROM agent_runs"
        params: list[Any] = []
        if user_id:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " ORDER BY started_at DESC LIMIT ?"
        params.append(limit)
        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                return [self._row_to_run(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get recent runs: {e}") from e

    async def update_run_progress(
        self,
        run_id: str,
        *,
        fetched: int | None = None,
        classified: int | None = None,
        failed: int | None = None,
    ) -> None:
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE agent_runs SET
                        emails_fetched = COALESCE(?, emails_fetched),
                        emails_classified = COALESCE(?, emails_classified),
                        emails_failed = COALESCE(?, emails_failed)
                    WHERE id = ?
                    """,
                    (fetched, classified, failed, run_id),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to update run {run_id}: {e}") from e

    async def finish_run(
        self,
        run_id: str,
        status: RunStatus,
        *,
        classified: int | None = None,
        failed: int | None = None,
        error_message: str | None = None,
    ) -> None:
        """Move a running run to its terminal status."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE agent_runs SET
                        status = ?,
                        emails_classified = COALESCE(?, emails_classified),
                        emails_failed = COALESCE(?, emails_failed),
                        error_message = ?,
                        completed_at = ?
                    WHERE id = ? AND status = 'running'
                    """,
                    (status, classified, failed, error_message, _iso(_now()), run_id),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("run_finish_failed", run_id=run_id, error=str(e))
            raise DatabaseError(f"Failed to finish run {run_id}: {e}") from e

    async def get_running_runs(self, user_id: str) -> list[AgentRun]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM agent_runs WHERE user_id = ? AND status = 'running' ORDER BY started_at",
                    (user_id,),
                )
                return [self._row_to_run(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get running runs: {e}") from e

    async def fail_stale_runs(self, user_id: str, started_before: datetime, message: str) -> int:
        """Mark runs still 'running' that started before the cutoff as failed."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE agent_runs
                    SET status = 'failed', error_message = ?, completed_at = ?
                    WHERE user_id = ? AND status = 'running' AND started_at < ?
                    """,
                    (message, _iso(_now()), user_id, _iso(started_before)),
                )
                await db.commit()
                return cursor.rowcount
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to expire stale runs: {e}") from e

    def _row_to_run(self, row: aiosqlite.Row) -> AgentRun:
        return AgentRun(
            id=row["id"],
            user_id=row["user_id"],
            trigger=row["trigger"],
            status=row["status"],
            emails_fetched=row["emails_fetched"] or 0,
            emails_classified=row["emails_classified"] or 0,
            emails_failed=row["emails_failed"] or 0,
            error_message=row["error_message"],
            started_at=_parse_dt(row["started_at"]),
            completed_at=_parse_dt(row["completed_at"]),
        )

    # =========================================================================
    # Sync leases
    # =========================================================================

    async def acquire_sync_lease(
        self,
        account_id: str,
        owner_id: str,
        ttl_seconds: int,
        now: datetime | None = None,
    ) -> bool:
        """Take (or renew) the advisory sync lease of an account.

        Succeeds when there is no lease, the lease expired, or the caller
        already owns it.
        """
        now = now or _now()
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO sync_leases (account_id, owner_id, expires_at) VALUES (?, ?, ?)
                    ON CONFLICT(account_id) DO UPDATE SET
                        owner_id = excluded.owner_id,
                        expires_at = excluded.expires_at
                    WHERE sync_leases.expires_at < ? OR sync_leases.owner_id = excluded.owner_id
                    """,
                    (account_id, owner_id, _iso(now + timedelta(seconds=ttl_seconds)), _iso(now)),
                )
                await db.commit()
                cursor = await db.execute("SELECT owner_id FROM sync_leases WHERE account_id = ?", (account_id,))
                row = await cursor.fetchone()
                return row is not None and row["owner_id"] == owner_id
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to acquire sync lease for account {account_id}: {e}") from e

    async def release_sync_lease(self, account_id: str, owner_id: str) -> None:
        try:
            async with self._db() as db:
                await db.execute(
                    "DELETE FROM sync_leases WHERE account_id = ? AND owner_id = ?",
                    (account_id, owner_id),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to release sync lease for account {account_id}: {e}") from e

    # =========================================================================
    # LLM request log
    # =========================================================================

    async def log_llm_request(
        self,
        task_type: str,
        model: str,
        prompt: dict[str, Any],
        response: dict[str, Any] | None = None,
        tool_call: dict[str, Any] | None = None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        duration_ms: int | None = None,
        email_count: int | None = None,
        error: str | None = None,
    ) -> int:
        """Log an LLM request for debugging; returns the log entry id."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO llm_request_log (
                        timestamp, task_type, model, run_id, email_count,
                        prompt_json, response_json, tool_call_json,
                        input_tokens, output_tokens, duration_ms, error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        _iso(_now()),
                        task_type,
                        model,
                        get_correlation_id(),
                        email_count,
                        _dumps(prompt),
                        _dumps(response) if response else None,
                        _dumps(tool_call) if tool_call else None,
                        input_tokens,
                        output_tokens,
                        duration_ms,
                        error,
                    ),
                )
                await db.commit()
                return cursor.lastrowid
        except aiosqlite.Error as e:
            logger.error("llm_log_insert_failed", task_type=task_type, error=str(e))
            raise DatabaseError(f"Failed to log LLM request: {e}") from e

    async def get_llm_logs(self, limit: int = 100, run_id: str | None = None) -> list[LLMLogEntry]:
        query = "SELECT * FROM llm_request_log"
        params: list[Any] = []
        if run_id:
            query += " WHERE run_id = ?"
            params.append(run_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                return [
                    LLMLogEntry(
                        id=row["id"],
                        timestamp=_parse_dt(row["timestamp"]),
                        task_type=row["task_type"],
                        model=row["model"],
                        run_id=row["run_id"],
                        email_count=row["email_count"],
                        prompt_json=_loads(row["prompt_json"], None),
                        response_json=_loads(row["response_json"], None),
                        tool_call_json=_loads(row["tool_call_json"], None),
                        input_tokens=row["input_tokens"],
                        output_tokens=row["output_tokens"],
                        duration_ms=row["duration_ms"],
                        error=row["error"],
                    )
                    for row in await cursor.fetchall()
                ]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get LLM logs: {e}") from e

    async def prune_llm_logs(self, retention_days: int) -> int:
        """Delete LLM logs older than the retention period."""
        cutoff = _now() - timedelta(days=retention_days)
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "DELETE FROM llm_request_log WHERE timestamp < ?",
                    (_iso(cutoff),),
                )
                await db.commit()
                deleted = cursor.rowcount
                if deleted:
                    logger.info("llm_logs_pruned", deleted=deleted, retention_days=retention_days)
                return deleted
        except aiosqlite.Error as e:
            logger.error("llm_log_prune_failed", error=str(e))
            raise DatabaseError(f"Failed to prune LLM logs: {e}") from e
