"""SQLite database schema and initialization for the triage engine.

Tables:
- users: Triage users, company domains and auto-action settings
- accounts: Mail accounts per user with their sync cursors
- emails: Normalized messages (immutable once stored, apart from flags)
- classifications: One classification per email (upsert)
- classification_history: Append-only audit log of classification writes
- sender_profiles: Per-(user, sender) intelligence
- user_rules: User-authored rules that bypass the model
- agent_runs: Pipeline run status records
- sync_leases: Advisory per-account sync leases
- llm_request_log: Claude API call logging for debugging

Usage:
    from inbox_triage.db.models import init_database

    await init_database("data/triage.db")
"""

import stat
from pathlib import Path

import aiosqlite

from inbox_triage.core.errors import DatabaseError
from inbox_triage.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    display_name TEXT,
    company_domains_json TEXT DEFAULT '[]',
    auto_handle_min_priority INTEGER,           -- Mark handled when priority >= this
    auto_handle_categories_json TEXT DEFAULT '[]',
    created_at DATETIME
);

CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    provider TEXT NOT NULL,                     -- 'maildir', 'mbox'
    address TEXT NOT NULL,
    source_path TEXT,
    sync_cursor TEXT,
    is_active INTEGER DEFAULT 1,
    last_sync_at DATETIME,
    created_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_accounts_user ON accounts(user_id);

CREATE TABLE IF NOT EXISTS emails (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES accounts(id),
    user_id TEXT NOT NULL,
    external_id TEXT NOT NULL,
    thread_id TEXT,
    from_address TEXT NOT NULL,
    from_name TEXT,
    to_json TEXT DEFAULT '[]',
    cc_json TEXT DEFAULT '[]',
    subject TEXT,
    snippet TEXT,
    body_text TEXT,
    body_html TEXT,
    received_at DATETIME NOT NULL,
    is_read INTEGER DEFAULT 0,
    has_attachments INTEGER DEFAULT 0,
    attachments_json TEXT DEFAULT '[]',
    labels_json TEXT DEFAULT '[]',
    is_mailing_list INTEGER DEFAULT 0,
    list_id TEXT,
    created_at DATETIME,
    UNIQUE(account_id, external_id)
);

CREATE INDEX IF NOT EXISTS idx_emails_user_received ON emails(user_id, received_at DESC);
CREATE INDEX IF NOT EXISTS idx_emails_thread ON emails(account_id, thread_id, received_at DESC);
CREATE INDEX IF NOT EXISTS idx_emails_sender ON emails(user_id, from_address);

CREATE TABLE IF NOT EXISTS classifications (
    email_id TEXT PRIMARY KEY REFERENCES emails(id),
    user_id TEXT NOT NULL,
    priority INTEGER NOT NULL CHECK (priority BETWEEN 1 AND 5),
    category TEXT NOT NULL,
    needs_reply INTEGER DEFAULT 0,
    needs_approval INTEGER DEFAULT 0,
    is_thread_active INTEGER DEFAULT 0,
    action_items_json TEXT DEFAULT '[]',
    deadline DATETIME,
    summary TEXT,
    confidence REAL NOT NULL CHECK (confidence BETWEEN 0 AND 1),
    topics_json TEXT DEFAULT '[]',
    sentiment TEXT DEFAULT 'neutral',
    classifier_version TEXT NOT NULL,
    user_override INTEGER DEFAULT 0,            -- 1 once the user corrected it; automated writes skip
    handled INTEGER DEFAULT 0,
    handled_at DATETIME,
    thread_resolved INTEGER DEFAULT 0,
    snoozed_until DATETIME,
    classified_at DATETIME,
    updated_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_classifications_user ON classifications(user_id, classified_at DESC);

CREATE TABLE IF NOT EXISTS classification_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    priority INTEGER,
    category TEXT,
    confidence REAL,
    classifier_version TEXT,
    reason TEXT NOT NULL,                       -- 'initial', 'user-rule', 'fallback', 'hot-thread', 'user-override', 'auto-action'
    previous_priority INTEGER,
    previous_category TEXT,
    run_id TEXT,
    created_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_history_email ON classification_history(email_id);
CREATE INDEX IF NOT EXISTS idx_history_user_reason ON classification_history(user_id, reason, created_at);

CREATE TABLE IF NOT EXISTS sender_profiles (
    user_id TEXT NOT NULL,
    address TEXT NOT NULL,
    display_name TEXT,
    domain TEXT,
    total_emails INTEGER DEFAULT 0,
    first_email_at DATETIME,
    last_email_at DATETIME,
    relationship TEXT,                          -- 'internal', 'automated', 'colleague', 'newsletter', 'manager', NULL
    relationship_manual INTEGER DEFAULT 0,      -- 1 when set by the user; inference never overwrites
    is_vip INTEGER DEFAULT 0,
    vip_reason TEXT,
    recent_window_start DATETIME,
    recent_email_count INTEGER DEFAULT 0,
    avg_response_time_hours REAL,
    override_count INTEGER DEFAULT 0,
    topics_json TEXT DEFAULT '[]',
    created_at DATETIME,
    updated_at DATETIME,
    PRIMARY KEY (user_id, address)
);

CREATE TABLE IF NOT EXISTS user_rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    sender_pattern TEXT,
    subject_contains TEXT,
    is_mailing_list INTEGER,                    -- NULL = any
    has_attachments INTEGER,                    -- NULL = any
    category TEXT,
    priority INTEGER,
    needs_reply INTEGER,
    mark_handled INTEGER DEFAULT 0,
    is_active INTEGER DEFAULT 1,
    created_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_user_rules_user ON user_rules(user_id, is_active);

CREATE TABLE IF NOT EXISTS agent_runs (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    trigger TEXT NOT NULL,                      -- 'manual', 'cron'
    status TEXT NOT NULL,                       -- 'running', 'completed', 'failed'
    emails_fetched INTEGER DEFAULT 0,
    emails_classified INTEGER DEFAULT 0,
    emails_failed INTEGER DEFAULT 0,
    error_message TEXT,
    started_at DATETIME,
    completed_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_agent_runs_user_status ON agent_runs(user_id, status);

CREATE TABLE IF NOT EXISTS sync_leases (
    account_id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    expires_at DATETIME NOT NULL
);

CREATE TABLE IF NOT EXISTS llm_request_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    task_type TEXT,
    model TEXT,
    run_id TEXT,
    email_count INTEGER,
    prompt_json TEXT,
    response_json TEXT,
    tool_call_json TEXT,
    input_tokens INTEGER,
    output_tokens INTEGER,
    duration_ms INTEGER,
    error TEXT
);

CREATE INDEX IF NOT EXISTS idx_llm_log_timestamp ON llm_request_log(timestamp);
"""

REQUIRED_TABLES = (
    "users",
    "accounts",
    "emails",
    "classifications",
    "classification_history",
    "sender_profiles",
    "user_rules",
    "agent_runs",
    "sync_leases",
    "llm_request_log",
)


async def init_database(db_path: str | Path) -> None:
    """Initialize the database with the schema.

    Creates all tables and indexes if they don't exist, enables WAL mode
    and restricts the file to owner read/write.

    Args:
        db_path: Path to the SQLite database file

    Raises:
        DatabaseError: If initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            journal_mode = await db.execute("PRAGMA journal_mode")
            mode = await journal_mode.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "wal_mode_not_enabled",
                    requested="wal",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        # Owner read/write only; the database holds mail content
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "database_initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables=table_count,
        )

    except aiosqlite.Error as e:
        logger.error("database_init_failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Return True if every required table exists."""
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}
    except aiosqlite.Error as e:
        logger.error("schema_verification_failed", db_path=str(db_path), error=str(e))
        return False

    missing = set(REQUIRED_TABLES) - existing_tables
    if missing:
        logger.warning("database_tables_missing", missing=sorted(missing), db_path=str(db_path))
        return False
    return True
