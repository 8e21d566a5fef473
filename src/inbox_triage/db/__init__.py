"""Database layer for the triage engine.

SQLite access with async operations via aiosqlite.

Usage:
    from inbox_triage.db import DatabaseStore

    store = DatabaseStore("data/triage.db")
    await store.initialize()

    user = await store.save_user("u1", "me@example.com", company_domains=["example.com"])
    rules = await store.get_rules(user.id)
"""

from inbox_triage.db.models import SCHEMA_VERSION, init_database, verify_schema
from inbox_triage.db.store import (
    MAX_SNIPPET_LENGTH,
    Account,
    AgentRun,
    DatabaseStore,
    HistoryEntry,
    LLMLogEntry,
    SenderActivity,
    SenderProfile,
    StoredClassification,
    User,
    UserRule,
)

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "DatabaseStore",
    "MAX_SNIPPET_LENGTH",
    # Records
    "Account",
    "AgentRun",
    "HistoryEntry",
    "LLMLogEntry",
    "SenderActivity",
    "SenderProfile",
    "StoredClassification",
    "User",
    "UserRule",
]
