"""Mail source interface.

A mail source turns a provider mailbox into NormalizedEmail records. The
pipeline only talks to this interface; provider wire protocols live behind
it.

Cursor semantics:
- cursor given: incremental sync of everything newer than the cursor
- cursor None: bounded-window sync (the last `window_days` days)
- cursor rejected: raise InvalidCursorError; the caller retries with None
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from inbox_triage.models import NormalizedEmail

if TYPE_CHECKING:
    from inbox_triage.db.store import Account


@dataclass(slots=True)
class SyncResult:
    """Result of one account sync.

    Attributes:
        emails: Messages found, oldest first
        new_cursor: Cursor for the next incremental sync (None keeps the old one)
        full_sync: True when the bounded-window mode was used
    """

    emails: list[NormalizedEmail] = field(default_factory=list)
    new_cursor: str | None = None
    full_sync: bool = False


@runtime_checkable
class MailSource(Protocol):
    """Anything that can sync an account."""

    async def sync(
        self,
        account: Account,
        cursor: str | None,
        *,
        window_days: int = 30,
    ) -> SyncResult: ...


# Builds the source for an account (chosen by provider)
SourceFactory = Callable[["Account"], MailSource]
