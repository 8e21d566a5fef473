"""Mail sources: the sync interface and the local mailbox implementation."""

from __future__ import annotations

from typing import TYPE_CHECKING

from inbox_triage.config_schema import SourcesConfig
from inbox_triage.core.errors import MailSourceError
from inbox_triage.sources.base import MailSource, SourceFactory, SyncResult
from inbox_triage.sources.mailbox import SUPPORTED_PROVIDERS, LocalMailboxSource, normalize_message

if TYPE_CHECKING:
    from inbox_triage.db.store import Account


def default_source_factory(config: SourcesConfig | None = None) -> SourceFactory:
    """Factory that maps an account's provider to its source."""
    local = LocalMailboxSource(config)

    def factory(account: Account) -> MailSource:
        if account.provider in SUPPORTED_PROVIDERS:
            return local
        raise MailSourceError(f"No mail source for provider '{account.provider}'", account_id=account.id)

    return factory


__all__ = [
    "LocalMailboxSource",
    "MailSource",
    "SourceFactory",
    "SUPPORTED_PROVIDERS",
    "SyncResult",
    "default_source_factory",
    "normalize_message",
]
