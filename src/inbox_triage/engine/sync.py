"""Account sync: pull new mail from every active account into the store.

Exclusivity per account is two-layered:
- an in-process set of accounts currently syncing (same process)
- an advisory lease row in the store (owner id + expiry) for other processes

Neither is a distributed lock. Email upserts are keyed by
(account, external id), so a lost race only repeats work.

Usage:
    from inbox_triage.engine.sync import AccountSyncer

    syncer = AccountSyncer(store, source_factory, config)
    summary = await syncer.sync_user(user_id)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from inbox_triage.core.errors import DatabaseError, InvalidCursorError, MailSourceError, SyncError
from inbox_triage.core.logging import get_logger

if TYPE_CHECKING:
    from inbox_triage.config_schema import AppConfig
    from inbox_triage.db.store import Account, DatabaseStore
    from inbox_triage.sources.base import SourceFactory

logger = get_logger(__name__)

# Accounts syncing in this process
_active_accounts: set[str] = set()


@dataclass
class SyncSummary:
    """Outcome of syncing all of a user's accounts."""

    accounts: int = 0
    fetched: int = 0
    skipped_accounts: list[str] = field(default_factory=list)
    failed_accounts: dict[str, str] = field(default_factory=dict)


class AccountSyncer:
    """Syncs a user's accounts through their mail sources."""

    def __init__(
        self,
        store: DatabaseStore,
        source_factory: SourceFactory,
        config: AppConfig,
        owner_id: str | None = None,
    ):
        self._store = store
        self._source_factory = source_factory
        self._config = config
        self._owner_id = owner_id or f"syncer-{uuid.uuid4().hex[:12]}"

    def update_config(self, config: AppConfig) -> None:
        self._config = config

    async def sync_user(self, user_id: str) -> SyncSummary:
        """Sync every active account of a user.

        One failing account does not stop the others.

        Raises:
            SyncError: If the user has accounts and every one of them failed
        """
        accounts = await self._store.get_active_accounts(user_id)
        summary = SyncSummary(accounts=len(accounts))

        for account in accounts:
            try:
                fetched = await self.sync_account(account)
            except (MailSourceError, DatabaseError) as e:
                logger.error(
                    "account_sync_failed",
                    account_id=account.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                summary.failed_accounts[account.id] = str(e)
                continue
            if fetched is None:
                summary.skipped_accounts.append(account.id)
            else:
                summary.fetched += fetched

        if accounts and len(summary.failed_accounts) == len(accounts):
            details = "; ".join(f"{aid}: {msg}" for aid, msg in summary.failed_accounts.items())
            raise SyncError(f"All {len(accounts)} account(s) failed to sync. {details}")

        logger.info(
            "user_sync_complete",
            user_id=user_id,
            accounts=summary.accounts,
            fetched=summary.fetched,
            skipped=len(summary.skipped_accounts),
            failed=len(summary.failed_accounts),
        )
        return summary

    async def sync_account(self, account: Account) -> int | None:
        """Sync one account.

        Returns:
            Number of emails stored, or None if another sync holds the account
        """
        if account.id in _active_accounts:
            logger.info("account_sync_skipped", account_id=account.id, reason="in_process")
            return None
        lease_ttl = self._config.pipeline.sync_lease_seconds
        if not await self._store.acquire_sync_lease(account.id, self._owner_id, lease_ttl):
            logger.info("account_sync_skipped", account_id=account.id, reason="lease_held")
            return None

        _active_accounts.add(account.id)
        try:
            source = self._source_factory(account)
            window_days = self._config.pipeline.full_sync_window_days
            cursor_rejected = False
            try:
                result = await source.sync(account, account.sync_cursor, window_days=window_days)
            except InvalidCursorError as e:
                logger.warning("sync_cursor_rejected", account_id=account.id, error=str(e))
                cursor_rejected = True
                result = await source.sync(account, None, window_days=window_days)

            stored = await self._store.save_emails(account, result.emails)
            await self._store.update_account_sync(
                account.id,
                result.new_cursor,
                replace_cursor=cursor_rejected,
            )
            logger.info(
                "account_synced",
                account_id=account.id,
                stored=stored,
                full_sync=result.full_sync,
            )
            return stored
        finally:
            _active_accounts.discard(account.id)
            try:
                await self._store.release_sync_lease(account.id, self._owner_id)
            except DatabaseError as e:
                # Lease expires on its own
                logger.warning("sync_lease_release_failed", account_id=account.id, error=str(e))
