from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import ContextManager, Optional, Protocol

from stoneridge.config import Settings
from stoneridge.logging import get_logger
from stoneridge.service.clock import Clock
from stoneridge.service.errors import AccountLockedError, ResourceNotFoundError
from stoneridge.service.notifications import NotificationKind, NotificationSink, notify_safely
from stoneridge.storage.models import Account

logger = get_logger(__name__)

LOCKED_MESSAGE = "Account is locked due to too many failed attempts. Please try again later."


class LedgerStore(Protocol):
    def transaction(self) -> ContextManager[object]: ...

    def increment_failed_attempts(self, account_id: str) -> int: ...

    def lock_account_row(self, account_id: str) -> Optional[Account]: ...

    def save_account(self, account: Account) -> Account: ...


@dataclass(frozen=True)
class LockoutState:
    failed_attempts: int
    locked: bool
    remaining_attempts: int


class LockoutLedger:
    """Failed-attempt counters and lock windows on accounts.

    The counter is bumped with an atomic store increment so concurrent bad
    logins never lose an update. A lock set by the ledger carries a
    ``lock_time`` and clears lazily once ``lock_duration`` has passed; a lock
    set by an administrator has no ``lock_time`` and stays until unlocked.
    """

    def __init__(
        self,
        store: LedgerStore,
        settings: Settings,
        clock: Clock,
        notifier: NotificationSink,
    ) -> None:
        self.store = store
        self.clock = clock
        self.notifier = notifier
        self.max_failed_attempts = settings.max_failed_attempts
        self.lock_duration = timedelta(minutes=settings.lock_duration_minutes)

    def is_locked(self, account: Account, now: Optional[datetime] = None) -> bool:
        if not account.account_locked:
            return False
        return not self._lock_expired(account, now or self.clock.now())

    def _lock_expired(self, account: Account, now: datetime) -> bool:
        if account.lock_time is None:
            return False
        return now > account.lock_time + self.lock_duration

    def ensure_unlocked(self, account: Account) -> Account:
        """Raise ``AccountLockedError`` unless the account may attempt a login.

        An expired ledger lock is cleared here and the refreshed account is
        returned.
        """
        if not account.account_locked:
            return account
        now = self.clock.now()
        if not self._lock_expired(account, now):
            logger.info("login_rejected_locked", account_id=account.id)
            raise AccountLockedError(LOCKED_MESSAGE)
        with self.store.transaction():
            current = self.store.lock_account_row(account.id) or account
            current.account_locked = False
            current.failed_login_attempts = 0
            current.lock_time = None
            updated = self.store.save_account(current)
        logger.info("account_auto_unlocked", account_id=account.id)
        return updated

    def record_failure(self, account: Account) -> LockoutState:
        newly_locked = False
        with self.store.transaction():
            count = self.store.increment_failed_attempts(account.id)
            if count >= self.max_failed_attempts:
                current = self.store.lock_account_row(account.id)
                if current and not current.account_locked:
                    current.account_locked = True
                    current.lock_time = self.clock.now()
                    self.store.save_account(current)
                    newly_locked = True
        if newly_locked:
            logger.warning("account_locked", account_id=account.id, failed_attempts=count)
            notify_safely(
                self.notifier,
                account.email,
                NotificationKind.SECURITY_ALERT,
                {
                    "failed_attempts": count,
                    "lock_minutes": int(self.lock_duration.total_seconds() // 60),
                },
            )
        else:
            logger.info("login_failed", account_id=account.id, failed_attempts=count)
        return LockoutState(
            failed_attempts=count,
            locked=count >= self.max_failed_attempts,
            remaining_attempts=max(0, self.max_failed_attempts - count),
        )

    def record_success(self, account: Account, ip_address: Optional[str] = None) -> Account:
        with self.store.transaction():
            current = self.store.lock_account_row(account.id) or account
            current.failed_login_attempts = 0
            current.account_locked = False
            current.lock_time = None
            current.last_login_at = self.clock.now()
            current.last_login_ip = ip_address
            return self.store.save_account(current)

    def admin_lock(self, account_id: str) -> Account:
        with self.store.transaction():
            current = self.store.lock_account_row(account_id)
            if not current:
                raise ResourceNotFoundError("Account not found")
            current.account_locked = True
            current.lock_time = None
            updated = self.store.save_account(current)
        logger.warning("account_locked_by_admin", account_id=account_id)
        return updated

    def admin_unlock(self, account_id: str) -> Account:
        with self.store.transaction():
            current = self.store.lock_account_row(account_id)
            if not current:
                raise ResourceNotFoundError("Account not found")
            current.account_locked = False
            current.failed_login_attempts = 0
            current.lock_time = None
            updated = self.store.save_account(current)
        logger.info("account_unlocked_by_admin", account_id=account_id)
        return updated
