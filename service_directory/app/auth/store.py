"""
Account storage for the token lifecycle.

Every mutation the token lifecycle needs is a single store call so that
backends can make it atomic per account (a lock in memory, a single
conditional UPDATE in PostgreSQL).
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from shared.errors import ValidationError
from shared.logging import get_logger
from .models import Claim, UserAccount


class AccountStore(ABC):
    """Backing store for user accounts."""

    async def start(self) -> None:
        """Open connections. No-op by default."""

    async def stop(self) -> None:
        """Release connections. No-op by default."""

    @abstractmethod
    async def get_by_id(self, user_id: str) -> Optional[UserAccount]:
        ...

    @abstractmethod
    async def get_by_email(self, email: str) -> Optional[UserAccount]:
        ...

    @abstractmethod
    async def add(self, account: UserAccount) -> UserAccount:
        ...

    @abstractmethod
    async def get_role_claims(self, role: str) -> List[Claim]:
        ...

    @abstractmethod
    async def record_access_failure(self, user_id: str, max_attempts: int,
                                    lockout_end: datetime) -> Optional[datetime]:
        """Count a failed sign-in.

        When the count reaches ``max_attempts`` on a lockout-enabled account
        the account is locked until ``lockout_end`` and the count resets.
        Returns the lockout end if this failure triggered a lockout.
        """

    @abstractmethod
    async def record_successful_login(self, user_id: str, refresh_token: str,
                                      refresh_token_expiry: datetime, now: datetime) -> bool:
        """Reset the failure count and lockout, stamp last login and store the refresh secret."""

    @abstractmethod
    async def rotate_refresh_token(self, user_id: str, expected: str, new_token: str,
                                   new_expiry: datetime, now: datetime) -> bool:
        """Replace the refresh secret only if it still equals ``expected`` and has not expired."""

    @abstractmethod
    async def revoke_refresh_token(self, user_id: str, now: datetime) -> bool:
        """Null the refresh secret. False when the account does not exist."""


class InMemoryAccountStore(AccountStore):
    """Process-local account store.

    Reads hand out copies, so callers can only change stored state through
    the store methods, all of which run under one lock.
    """

    def __init__(self):
        self._accounts: Dict[str, UserAccount] = {}
        self._email_index: Dict[str, str] = {}
        self._role_claims: Dict[str, List[Claim]] = {}
        self._lock = asyncio.Lock()
        self.logger = get_logger("directory.accounts.memory")

    async def get_by_id(self, user_id: str) -> Optional[UserAccount]:
        account = self._accounts.get(user_id)
        return copy.deepcopy(account) if account else None

    async def get_by_email(self, email: str) -> Optional[UserAccount]:
        user_id = self._email_index.get(email.strip().lower())
        if user_id is None:
            return None
        return await self.get_by_id(user_id)

    async def add(self, account: UserAccount) -> UserAccount:
        email_key = account.email.strip().lower()
        async with self._lock:
            if email_key in self._email_index:
                raise ValidationError("Email is already registered", details={"email": account.email})
            if account.id in self._accounts:
                raise ValidationError("Account id already exists", details={"user_id": account.id})
            self._accounts[account.id] = copy.deepcopy(account)
            self._email_index[email_key] = account.id

        self.logger.info("Account added", user_id=account.id)
        return copy.deepcopy(account)

    def set_role_claims(self, role: str, claims: List[Claim]) -> None:
        self._role_claims[role] = list(claims)

    async def get_role_claims(self, role: str) -> List[Claim]:
        return list(self._role_claims.get(role, []))

    async def record_access_failure(self, user_id: str, max_attempts: int,
                                    lockout_end: datetime) -> Optional[datetime]:
        async with self._lock:
            account = self._accounts.get(user_id)
            if account is None:
                return None

            account.access_failed_count += 1
            if account.lockout_enabled and account.access_failed_count >= max_attempts:
                account.lockout_end = lockout_end
                account.access_failed_count = 0
                return lockout_end
            return None

    async def record_successful_login(self, user_id: str, refresh_token: str,
                                      refresh_token_expiry: datetime, now: datetime) -> bool:
        async with self._lock:
            account = self._accounts.get(user_id)
            if account is None:
                return False

            account.access_failed_count = 0
            account.lockout_end = None
            account.last_login = now
            account.refresh_token = refresh_token
            account.refresh_token_expiry = refresh_token_expiry
            return True

    async def rotate_refresh_token(self, user_id: str, expected: str, new_token: str,
                                   new_expiry: datetime, now: datetime) -> bool:
        async with self._lock:
            account = self._accounts.get(user_id)
            if account is None or account.refresh_token != expected:
                return False
            if account.refresh_token_expiry is None or account.refresh_token_expiry <= now:
                return False

            account.refresh_token = new_token
            account.refresh_token_expiry = new_expiry
            return True

    async def revoke_refresh_token(self, user_id: str, now: datetime) -> bool:
        async with self._lock:
            account = self._accounts.get(user_id)
            if account is None:
                return False

            account.refresh_token = None
            account.refresh_token_expiry = now
            return True
