"""
PostgreSQL account store for the Directory service.
"""

import json
from datetime import datetime
from typing import Any, List, Optional

import asyncpg

from shared.errors import DirectoryAccessException, ValidationError
from shared.logging import get_logger
from .models import Claim, UserAccount
from .store import AccountStore

_ACCOUNT_COLUMNS = """
    id, username, email, password_hash, email_confirmed, lockout_enabled,
    access_failed_count, lockout_end, refresh_token, refresh_token_expiry,
    last_login, created_at, roles, claims
"""


class PostgresAccountStore(AccountStore):
    """Account store backed by an asyncpg pool."""

    def __init__(self, dsn: str):
        self.dsn = dsn
        self.logger = get_logger("directory.accounts.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=30
            )
            await self._create_tables()
            self.logger.info("PostgreSQL account store started")

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL account store", error=str(e))
            raise DirectoryAccessException("POSTGRES_START_FAILED", str(e), status_code=503)

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL account store stopped")

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS user_accounts (
                    id VARCHAR(64) PRIMARY KEY,
                    username VARCHAR(256) NOT NULL,
                    email VARCHAR(256) NOT NULL,
                    password_hash TEXT NOT NULL,
                    email_confirmed BOOLEAN NOT NULL DEFAULT FALSE,
                    lockout_enabled BOOLEAN NOT NULL DEFAULT TRUE,
                    access_failed_count INTEGER NOT NULL DEFAULT 0,
                    lockout_end TIMESTAMP WITH TIME ZONE,
                    refresh_token TEXT,
                    refresh_token_expiry TIMESTAMP WITH TIME ZONE,
                    last_login TIMESTAMP WITH TIME ZONE,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    roles TEXT[] NOT NULL DEFAULT '{}',
                    claims JSONB NOT NULL DEFAULT '[]'
                );
            """)
            await conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_user_accounts_email
                ON user_accounts (LOWER(email));
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS role_claims (
                    role VARCHAR(256) NOT NULL,
                    claim_type VARCHAR(256) NOT NULL,
                    claim_value TEXT NOT NULL,
                    PRIMARY KEY (role, claim_type, claim_value)
                );
            """)

    def _row_to_account(self, row: Any) -> UserAccount:
        claims = row["claims"]
        if isinstance(claims, str):
            claims = json.loads(claims)

        return UserAccount(
            id=row["id"],
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            email_confirmed=row["email_confirmed"],
            lockout_enabled=row["lockout_enabled"],
            access_failed_count=row["access_failed_count"],
            lockout_end=row["lockout_end"],
            refresh_token=row["refresh_token"],
            refresh_token_expiry=row["refresh_token_expiry"],
            last_login=row["last_login"],
            created_at=row["created_at"],
            roles=list(row["roles"] or []),
            claims=[(c[0], c[1]) for c in claims or []],
        )

    async def get_by_id(self, user_id: str) -> Optional[UserAccount]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_ACCOUNT_COLUMNS} FROM user_accounts WHERE id = $1",
                user_id
            )
        return self._row_to_account(row) if row else None

    async def get_by_email(self, email: str) -> Optional[UserAccount]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_ACCOUNT_COLUMNS} FROM user_accounts WHERE LOWER(email) = LOWER($1)",
                email.strip()
            )
        return self._row_to_account(row) if row else None

    async def add(self, account: UserAccount) -> UserAccount:
        try:
            async with self.pool.acquire() as conn:
                await conn.execute("""
                    INSERT INTO user_accounts (
                        id, username, email, password_hash, email_confirmed, lockout_enabled,
                        access_failed_count, created_at, roles, claims
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                """,
                    account.id,
                    account.username,
                    account.email,
                    account.password_hash,
                    account.email_confirmed,
                    account.lockout_enabled,
                    account.access_failed_count,
                    account.created_at,
                    account.roles,
                    json.dumps([list(c) for c in account.claims]),
                )
        except asyncpg.UniqueViolationError as e:
            raise ValidationError("Email is already registered", details={"email": account.email}) from e

        self.logger.info("Account added", user_id=account.id)
        return account

    async def get_role_claims(self, role: str) -> List[Claim]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT claim_type, claim_value FROM role_claims WHERE role = $1",
                role
            )
        return [(row["claim_type"], row["claim_value"]) for row in rows]

    async def record_access_failure(self, user_id: str, max_attempts: int,
                                    lockout_end: datetime) -> Optional[datetime]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                UPDATE user_accounts SET
                    access_failed_count = CASE
                        WHEN lockout_enabled AND access_failed_count + 1 >= $2 THEN 0
                        ELSE access_failed_count + 1
                    END,
                    lockout_end = CASE
                        WHEN lockout_enabled AND access_failed_count + 1 >= $2 THEN $3
                        ELSE lockout_end
                    END
                WHERE id = $1
                RETURNING lockout_end
            """, user_id, max_attempts, lockout_end)

        if row is not None and row["lockout_end"] == lockout_end:
            return lockout_end
        return None

    async def record_successful_login(self, user_id: str, refresh_token: str,
                                      refresh_token_expiry: datetime, now: datetime) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE user_accounts SET
                    access_failed_count = 0,
                    lockout_end = NULL,
                    last_login = $4,
                    refresh_token = $2,
                    refresh_token_expiry = $3
                WHERE id = $1
            """, user_id, refresh_token, refresh_token_expiry, now)
        return _updated_rows(result) == 1

    async def rotate_refresh_token(self, user_id: str, expected: str, new_token: str,
                                   new_expiry: datetime, now: datetime) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE user_accounts SET
                    refresh_token = $3,
                    refresh_token_expiry = $4
                WHERE id = $1
                  AND refresh_token = $2
                  AND refresh_token_expiry > $5
            """, user_id, expected, new_token, new_expiry, now)
        return _updated_rows(result) == 1

    async def revoke_refresh_token(self, user_id: str, now: datetime) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute("""
                UPDATE user_accounts SET
                    refresh_token = NULL,
                    refresh_token_expiry = $2
                WHERE id = $1
            """, user_id, now)
        return _updated_rows(result) == 1


def _updated_rows(status: str) -> int:
    """Row count from an asyncpg command tag such as 'UPDATE 1'."""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0
