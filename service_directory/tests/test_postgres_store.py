"""
Unit tests for the PostgreSQL account store.
"""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_directory.app.auth.models import UserAccount
from service_directory.app.auth.postgres import PostgresAccountStore, _updated_rows
from shared.errors import ValidationError

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def conn():
    return AsyncMock()


@pytest.fixture
def store(conn):
    store = PostgresAccountStore("postgres://localhost:5432/directory")
    store.pool = MagicMock()
    store.pool.acquire.return_value.__aenter__.return_value = conn
    return store


def account_row(**overrides):
    row = {
        "id": "user1",
        "username": "aminah",
        "email": "aminah@dekat.example",
        "password_hash": "$pbkdf2-sha256$hash",
        "email_confirmed": True,
        "lockout_enabled": True,
        "access_failed_count": 2,
        "lockout_end": None,
        "refresh_token": "secret",
        "refresh_token_expiry": NOW + timedelta(days=7),
        "last_login": NOW,
        "created_at": NOW - timedelta(days=30),
        "roles": ["user", "reviewer"],
        "claims": json.dumps([["locale", "ms-MY"]]),
    }
    row.update(overrides)
    return row


class TestPostgresAccountStore:
    """Test cases for PostgresAccountStore."""

    @pytest.mark.asyncio
    async def test_get_by_email_maps_row(self, store, conn):
        conn.fetchrow.return_value = account_row()

        account = await store.get_by_email(" Aminah@dekat.example ")

        assert account.id == "user1"
        assert account.roles == ["user", "reviewer"]
        assert account.claims == [("locale", "ms-MY")]
        assert account.access_failed_count == 2
        query, email = conn.fetchrow.await_args.args
        assert "LOWER(email) = LOWER($1)" in query
        assert email == "Aminah@dekat.example"

    @pytest.mark.asyncio
    async def test_get_by_id_missing(self, store, conn):
        conn.fetchrow.return_value = None

        assert await store.get_by_id("ghost") is None

    @pytest.mark.asyncio
    async def test_add_duplicate_email(self, store, conn):
        conn.execute.side_effect = asyncpg.UniqueViolationError("duplicate key value")
        account = UserAccount(id="user2", username="copy", email="aminah@dekat.example", password_hash="x")

        with pytest.raises(ValidationError):
            await store.add(account)

    @pytest.mark.asyncio
    async def test_get_role_claims(self, store, conn):
        conn.fetch.return_value = [{"claim_type": "permission", "claim_value": "review:write"}]

        assert await store.get_role_claims("reviewer") == [("permission", "review:write")]

    @pytest.mark.asyncio
    async def test_record_access_failure_reports_lockout(self, store, conn):
        lockout_end = NOW + timedelta(minutes=5)
        conn.fetchrow.return_value = {"lockout_end": lockout_end}

        assert await store.record_access_failure("user1", 5, lockout_end) == lockout_end

        query = conn.fetchrow.await_args.args[0]
        assert "access_failed_count + 1 >= $2" in query

    @pytest.mark.asyncio
    async def test_record_access_failure_below_threshold(self, store, conn):
        conn.fetchrow.return_value = {"lockout_end": None}

        assert await store.record_access_failure("user1", 5, NOW + timedelta(minutes=5)) is None

    @pytest.mark.asyncio
    async def test_rotate_is_conditional_on_current_secret(self, store, conn):
        conn.execute.return_value = "UPDATE 1"

        rotated = await store.rotate_refresh_token("user1", "old", "new", NOW + timedelta(days=7), NOW)

        assert rotated is True
        query, *params = conn.execute.await_args.args
        assert "AND refresh_token = $2" in query
        assert "AND refresh_token_expiry > $5" in query
        assert params == ["user1", "old", "new", NOW + timedelta(days=7), NOW]

    @pytest.mark.asyncio
    async def test_rotate_lost_race(self, store, conn):
        conn.execute.return_value = "UPDATE 0"

        assert await store.rotate_refresh_token("user1", "old", "new", NOW, NOW) is False

    @pytest.mark.asyncio
    async def test_revoke_unknown_user(self, store, conn):
        conn.execute.return_value = "UPDATE 0"

        assert await store.revoke_refresh_token("ghost", NOW) is False

    @pytest.mark.asyncio
    async def test_record_successful_login(self, store, conn):
        conn.execute.return_value = "UPDATE 1"

        assert await store.record_successful_login("user1", "secret", NOW + timedelta(days=7), NOW) is True


def test_updated_rows():
    assert _updated_rows("UPDATE 3") == 3
    assert _updated_rows("UPDATE 0") == 0
    assert _updated_rows(None) == 0
    assert _updated_rows("") == 0
