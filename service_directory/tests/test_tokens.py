"""
Unit tests for access token minting and verification.
"""

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_directory.app.auth.denylist import InMemoryTokenDenylist
from service_directory.app.auth.models import UserAccount
from service_directory.app.auth.service import token_expiry
from service_directory.app.auth.tokens import TokenIssuer, user_info_from_claims
from shared.config import JwtSettings
from shared.errors import InvalidTokenError
from shared.test_helpers import FakeUtcClock, MockTokenGenerator, test_data_factory

SECRET = "test-signing-secret-0123456789abcdef"


@pytest.fixture
def settings():
    return JwtSettings(secret=SECRET)


@pytest.fixture
def denylist():
    return InMemoryTokenDenylist()


@pytest.fixture
def issuer(settings, denylist):
    return TokenIssuer(settings, denylist)


@pytest.fixture
def account():
    return UserAccount(id="user1", username="aminah", email="aminah@dekat.example", password_hash="unused")


@pytest.fixture
def sample_user():
    return test_data_factory.create_test_users()[0]


class TestTokenIssuer:
    """Test cases for TokenIssuer."""

    def test_access_token_claims(self, issuer, settings, account):
        token, claims = issuer.create_access_token(account, ["user", "reviewer"])

        decoded = jwt.decode(token, SECRET, algorithms=["HS256"], audience=settings.audience)
        assert decoded == claims
        assert decoded["sub"] == "user1"
        assert decoded["name"] == "aminah"
        assert decoded["email"] == "aminah@dekat.example"
        assert decoded["iss"] == "directory-api"
        assert decoded["aud"] == "directory-clients"
        assert decoded["roles"] == ["user", "reviewer"]
        assert decoded["exp"] - decoded["iat"] == 60 * 60
        assert decoded["jti"]

    def test_each_token_has_unique_id(self, issuer, account):
        _, first = issuer.create_access_token(account, [])
        _, second = issuer.create_access_token(account, [])
        assert first["jti"] != second["jti"]

    def test_extra_claims_are_merged(self, issuer, account):
        extra = [
            ("permission", "review:write"),
            ("permission", "business:write"),
            ("permission", "review:write"),
            ("locale", "ms-MY"),
            ("sub", "someone-else"),
            ("roles", "admin"),
        ]

        _, claims = issuer.create_access_token(account, ["user"], extra)

        assert claims["permission"] == ["review:write", "business:write"]
        assert claims["locale"] == "ms-MY"
        assert claims["sub"] == "user1"
        assert claims["roles"] == ["user"]

    def test_refresh_token_is_random_base64(self, issuer):
        first = issuer.generate_refresh_token()
        second = issuer.generate_refresh_token()

        assert first != second
        assert len(first) == 88

    def test_refresh_token_expiry(self, settings, denylist):
        clock = FakeUtcClock(datetime(2026, 3, 1, tzinfo=timezone.utc))
        issuer = TokenIssuer(settings, denylist, clock=clock)

        assert issuer.refresh_token_expiry() == datetime(2026, 3, 8, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_validate_accepts_own_token(self, issuer, account):
        token, claims = issuer.create_access_token(account, ["user"])

        validated = await issuer.validate(token)

        assert validated["jti"] == claims["jti"]

    @pytest.mark.asyncio
    async def test_validate_rejects_wrong_secret(self, issuer, settings, sample_user):
        token = MockTokenGenerator(settings).generate_access_token(sample_user, secret="a-different-secret")

        with pytest.raises(InvalidTokenError):
            await issuer.validate(token)

    @pytest.mark.asyncio
    async def test_validate_rejects_wrong_issuer(self, issuer, settings, sample_user):
        token = MockTokenGenerator(settings).generate_access_token(sample_user, iss="someone-else")

        with pytest.raises(InvalidTokenError):
            await issuer.validate(token)

    @pytest.mark.asyncio
    async def test_validate_rejects_wrong_audience(self, issuer, settings, sample_user):
        token = MockTokenGenerator(settings).generate_access_token(sample_user, aud="other-clients")

        with pytest.raises(InvalidTokenError):
            await issuer.validate(token)

    @pytest.mark.asyncio
    async def test_validate_rejects_missing_audience(self, issuer, settings, sample_user):
        token = MockTokenGenerator(settings).generate_access_token(sample_user, aud=None)

        with pytest.raises(InvalidTokenError):
            await issuer.validate(token)

    @pytest.mark.asyncio
    async def test_validate_rejects_missing_issuer(self, issuer, settings, sample_user):
        token = MockTokenGenerator(settings).generate_access_token(sample_user, iss=None)

        with pytest.raises(InvalidTokenError):
            await issuer.validate(token)

    def test_decode_expired_rejects_missing_audience(self, issuer, settings, sample_user):
        token = MockTokenGenerator(settings).generate_access_token(sample_user, expires_in=-3600, aud=None)

        with pytest.raises(InvalidTokenError):
            issuer.decode_expired(token)

    @pytest.mark.asyncio
    async def test_validate_rejects_other_algorithm(self, issuer, settings, sample_user):
        token = MockTokenGenerator(settings).generate_access_token(sample_user, algorithm="HS512")

        with pytest.raises(InvalidTokenError) as exc_info:
            await issuer.validate(token)
        assert exc_info.value.details["error"] == "unexpected signing algorithm"

    @pytest.mark.asyncio
    async def test_validate_rejects_missing_subject(self, issuer, settings, sample_user):
        token = MockTokenGenerator(settings).generate_access_token(sample_user, sub=None)

        with pytest.raises(InvalidTokenError):
            await issuer.validate(token)

    @pytest.mark.asyncio
    async def test_validate_rejects_expired_token(self, issuer, settings, sample_user):
        token = MockTokenGenerator(settings).generate_access_token(sample_user, expires_in=-60)

        with pytest.raises(InvalidTokenError):
            await issuer.validate(token)

    @pytest.mark.asyncio
    async def test_validate_rejects_garbage(self, issuer):
        with pytest.raises(InvalidTokenError) as exc_info:
            await issuer.validate("not-a-jwt")
        assert exc_info.value.message == "Invalid token"
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_validate_rejects_denylisted_token(self, issuer, denylist, account):
        token, claims = issuer.create_access_token(account, ["user"])
        await denylist.add(claims["jti"], token_expiry(claims))

        with pytest.raises(InvalidTokenError) as exc_info:
            await issuer.validate(token)
        assert exc_info.value.message == "Token has been revoked"

    def test_decode_expired_ignores_lifetime(self, settings, denylist, account):
        past = FakeUtcClock(datetime.now(timezone.utc) - timedelta(hours=3))
        issuer = TokenIssuer(settings, denylist, clock=past)
        token, _ = issuer.create_access_token(account, ["user"])

        claims = issuer.decode_expired(token)

        assert claims["sub"] == "user1"

    def test_decode_expired_still_checks_signature(self, issuer, settings, sample_user):
        token = MockTokenGenerator(settings).generate_access_token(
            sample_user, expires_in=-3600, secret="a-different-secret")

        with pytest.raises(InvalidTokenError):
            issuer.decode_expired(token)

    def test_decode_expired_still_checks_issuer(self, issuer, settings, sample_user):
        token = MockTokenGenerator(settings).generate_access_token(sample_user, expires_in=-3600, iss="elsewhere")

        with pytest.raises(InvalidTokenError):
            issuer.decode_expired(token)


def test_user_info_from_claims():
    claims = {
        "sub": "user1",
        "name": "aminah",
        "email": "aminah@dekat.example",
        "roles": ["user"],
        "jti": "abc",
        "exp": 1700003600,
        "iat": 1700000000,
    }

    user_info = user_info_from_claims(claims)

    assert user_info["user_id"] == "user1"
    assert user_info["username"] == "aminah"
    assert user_info["roles"] == ["user"]
    assert user_info["jti"] == "abc"


def test_token_expiry():
    assert token_expiry({"exp": 1700000000}) == datetime.fromtimestamp(1700000000, tz=timezone.utc)
    assert token_expiry({}) is None
