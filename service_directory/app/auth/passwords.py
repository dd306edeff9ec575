"""
Password hashing helpers.
"""

from passlib.context import CryptContext

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

# Verified against when the account does not exist so both paths cost the same
_UNKNOWN_ACCOUNT_HASH = pwd_context.hash("unknown-account-placeholder")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        # Malformed or unsupported stored hash
        return False


def burn_verification(password: str) -> None:
    """Spend a password verification on a throwaway hash."""
    pwd_context.verify(password, _UNKNOWN_ACCOUNT_HASH)
