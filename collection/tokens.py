import hashlib
import hmac
import secrets
from datetime import datetime, timedelta

# 32 random bytes, url-safe: fits a Telegram deep-link payload together with a short prefix
TOKEN_BYTES = 32


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def generate_confirmation_token(now: datetime, ttl_hours: int) -> tuple[str, str, datetime]:
    """Returns (raw_token, hashed_token, expires_at). Only the hash is ever stored."""
    raw_token = secrets.token_urlsafe(TOKEN_BYTES)
    return raw_token, hash_token(raw_token), now + timedelta(hours=ttl_hours)


def token_matches(token: str, stored_hash: str | None) -> bool:
    if not token or not stored_hash:
        return False
    return hmac.compare_digest(hash_token(token), stored_hash)


def token_fingerprint(token: str) -> str:
    """Short, non-reversible label for log lines about a token."""
    return hash_token(token)[:8] if token else "-"
