"""
auth.py — tiny HMAC bearer tokens for the HTTP API.

Token format:  "<user_id>:<issued_at_seconds>:<hex hmac-sha256>"

The signature covers "<user_id>:<issued_at>" under PARLEY_SECRET_KEY, and is
checked with a constant-time compare. Real account management (passwords,
sessions) sits outside this package.
"""

import hashlib
import hmac
import time
from typing import Optional


def _sign(payload: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def issue_token(user_id: str, secret: str, now: Optional[float] = None) -> str:
    if not user_id or ":" in user_id:
        raise ValueError("user id must be non-empty and contain no ':'")
    ts = int(time.time() if now is None else now)
    payload = f"{user_id}:{ts}"
    return f"{payload}:{_sign(payload, secret)}"


def verify_token(token: str, secret: str, max_age: float, now: Optional[float] = None) -> Optional[str]:
    """Return the user id if the token is genuine and fresh, else None."""
    try:
        user_id, ts_raw, sig = token.split(":")
        ts = int(ts_raw)
    except (AttributeError, ValueError):
        return None
    if not hmac.compare_digest(_sign(f"{user_id}:{ts_raw}", secret), sig):
        return None
    current = time.time() if now is None else now
    if current - ts > max_age or ts - current > 60:
        # expired, or issued suspiciously far in the future
        return None
    return user_id or None
