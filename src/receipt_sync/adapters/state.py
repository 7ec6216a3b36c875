"""Signed OAuth state blobs.

The state parameter carries the user id through the provider's redirect so
the callback can be tied to a user without server-side session storage.
Format: ``base64url(json payload) + "." + base64url(hmac-sha256)``.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time

from receipt_sync.errors import AuthenticationError

MAX_STATE_AGE_SECONDS = 3600


def encode_state(user_id: int, secret: str, *, now: float | None = None) -> str:
    """Build a signed state blob for ``user_id``."""
    payload = {
        "user_id": user_id,
        "nonce": secrets.token_urlsafe(8),
        "issued_at": int(now if now is not None else time.time()),
    }
    body = _b64encode(json.dumps(payload, separators=(",", ":")).encode())
    return f"{body}.{_sign(body, secret)}"


def decode_state(
    state: str,
    secret: str,
    *,
    max_age: int = MAX_STATE_AGE_SECONDS,
    now: float | None = None,
) -> int:
    """Verify a state blob and return the user id it carries."""
    body, _, signature = state.partition(".")
    if not body or not signature:
        msg = "Malformed OAuth state"
        raise AuthenticationError(msg)

    if not hmac.compare_digest(signature, _sign(body, secret)):
        msg = "OAuth state signature mismatch"
        raise AuthenticationError(msg)

    try:
        payload = json.loads(_b64decode(body))
        user_id = int(payload["user_id"])
        issued_at = int(payload["issued_at"])
    except (ValueError, KeyError, TypeError) as exc:
        msg = "OAuth state payload is invalid"
        raise AuthenticationError(msg) from exc

    current = now if now is not None else time.time()
    if current - issued_at > max_age:
        msg = "OAuth state has expired"
        raise AuthenticationError(msg)
    return user_id


def _sign(body: str, secret: str) -> str:
    digest = hmac.new(secret.encode(), body.encode(), hashlib.sha256).digest()
    return _b64encode(digest)


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)
