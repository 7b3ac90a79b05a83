import base64
import hashlib
import hmac
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Header, HTTPException, status

from app import config

TOKEN_TTL_HOURS = config.env_int("AUTH_TOKEN_TTL_HOURS", 24)
AUTH_REQUIRED = config.env_bool("AUTH_REQUIRED", False)
_AUTH_SECRET = os.getenv("AUTH_SECRET", "dev-insecure-secret-change-me").encode("utf-8")


def _encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _decode(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def _signature(payload: bytes) -> bytes:
    return hmac.new(_AUTH_SECRET, payload, hashlib.sha256).digest()


def create_access_token(user_id: str) -> tuple[str, str]:
    """Issue a signed ``<payload>.<signature>`` token for ``user_id``; returns the token and its expiry."""
    expires_at = datetime.now(timezone.utc) + timedelta(hours=TOKEN_TTL_HOURS)
    payload = f"{user_id}|{int(expires_at.timestamp())}".encode("utf-8")
    return f"{_encode(payload)}.{_encode(_signature(payload))}", expires_at.isoformat()


def verify_access_token(token: str) -> Optional[str]:
    try:
        payload_segment, signature_segment = token.split(".", 1)
        payload = _decode(payload_segment)
        if not hmac.compare_digest(_decode(signature_segment), _signature(payload)):
            return None
        user_id, expires_ts = payload.decode("utf-8").rsplit("|", 1)
        expired = datetime.now(timezone.utc).timestamp() > int(expires_ts)
    except (ValueError, UnicodeDecodeError):
        return None
    return None if expired else user_id


def token_user(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        return None
    return verify_access_token(token)


def is_admin(user_id: Optional[str]) -> bool:
    return bool(user_id) and user_id in config.ADMIN_USER_IDS


def require_authenticated_user(authorization: Optional[str] = Header(default=None)) -> str:
    user_id = token_user(authorization)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing bearer token")
    return user_id


def assert_actor_authorized(
    actor_user_id: str,
    authorization: Optional[str] = Header(default=None),
) -> None:
    """The bearer token, when present, must belong to the acting user.

    Without a token the call is let through unless AUTH_REQUIRED is set.
    """
    signed_in = token_user(authorization)
    if signed_in is None:
        if AUTH_REQUIRED:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
        return
    if signed_in != actor_user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token user does not match actor user")


def require_admin(
    actor_user_id: str,
    authorization: Optional[str] = Header(default=None),
) -> None:
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    if not is_admin(actor_user_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
