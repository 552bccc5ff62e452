from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import bcrypt
from jose import JWTError, jwt

from snapcart.core.config import settings


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        return False


def _encode(claims: dict[str, Any], expires_delta: timedelta) -> str:
    to_encode = dict(claims)
    to_encode["exp"] = datetime.now(timezone.utc) + expires_delta
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)


def _decode(token: str) -> Optional[dict[str, Any]]:
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def create_access_token(subject: str) -> str:
    return _encode({"sub": subject, "type": "access"}, timedelta(minutes=settings.access_token_exp_minutes))


def decode_token(token: str) -> Optional[dict[str, Any]]:
    return _decode(token)


def sign_cookie_payload(kind: str, data: Any, *, max_age_seconds: int) -> str:
    """Serialize `data` into a signed, expiring cookie value tagged with `kind`."""
    return _encode({"type": kind, "data": data}, timedelta(seconds=max_age_seconds))


def read_cookie_payload(kind: str, value: str | None) -> Any | None:
    """Return the data of a cookie written by `sign_cookie_payload`, or None if missing, tampered or expired."""
    if not value:
        return None
    payload = _decode(value)
    if not payload or payload.get("type") != kind:
        return None
    return payload.get("data")
