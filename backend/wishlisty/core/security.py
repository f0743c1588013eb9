from datetime import datetime, timedelta, timezone
import logging
import secrets
from typing import Any
from uuid import uuid4

from jose import JWTError, jwt

from wishlisty.core.config import settings

_dev_logger = logging.getLogger("wishlisty.security")

if (settings.environment or "local").lower() == "local":
    try:
        settings.validate_secrets()
    except RuntimeError as exc:
        settings.jwt_secret_key = secrets.token_urlsafe(64)
        _dev_logger.warning("%s Generated an ephemeral key for local dev", exc)
else:
    settings.validate_secrets()


def create_access_token(subject: str, expires_delta_minutes: int | None = None) -> str:
    """Issue an access token with the shared secret.

    Production tokens come from the auth service; this is used by local
    tooling and the test-suite.
    """
    expire_minutes = expires_delta_minutes or settings.access_token_expire_minutes
    expire = datetime.now(timezone.utc) + timedelta(minutes=expire_minutes)
    to_encode: dict[str, Any] = {"sub": subject, "exp": expire, "type": "access", "jti": str(uuid4())}
    return jwt.encode(
        to_encode,
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )


def decode_access_token(token: str) -> dict[str, Any] | None:
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError:
        return None
    except Exception:
        return None
    if payload.get("type", "access") != "access":
        return None
    return payload
