"""Admin identity: signed bearer tokens and credential checks.

Tokens carry the profile (``sub``, ``email``, ``role``, ``name``) so every
request rebuilds its ``Profile`` explicitly; nothing is kept in process state.
"""

from __future__ import annotations

import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from portal_config import Settings
from portal_system import AuthorizationError, Profile

logger = logging.getLogger(__name__)


def create_access_token(
    profile: Profile,
    secret_key: str,
    algorithm: str = "HS256",
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create a signed JWT for ``profile``. Defaults to a 24 hour lifetime."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=24))
    claims = {
        "sub": profile.user_id,
        "email": profile.email,
        "role": profile.role,
        "name": profile.full_name,
        "exp": expire,
    }
    return jwt.encode(claims, secret_key, algorithm=algorithm)


def decode_access_token(token: str, secret_key: str, algorithm: str = "HS256") -> Profile:
    """Verify ``token`` and return its profile.

    Raises AuthorizationError for any invalid, expired or incomplete token.
    """
    try:
        payload = jwt.decode(token, secret_key, algorithms=[algorithm])
    except jwt.PyJWTError as e:
        logger.info("Rejected bearer token: %s", e)
        raise AuthorizationError() from e

    user_id = payload.get("sub")
    email = payload.get("email")
    if not user_id or not email:
        raise AuthorizationError()
    return Profile(
        user_id=user_id,
        email=email,
        role=payload.get("role") or "student",
        full_name=payload.get("name"),
    )


def authenticate_admin(email: str, password: str, settings: Settings) -> Profile:
    """Check configured admin credentials and return the admin profile."""
    if not settings.admin_password:
        logger.warning("Admin login attempted but ADMIN_PASSWORD is not configured")
        raise AuthorizationError()

    email_ok = hmac.compare_digest(email.strip().lower().encode(), settings.admin_email.lower().encode())
    password_ok = hmac.compare_digest(password.encode(), settings.admin_password.encode())
    if not (email_ok and password_ok):
        logger.info("Failed admin login for %s", email)
        raise AuthorizationError()

    return Profile(user_id=settings.admin_email, email=settings.admin_email, role="admin", full_name="Admin")
