"""Runtime configuration and logging setup.

Environment:
  DB_BACKEND=memory|mongodb
  MONGODB_URI=... (when DB_BACKEND=mongodb)
  DB_NAME=event_portal
  COLLECTION_PREFIX=dev_
  SITE_NAME=csedepartment          (CSV filename prefix)
  SECRET_KEY=...                   (signs admin tokens)
  TOKEN_EXPIRE_MINUTES=1440
  ADMIN_EMAIL / ADMIN_PASSWORD     (login disabled when ADMIN_PASSWORD is unset)
  DUPLICATE_KEY=roll_number|email
  STORE_TIMEOUT_SECONDS=5
  RETRY_ATTEMPTS=3
  EXPORT_TIMEZONE=UTC
  LOG_LEVEL=INFO
"""

from __future__ import annotations

import logging
import os
import secrets
import sys
from dataclasses import dataclass
from typing import Optional
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


@dataclass
class Settings:
    db_backend: str = "memory"
    mongodb_uri: Optional[str] = None
    db_name: str = "event_portal"
    collection_prefix: str = ""
    site_name: str = "csedepartment"
    secret_key: str = ""
    token_algorithm: str = "HS256"
    token_expire_minutes: int = 24 * 60
    admin_email: str = "admin@example.com"
    admin_password: Optional[str] = None
    duplicate_key: str = "roll_number"
    store_timeout_seconds: float = 5.0
    retry_attempts: int = 3
    export_timezone: str = "UTC"
    log_level: str = "INFO"

    @property
    def export_tz(self) -> ZoneInfo:
        return ZoneInfo(self.export_timezone)


def load_settings() -> Settings:
    """Build settings from the environment, reading ``.env`` first if present."""
    load_dotenv()

    backend = os.getenv("DB_BACKEND", "memory").lower()
    if backend not in ("memory", "mongodb"):
        raise RuntimeError(f"Unsupported DB_BACKEND: {backend}")
    if backend == "mongodb" and not os.getenv("MONGODB_URI"):
        raise RuntimeError("DB_BACKEND=mongodb requires MONGODB_URI")

    duplicate_key = os.getenv("DUPLICATE_KEY", "roll_number").lower()
    if duplicate_key not in ("roll_number", "email"):
        raise RuntimeError(f"Unsupported DUPLICATE_KEY: {duplicate_key}")

    retry_attempts = int(os.getenv("RETRY_ATTEMPTS", "3"))
    if retry_attempts < 1:
        raise RuntimeError(f"RETRY_ATTEMPTS must be at least 1, got {retry_attempts}")

    secret_key = os.getenv("SECRET_KEY")
    if not secret_key:
        # Tokens will not survive a restart
        logger.warning("SECRET_KEY not set; generating an ephemeral signing key")
        secret_key = secrets.token_hex(32)

    return Settings(
        db_backend=backend,
        mongodb_uri=os.getenv("MONGODB_URI"),
        db_name=os.getenv("DB_NAME", "event_portal"),
        collection_prefix=os.getenv("COLLECTION_PREFIX", ""),
        site_name=os.getenv("SITE_NAME", "csedepartment"),
        secret_key=secret_key,
        token_expire_minutes=int(os.getenv("TOKEN_EXPIRE_MINUTES", str(24 * 60))),
        admin_email=os.getenv("ADMIN_EMAIL", "admin@example.com"),
        admin_password=os.getenv("ADMIN_PASSWORD") or None,
        duplicate_key=duplicate_key,
        store_timeout_seconds=float(os.getenv("STORE_TIMEOUT_SECONDS", "5")),
        retry_attempts=retry_attempts,
        export_timezone=os.getenv("EXPORT_TIMEZONE", "UTC"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


def setup_logging(level: str = "INFO") -> None:
    """Configure application logging."""
    root = logging.getLogger()
    root.setLevel(level)

    # Replace handlers so repeated calls do not duplicate output
    root.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root.addHandler(console_handler)

    # Silence noisy libraries
    logging.getLogger("pymongo").setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
