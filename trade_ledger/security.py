from __future__ import annotations

import hashlib
import os
import secrets
from datetime import datetime, timedelta, timezone

from passlib.context import CryptContext

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

SECRET_KEY = os.getenv("LEDGER_SECRET_KEY", "change-me")
SESSION_EXPIRE_HOURS = int(os.getenv("LEDGER_SESSION_HOURS", "12"))


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not password or not hashed:
        return False
    return pwd_context.verify(password, hashed)


def generate_session_token() -> str:
    return secrets.token_urlsafe(48)


def session_token_hash(raw_token: str) -> str:
    # keyed with SECRET_KEY
    return hashlib.sha256(f"{SECRET_KEY}:{raw_token}".encode("utf-8")).hexdigest()


def session_expiry_datetime() -> datetime:
    return datetime.now(timezone.utc) + timedelta(hours=SESSION_EXPIRE_HOURS)
