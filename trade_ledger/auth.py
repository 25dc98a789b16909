"""Staff accounts, role permissions and cookie sessions."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from fastapi import HTTPException, status
from sqlalchemy import update
from sqlmodel import Session, select

from .models import SessionToken, User, UserRole
from .permissions import (
    ALL_PERMISSION_KEYS,
    PERMISSIONS,
    ROLE_DEFAULT_PERMISSIONS,
    PermissionDefinition,
    sanitize_permissions,
)
from .security import (
    generate_session_token,
    hash_password,
    session_expiry_datetime,
    session_token_hash,
    verify_password,
)
from .timezone_utils import now_gst

logger = logging.getLogger(__name__)

DEFAULT_ADMIN_USERNAME = os.getenv("LEDGER_ADMIN_USERNAME", "admin")
DEFAULT_ADMIN_PASSWORD = os.getenv("LEDGER_ADMIN_PASSWORD", "admin123")

STAFF_ROLES: Sequence[UserRole] = (UserRole.ADMIN, UserRole.ACCOUNTANT, UserRole.CLERK)


def list_permission_definitions() -> List[PermissionDefinition]:
    return PERMISSIONS


def get_effective_permissions(user: User) -> Dict[str, bool]:
    """Admins hold every permission; other roles use their stored grant or the role default."""
    if user.role == UserRole.ADMIN:
        return {key: True for key in ALL_PERMISSION_KEYS}
    if not user.permissions_json:
        return dict(ROLE_DEFAULT_PERMISSIONS.get(user.role.value, {}))
    try:
        stored = json.loads(user.permissions_json)
    except (TypeError, json.JSONDecodeError):
        logger.warning("Ignoring unreadable permissions for user %s", user.id)
        return {}
    return sanitize_permissions(stored)


def _permissions_json(grant: Optional[Dict[str, bool]], role: UserRole) -> Optional[str]:
    if grant is None or role == UserRole.ADMIN:
        return None
    return json.dumps(sanitize_permissions(grant), ensure_ascii=False)


def _clean_username(username: str) -> str:
    return (username or "").strip().lower()


def _store_user(session: Session, user: User) -> User:
    user.updated_at = now_gst()
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def _revoke_user_sessions(session: Session, user_id: int) -> None:
    session.exec(
        update(SessionToken)
        .where(SessionToken.user_id == user_id, SessionToken.revoked == False)  # noqa: E712
        .values(revoked=True)
    )


def ensure_default_admin(session: Session) -> User:
    existing = session.exec(select(User).where(User.role == UserRole.ADMIN)).first()
    if existing:
        return existing
    username = _clean_username(DEFAULT_ADMIN_USERNAME)
    password = DEFAULT_ADMIN_PASSWORD.strip()
    if not username or not password:
        raise RuntimeError("Set LEDGER_ADMIN_USERNAME and LEDGER_ADMIN_PASSWORD to bootstrap an admin")
    admin = _store_user(
        session,
        User(username=username, password_hash=hash_password(password), role=UserRole.ADMIN, is_active=True),
    )
    logger.warning("Bootstrapped admin account '%s'; change its password", username)
    return admin


def list_users(session: Session) -> List[User]:
    return session.exec(select(User).order_by(User.created_at.asc())).all()


def get_user(session: Session, user_id: int) -> User:
    user = session.get(User, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


def find_user(session: Session, username: str) -> Optional[User]:
    cleaned = _clean_username(username)
    if not cleaned:
        return None
    return session.exec(select(User).where(User.username == cleaned)).first()


def create_user(
    session: Session,
    *,
    username: str,
    password: str,
    role: UserRole,
    permissions: Optional[Dict[str, bool]] = None,
) -> User:
    cleaned = _clean_username(username)
    if not cleaned:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username is required")
    if find_user(session, cleaned):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username already exists")
    user = _store_user(
        session,
        User(
            username=cleaned,
            password_hash=hash_password(password),
            role=role,
            is_active=True,
            created_at=now_gst(),
            permissions_json=_permissions_json(permissions, role),
        ),
    )
    logger.info("Created %s account '%s'", role.value, cleaned)
    return user


def set_user_active(session: Session, user_id: int, is_active: bool) -> User:
    user = get_user(session, user_id)
    user.is_active = is_active
    if not is_active:
        # a disabled account loses its open sessions
        _revoke_user_sessions(session, user_id)
    logger.info("User %s %s", user.username, "enabled" if is_active else "disabled")
    return _store_user(session, user)


def reset_user_password(session: Session, user_id: int, new_password: str) -> User:
    user = get_user(session, user_id)
    user.password_hash = hash_password(new_password)
    _revoke_user_sessions(session, user_id)
    logger.info("Password reset for user %s", user.username)
    return _store_user(session, user)


def authenticate_user(session: Session, *, username: str, password: str) -> Optional[User]:
    user = find_user(session, username)
    if user is None or not user.is_active or user.role not in STAFF_ROLES:
        return None
    return user if verify_password(password, user.password_hash) else None


def create_session_token(session: Session, user: User) -> str:
    raw_token = generate_session_token()
    session.add(
        SessionToken(
            token_hash=session_token_hash(raw_token),
            user_id=user.id,
            expires_at=session_expiry_datetime(),
        )
    )
    session.commit()
    return raw_token


def _find_token(session: Session, raw_token: str) -> Optional[SessionToken]:
    return session.exec(select(SessionToken).where(SessionToken.token_hash == session_token_hash(raw_token))).first()


def revoke_session_token(session: Session, raw_token: str) -> None:
    record = _find_token(session, raw_token)
    if record is None or record.revoked:
        return
    record.revoked = True
    session.add(record)
    session.commit()


def get_user_by_session_token(session: Session, raw_token: str) -> Optional[User]:
    if not raw_token:
        return None
    record = _find_token(session, raw_token)
    if record is None or record.revoked:
        return None
    expires_at = record.expires_at
    if expires_at.tzinfo is None:
        # SQLite drops tzinfo; tokens are written in UTC
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if expires_at < datetime.now(timezone.utc):
        record.revoked = True
        session.add(record)
        session.commit()
        return None
    user = session.get(User, record.user_id)
    if user is None or not user.is_active:
        return None
    return user
