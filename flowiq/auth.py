"""Authentication helpers: password hashing, lockout and JWT issuance."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, Optional

import jwt
import sqlalchemy as sa
import structlog
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from flowiq import audit
from flowiq.config import get_settings
from flowiq.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    ValidationError,
)
from flowiq.models import Role, Tenant, User
from flowiq.time_utils import ensure_utc, utc_now

logger = structlog.get_logger(__name__)

# pbkdf2 avoids passlib's incompatibility with bcrypt>=4.1
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

JWT_ALGORITHM = "HS256"
LOCKOUT_THRESHOLD = 5
LOCKOUT_DURATION_SECONDS = 15 * 60
VALID_ROLES = {role.value for role in Role}


def hash_password(password: str) -> str:
    """Hash a plaintext password using a secure algorithm."""

    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    """Verify a plaintext password against a stored hash."""

    try:
        return pwd_context.verify(password, hashed)
    except Exception:
        return False


def register_user(
    session: Session,
    username: str,
    password: str,
    role: str = Role.STAFF.value,
    tenant_id: Optional[str] = None,
    *,
    email: Optional[str] = None,
    name: Optional[str] = None,
) -> User:
    """Create a user account.  Usernames are unique across tenants."""

    username = (username or "").strip().lower()
    if not username:
        raise ValidationError("username is required")
    if len(password or "") < 8:
        raise ValidationError("password must be at least 8 characters")
    if role not in VALID_ROLES:
        raise ValidationError(f"unknown role: {role}")
    if role != Role.ADMIN.value and tenant_id is None:
        raise ValidationError("non-admin users must belong to a tenant")
    if tenant_id is not None and session.get(Tenant, tenant_id) is None:
        raise ValidationError(f"unknown tenant: {tenant_id}")

    existing = session.scalar(sa.select(User.id).where(User.username == username))
    if existing is not None:
        raise ConflictError(f"username {username!r} is already registered")

    user = User(
        username=username,
        password_hash=hash_password(password),
        role=role,
        tenant_id=tenant_id,
        email=email or (username if "@" in username else None),
        name=name or username,
    )
    session.add(user)
    session.flush()
    logger.info("user_registered", user_id=user.id, role=role, tenant_id=tenant_id)
    return user


def tenant_is_active(session: Session, user: User) -> bool:
    """Platform admins have no tenant; everyone else needs an active one."""

    if user.tenant_id is None:
        return True
    tenant = session.get(Tenant, user.tenant_id)
    return tenant is not None and bool(tenant.is_active)


def authenticate(
    session: Session,
    username: str,
    password: str,
    *,
    ip_address: Optional[str] = None,
) -> User:
    """Validate credentials, applying the lockout policy.

    Raises :class:`AuthenticationError` for bad credentials and
    :class:`AccountLockedError` while a lockout is active.
    """

    username = (username or "").strip().lower()
    user = session.scalar(sa.select(User).where(User.username == username))
    if user is None or not user.is_active:
        raise AuthenticationError("Invalid username or password")
    if not tenant_is_active(session, user):
        logger.warning("login_rejected_inactive_tenant", user_id=user.id, tenant_id=user.tenant_id)
        raise AuthenticationError("Practice account is inactive")

    now = utc_now()
    if user.locked_until is not None and ensure_utc(user.locked_until) > now:
        raise AccountLockedError(
            "Account temporarily locked",
            details={"lockedUntil": ensure_utc(user.locked_until).isoformat()},
        )

    if not verify_password(password, user.password_hash):
        user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
        audit.record_audit(
            session,
            tenant_id=user.tenant_id,
            user_id=user.id,
            action="login_failed",
            ip_address=ip_address,
        )
        if user.failed_login_attempts >= LOCKOUT_THRESHOLD:
            user.locked_until = now + timedelta(seconds=LOCKOUT_DURATION_SECONDS)
            user.failed_login_attempts = 0
            audit.record_audit(
                session,
                tenant_id=user.tenant_id,
                user_id=user.id,
                action="account_locked",
                ip_address=ip_address,
            )
            logger.warning("account_locked", user_id=user.id)
        session.flush()
        raise AuthenticationError("Invalid username or password")

    user.failed_login_attempts = 0
    user.locked_until = None
    user.last_login_at = now
    audit.record_audit(
        session,
        tenant_id=user.tenant_id,
        user_id=user.id,
        action="login",
        ip_address=ip_address,
    )
    session.flush()
    return user


def create_access_token(user: User, *, expires_minutes: Optional[int] = None) -> str:
    """Create a signed JWT access token for *user*."""

    settings = get_settings()
    minutes = expires_minutes or settings.access_token_expire_minutes
    payload: Dict[str, Any] = {
        "sub": user.id,
        "username": user.username,
        "role": user.role,
        "type": "access",
        "exp": utc_now() + timedelta(minutes=minutes),
    }
    if user.tenant_id is not None:
        payload["tenant"] = user.tenant_id
    return jwt.encode(payload, settings.jwt_secret, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> Dict[str, Any]:
    """Return the claims of *token*; raise :class:`AuthenticationError` if invalid."""

    try:
        data = jwt.decode(token, get_settings().jwt_secret, algorithms=[JWT_ALGORITHM])
    except jwt.PyJWTError as exc:
        raise AuthenticationError("Invalid or expired token") from exc
    if data.get("type") != "access":
        raise AuthenticationError("Invalid or expired token")
    return data


def serialize_user(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "name": user.name,
        "role": user.role,
        "tenantId": user.tenant_id,
        "lastLoginAt": user.last_login_at.isoformat() if user.last_login_at else None,
    }


__all__ = [
    "LOCKOUT_DURATION_SECONDS",
    "LOCKOUT_THRESHOLD",
    "authenticate",
    "create_access_token",
    "decode_access_token",
    "hash_password",
    "pwd_context",
    "register_user",
    "serialize_user",
    "verify_password",
]
