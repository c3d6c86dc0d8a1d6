"""
Security Module for the Medicine QR Service
===========================================
- Secret key management
- Password hashing and policy
- JWT access tokens
- Login rate limiting
- Role-based access control with fine-grained permissions
- Audit logging of sensitive actions
"""

import os
import re
import json
import secrets
import hashlib
import warnings
from datetime import datetime, timedelta
from typing import Optional, List, Set

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
import bcrypt
from sqlalchemy.orm import Session

from .db import SessionLocal


# =============================================================================
# CONFIGURATION
# =============================================================================

def get_secret_key() -> str:
    """
    Get secret key from environment with validation.
    Production deployments must set OBATKU_SECRET_KEY.
    """
    secret = os.getenv("OBATKU_SECRET_KEY")

    if not secret:
        env = os.getenv("ENVIRONMENT", "development")
        if env == "production":
            raise RuntimeError(
                "CRITICAL: OBATKU_SECRET_KEY environment variable must be set in production! "
                "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
            )
        warnings.warn(
            "Using development secret key. Set OBATKU_SECRET_KEY for production!",
            RuntimeWarning
        )
        # Deterministic in development so tokens survive a hot-reload
        secret = hashlib.sha256(b"obatku-dev-insecure-key").hexdigest()

    if len(secret) < 32:
        raise RuntimeError("OBATKU_SECRET_KEY must be at least 32 characters")

    return secret


SECRET_KEY = get_secret_key()
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("TOKEN_EXPIRE_MINUTES", "60"))


# =============================================================================
# PASSWORD SECURITY
# =============================================================================

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


class PasswordPolicy:
    """Password strength validation"""

    @staticmethod
    def validate(password: str) -> tuple[bool, List[str]]:
        """
        Returns:
            (is_valid, list_of_errors)
        """
        errors = []

        if len(password) < MIN_PASSWORD_LENGTH:
            errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if len(password) > MAX_PASSWORD_LENGTH:
            errors.append(f"Password must not exceed {MAX_PASSWORD_LENGTH} characters")
        if not re.search(r'[a-z]', password):
            errors.append("Password must contain at least one lowercase letter")
        if not re.search(r'[A-Z]', password):
            errors.append("Password must contain at least one uppercase letter")
        if not re.search(r'\d', password):
            errors.append("Password must contain at least one digit")

        return len(errors) == 0, errors


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(plain_password.encode('utf-8'), hashed_password.encode('utf-8'))


def get_password_hash(password: str) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds=12)).decode('utf-8')


# =============================================================================
# TOKEN MANAGEMENT
# =============================================================================

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()

    now = datetime.utcnow()
    expire = now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({
        "exp": expire,
        "iat": now,
        "jti": secrets.token_urlsafe(16),
        "type": "access"
    })

    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """
    Decode and validate a JWT token.

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"}
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"}
        )


# =============================================================================
# ROLE-BASED ACCESS CONTROL (RBAC)
# =============================================================================

class Permission:
    """Fine-grained permissions for QR code operations"""

    QR_VIEW = "qr:view"
    QR_GENERATE = "qr:generate"
    QR_SCAN = "qr:scan"
    QR_MANAGE = "qr:manage"  # Status overrides, deletes

    MASTER_VIEW = "master:view"
    MASTER_MANAGE = "master:manage"


ROLE_PERMISSIONS: dict[str, Set[str]] = {
    "Admin": {
        Permission.QR_VIEW, Permission.QR_GENERATE, Permission.QR_SCAN, Permission.QR_MANAGE,
        Permission.MASTER_VIEW, Permission.MASTER_MANAGE,
    },

    "Pharmacist": {
        Permission.QR_VIEW, Permission.QR_GENERATE, Permission.QR_SCAN,
        Permission.MASTER_VIEW,
    },

    "Warehouse Staff": {
        Permission.QR_VIEW, Permission.QR_SCAN,
        Permission.MASTER_VIEW,
    },

    "Viewer": {
        Permission.QR_VIEW,
        Permission.MASTER_VIEW,
    },
}


def get_role_permissions(role: str) -> Set[str]:
    return ROLE_PERMISSIONS.get(role, set())


# =============================================================================
# DEPENDENCY INJECTION
# =============================================================================

def get_db():
    """Database session dependency"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db)
):
    """Get current authenticated user from JWT token."""
    from . import models

    payload = decode_token(token)

    username = payload.get("sub")
    if username is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"}
        )

    user = db.query(models.User).filter(models.User.username == username).first()

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"}
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User account is disabled"
        )

    return user


def require_role(*allowed_roles: str):
    async def role_checker(current_user=Depends(get_current_user)):
        if current_user.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required roles: {', '.join(allowed_roles)}"
            )
        return current_user

    return role_checker


def require_permission(*required_permissions: str):
    """
    Dependency that requires user to have specific permissions.
    More granular than role-based checks.
    """
    async def permission_checker(current_user=Depends(get_current_user)):
        user_permissions = get_role_permissions(current_user.role)

        missing = set(required_permissions) - user_permissions
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permissions: {', '.join(sorted(missing))}"
            )

        return current_user

    return permission_checker


# =============================================================================
# AUDIT LOGGING
# =============================================================================

class SecurityAuditLog:
    """Security event logging for compliance and forensics"""

    @staticmethod
    def log_login_attempt(
        db: Session,
        username: str,
        success: bool,
        ip_address: Optional[str] = None,
        failure_reason: Optional[str] = None
    ):
        from .models import AuditLog

        log = AuditLog(
            entity_type="auth",
            entity_id=0,
            action="login_attempt",
            new_values=json.dumps({
                "username": username,
                "success": success,
                "failure_reason": failure_reason,
            }),
            ip_address=ip_address,
        )
        db.add(log)
        db.commit()

    @staticmethod
    def log_sensitive_action(
        db: Session,
        user_id: int,
        action: str,
        entity_type: str,
        entity_id: int,
        details: dict,
        ip_address: Optional[str] = None
    ):
        """Log a sensitive operation for audit trail"""
        from .models import AuditLog

        log = AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            new_values=json.dumps(details, default=str),
            user_id=user_id,
            ip_address=ip_address
        )
        db.add(log)
        db.commit()


# =============================================================================
# RATE LIMITING
# =============================================================================

class RateLimiter:
    """
    Simple in-memory rate limiter for login attempts.
    Per process only.
    """

    _attempts: dict[str, List[datetime]] = {}

    @classmethod
    def check_rate_limit(
        cls,
        key: str,
        max_attempts: int = 5,
        window_seconds: int = 300
    ) -> tuple[bool, int]:
        """
        Returns:
            (is_allowed, remaining_attempts)
        """
        window_start = datetime.utcnow() - timedelta(seconds=window_seconds)
        cls._attempts[key] = [t for t in cls._attempts.get(key, []) if t > window_start]

        attempts = len(cls._attempts[key])
        if attempts >= max_attempts:
            return False, 0
        return True, max_attempts - attempts

    @classmethod
    def record_attempt(cls, key: str):
        cls._attempts.setdefault(key, []).append(datetime.utcnow())

    @classmethod
    def reset(cls, key: str):
        cls._attempts.pop(key, None)
