# backend/smartpark/auth.py
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from . import config
from .errors import Forbidden, Unauthorized

logger = logging.getLogger(__name__)

ROLES = ("admin", "staff", "user")

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Identity:
    id: int
    email: str
    role: str


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def check_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def create_access_token(user) -> str:
    payload = {
        "id": user.id,
        "email": user.email,
        "role": user.role,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=config.JWT_EXPIRES_MINUTES),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def create_refresh_token(user) -> str:
    payload = {
        "id": user.id,
        "exp": datetime.now(timezone.utc) + timedelta(days=config.JWT_REFRESH_EXPIRES_DAYS),
    }
    return jwt.encode(payload, config.JWT_REFRESH_SECRET, algorithm=config.JWT_ALGORITHM)


def verify_token(token: Optional[str]) -> Identity:
    """Decode an access token into an Identity. Raises Unauthorized."""
    if not token:
        raise Unauthorized("Authentication error: No token provided")
    try:
        claims = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Authentication error: Token expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Authentication error: Invalid token")
    try:
        return Identity(id=int(claims["id"]), email=claims["email"], role=claims["role"])
    except (KeyError, TypeError, ValueError):
        raise Unauthorized("Authentication error: Invalid token")


def verify_refresh_token(token: str) -> int:
    try:
        claims = jwt.decode(token, config.JWT_REFRESH_SECRET, algorithms=[config.JWT_ALGORITHM])
        return int(claims["id"])
    except (jwt.InvalidTokenError, KeyError, TypeError, ValueError):
        raise Unauthorized("Invalid refresh token")


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> Identity:
    return verify_token(credentials.credentials if credentials else None)


def require_roles(*roles: str):
    def dependency(identity: Identity = Depends(get_current_user)) -> Identity:
        if identity.role not in roles:
            logger.info(f"AUTH: {identity.email} ({identity.role}) denied, needs one of {roles}")
            raise Forbidden("Insufficient permissions")
        return identity
    return dependency
