import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional

from bson import ObjectId
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

import config
from database import DocumentStore, get_store
from errors import Forbidden, Unauthenticated
from schemas import Principal, Role

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
bearer_scheme = HTTPBearer(auto_error=False)


class Permission(str, Enum):
    ADMINISTER = "administer"
    MANAGE_PROJECTS = "manage_projects"
    MANAGE_EVENTS = "manage_events"


# Volunteers manage projects and events alongside admins; donors are read-only
PERMISSIONS: Dict[Permission, FrozenSet[Role]] = {
    Permission.ADMINISTER: frozenset({Role.ADMIN}),
    Permission.MANAGE_PROJECTS: frozenset({Role.ADMIN, Role.VOLUNTEER}),
    Permission.MANAGE_EVENTS: frozenset({Role.ADMIN, Role.VOLUNTEER}),
}

DENIED = {
    Permission.ADMINISTER: "Admin access required",
    Permission.MANAGE_PROJECTS: "Admin or volunteer access required",
    Permission.MANAGE_EVENTS: "Admin or volunteer access required",
}


# Helpers

def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def token_for(user: dict, expires_delta: Optional[timedelta] = None) -> str:
    return create_access_token(
        {"sub": str(user["_id"]), "email": user.get("email"), "role": user.get("role")},
        expires_delta,
    )


def decode_access_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except ExpiredSignatureError:
        raise Forbidden("Token expired")
    except JWTError:
        raise Forbidden("Invalid token")
    if not ObjectId.is_valid(payload.get("sub") or ""):
        raise Forbidden("Invalid token")
    return payload


def is_allowed(role: Role, permission: Permission) -> bool:
    return role in PERMISSIONS[permission]


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    store: DocumentStore = Depends(get_store),
) -> Principal:
    if credentials is None or not credentials.credentials:
        raise Unauthenticated("Access token required")
    try:
        payload = decode_access_token(credentials.credentials)
    except Forbidden as e:
        logger.warning("Rejected bearer token: %s", e.message)
        raise
    user = store.find_by_id("user", payload["sub"])
    if user is None:
        raise Unauthenticated("User no longer exists")
    return Principal(id=str(user["_id"]), email=user.get("email", ""), role=user.get("role"))


def require_permission(permission: Permission):
    def dependency(principal: Principal = Depends(get_current_user)) -> Principal:
        if not is_allowed(principal.role, permission):
            raise Forbidden(DENIED[permission])
        return principal

    return dependency


require_admin = require_permission(Permission.ADMINISTER)
require_admin_or_manager = require_permission(Permission.MANAGE_PROJECTS)
require_event_manager = require_permission(Permission.MANAGE_EVENTS)
