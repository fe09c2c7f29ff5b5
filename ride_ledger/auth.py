import datetime as dt
import uuid
from dataclasses import dataclass, field

import jwt
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from .config import settings
from .database import get_db
from .errors import AuthenticationError, AuthorizationError
from .models import User


bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class ActorContext:
    """Who is performing an operation; passed explicitly into every core call."""

    user_id: uuid.UUID
    roles: frozenset = field(default_factory=frozenset)
    is_suspended: bool = False

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles

    @property
    def is_driver(self) -> bool:
        return "driver" in self.roles


def actor_for(user: User) -> ActorContext:
    roles = set(user.roles or [])
    if user.role:
        roles.add(user.role)
    return ActorContext(user_id=user.id, roles=frozenset(roles), is_suspended=bool(user.is_suspended))


def create_access_token(user_id: str) -> str:
    now = dt.datetime.now(dt.timezone.utc)
    payload = {
        "sub": str(user_id),
        "iat": int(now.timestamp()),
        "exp": int((now + settings.jwt_expires_delta).timestamp()),
    }
    # Sign with current secret (first in list)
    secrets = settings.JWT_SECRETS or [settings.JWT_SECRET]
    return jwt.encode(payload, secrets[0], algorithm="HS256")


def _decode(token: str) -> dict:
    last_err: Exception | None = None
    for sec in settings.JWT_SECRETS or [settings.JWT_SECRET]:
        try:
            return jwt.decode(token, sec, algorithms=["HS256"])
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token expired", code="token_expired")
        except jwt.InvalidTokenError as e:
            last_err = e
    raise AuthenticationError("Invalid token", code="invalid_token") from last_err


def get_current_actor(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> ActorContext:
    if creds is None or not creds.credentials:
        raise AuthenticationError("Not authenticated")
    payload = _decode(creds.credentials)
    sub = payload.get("sub")
    try:
        user_id = uuid.UUID(str(sub))
    except (TypeError, ValueError):
        raise AuthenticationError("Invalid token payload", code="invalid_token")
    user = db.get(User, user_id)
    if user is None:
        raise AuthenticationError("Invalid session user", code="invalid_token")
    return actor_for(user)


def require_admin(actor: ActorContext = Depends(get_current_actor)) -> ActorContext:
    if not actor.is_admin:
        raise AuthorizationError("Admin only")
    return actor


def require_driver(actor: ActorContext = Depends(get_current_actor)) -> ActorContext:
    if not actor.is_driver:
        raise AuthorizationError("Driver only")
    return actor
