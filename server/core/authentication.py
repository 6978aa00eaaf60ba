import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
from core.logging_setup import log_step
from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

LOG_STEP = "SESSION"

JWT_ISSUER = "friction-intelligence"
JWT_AUDIENCE = "web-client"
AUTH_COOKIE = "app_auth_token"


class Role(str, enum.Enum):
    USER = "user"
    SERVICE = "service"


@dataclass(frozen=True)
class Principal:
    """The caller identity passed explicitly into every store operation."""

    user_id: str | None
    role: Role = Role.USER

    @property
    def is_service(self) -> bool:
        return self.role == Role.SERVICE

    @classmethod
    def user(cls, user_id: str) -> "Principal":
        return cls(user_id=user_id, role=Role.USER)

    @classmethod
    def service(cls) -> "Principal":
        return cls(user_id=None, role=Role.SERVICE)


SERVICE_PRINCIPAL = Principal.service()


class TokenPayload(BaseModel):
    """Pydantic model for the session JWT payload"""

    iss: str
    iat: int
    exp: int
    sub: str
    aud: str


def generate_jwt_token(
    user_id: str,
    secret_key: str,
    expires_delta: timedelta = timedelta(hours=12),
) -> str:
    """
    Generates a session JWT for the given user. (HS256)
    """
    now = datetime.now(timezone.utc)

    payload = {
        "iss": JWT_ISSUER,
        "iat": now,
        "exp": now + expires_delta,
        "sub": user_id,
        "aud": JWT_AUDIENCE,
    }

    return jwt.encode(payload, secret_key, algorithm="HS256")


def decode_session_token(token: str, secret_key: str) -> TokenPayload:
    """
    Validates a session token and returns its payload.
    Raises HTTPException(401) on any validation failure.
    """
    try:
        payload = jwt.decode(
            token,
            secret_key,
            algorithms=["HS256"],
            issuer=JWT_ISSUER,
            audience=JWT_AUDIENCE,
        )
        return TokenPayload(**payload)
    except jwt.ExpiredSignatureError:
        with log_step(LOG_STEP):
            logger.warning("Auth failed: Token has expired.")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has expired"
        )
    except (jwt.InvalidTokenError, ValidationError) as e:
        with log_step(LOG_STEP):
            logger.warning(f"Auth failed: Invalid token. {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token"
        )


async def get_token_from_cookie(request: Request) -> str:
    """Extracts the auth token from the 'app_auth_token' cookie."""
    token = request.cookies.get(AUTH_COOKIE)
    if not token:
        with log_step(LOG_STEP):
            logger.warning(f"Auth failed: No '{AUTH_COOKIE}' cookie.")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return token


async def get_current_principal(
    request: Request,
    token: str = Depends(get_token_from_cookie),
) -> Principal:
    """
    Resolves the browser session cookie to a user principal.
    """
    payload = decode_session_token(token, request.app.state.settings.JWT_SECRET_KEY)
    return Principal.user(payload.sub)


async def get_optional_principal(request: Request) -> Principal | None:
    """
    Like get_current_principal, but returns None instead of raising when
    the session is missing or invalid. Used by redirect-based flows.
    """
    token = request.cookies.get(AUTH_COOKIE)
    if not token:
        return None
    try:
        return await get_current_principal(request, token)
    except HTTPException as e:
        if e.status_code == status.HTTP_401_UNAUTHORIZED:
            return None
        raise
