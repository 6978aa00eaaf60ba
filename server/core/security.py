import hmac
import logging

from core.authentication import SERVICE_PRINCIPAL, Principal
from core.logging_setup import log_step
from fastapi import Depends, Header, HTTPException, Request, status

logger = logging.getLogger(__name__)

LOG_STEP = "SECURITY"


async def get_auth_token_from_header(
    authorization: str | None = Header(None),
) -> str:
    """Extracts the Bearer token from the Authorization header."""
    if not authorization:
        with log_step(LOG_STEP):
            logger.warning("Auth failed: No Authorization header.")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header",
        )

    parts = authorization.split()
    if len(parts) != 2 or parts[0] != "Bearer":
        with log_step(LOG_STEP):
            logger.warning("Auth failed: Invalid header format.")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid Authorization header format. Expected 'Bearer <token>'",
        )
    return parts[1]


async def get_service_principal(
    request: Request,
    token: str = Depends(get_auth_token_from_header),
) -> Principal:
    """
    Validates a server-to-server call against the configured service key.
    """
    expected = request.app.state.settings.SERVICE_API_KEY
    if not hmac.compare_digest(token.encode(), expected.encode()):
        with log_step(LOG_STEP):
            logger.warning("Service auth failed: key mismatch.")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized"
        )
    return SERVICE_PRINCIPAL
