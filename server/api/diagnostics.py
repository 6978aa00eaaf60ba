import logging
from typing import List, Optional

from core.authentication import Principal, get_current_principal
from core.errors import AuthorizationError, StoreError
from core.logging_setup import log_step
from core.security import get_service_principal
from fastapi import APIRouter, Depends, HTTPException, Query
from models.integrations import IntegrationStatus, SystemType
from pydantic import BaseModel
from services.diagnostics import DiagnosticsService, IntegrationDiagnostic

logger = logging.getLogger(__name__)


class DiagnosticsResponse(BaseModel):
    user_id: Optional[str]
    total: int
    integrations: List[IntegrationDiagnostic]


def create_diagnostics_router(diagnostics: DiagnosticsService) -> APIRouter:
    """
    Creates the read-only diagnostic routes. Token values are redacted to a
    presence flag, length and short prefix.
    """
    router = APIRouter(prefix="/api")
    LOG_STEP = "API-DIAGNOSTICS"

    async def _list(
        principal: Principal,
        user_id: Optional[str],
        system_type: Optional[SystemType],
        status: Optional[IntegrationStatus],
    ) -> DiagnosticsResponse:
        with log_step(LOG_STEP):
            try:
                entries = await diagnostics.list_integrations(
                    principal,
                    user_id=user_id,
                    system_type=system_type,
                    status=status,
                )
            except AuthorizationError:
                raise HTTPException(status_code=403, detail="Forbidden")
            except StoreError as e:
                logger.error(f"Diagnostics query failed: {e}", exc_info=True)
                raise HTTPException(
                    status_code=500, detail="An internal server error occurred."
                )
            return DiagnosticsResponse(
                user_id=user_id, total=len(entries), integrations=entries
            )

    # NOTE: Requires User Auth
    @router.get("/debug/integrations", response_model=DiagnosticsResponse)
    async def debug_my_integrations(
        system_type: Optional[SystemType] = Query(None),
        status: Optional[IntegrationStatus] = Query(None),
        principal: Principal = Depends(get_current_principal),
    ):
        """
        The caller's own integrations and token presence.
        """
        return await _list(principal, principal.user_id, system_type, status)

    # NOTE: Service key only
    @router.get("/admin/integrations", response_model=DiagnosticsResponse)
    async def admin_integrations(
        user_id: Optional[str] = Query(None),
        system_type: Optional[SystemType] = Query(None),
        status: Optional[IntegrationStatus] = Query(None),
        principal: Principal = Depends(get_service_principal),
    ):
        """
        Integrations across all users, optionally narrowed to one user.
        """
        return await _list(principal, user_id, system_type, status)

    return router
