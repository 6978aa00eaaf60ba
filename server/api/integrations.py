import logging

import httpx
from core.authentication import SERVICE_PRINCIPAL, Principal, get_current_principal
from core.config import Settings
from core.errors import (
    AuthorizationError,
    MetadataError,
    ProviderError,
    StoreError,
)
from core.logging_setup import log_context, log_step
from fastapi import APIRouter, Depends, HTTPException, status
from integrations import jira
from integrations.salesforce import SalesforceOAuth
from models.integrations import IntegrationStatus, SystemType
from pydantic import BaseModel
from services.credential_store import CredentialStore
from services.diagnostics import DiagnosticsService, HealthReport

logger = logging.getLogger(__name__)


class ConnectedIntegration(BaseModel):
    id: str
    system_type: str
    instance_url: str | None
    status: str


class DisconnectResponse(BaseModel):
    status: str
    id: str


def raise_for_store_error(e: Exception, operation: str):
    """Maps credential store failures to short HTTP errors."""
    if isinstance(e, AuthorizationError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    logger.error(f"{operation} failed: {e}", exc_info=True)
    raise HTTPException(
        status_code=500, detail="An internal server error occurred."
    )


def create_integrations_router(
    settings: Settings,
    store: CredentialStore,
    diagnostics: DiagnosticsService,
    oauth: SalesforceOAuth,
    http_client: httpx.AsyncClient,
) -> APIRouter:
    """
    Creates the REST API router for managing a user's integrations.
    """
    router = APIRouter(prefix="/api")
    LOG_STEP = "API-INTEGRATIONS"

    @router.post("/jira/connect", response_model=ConnectedIntegration)
    async def connect_jira(
        request: jira.JiraConnectRequest,
        principal: Principal = Depends(get_current_principal),
    ):
        """
        Verifies a Jira API token and stores it as the user's Jira integration.
        """
        with log_step(LOG_STEP), log_context(user_id=principal.user_id):
            try:
                connection = await jira.verify_credentials(
                    http_client, request, timeout=settings.JIRA_API_TIMEOUT_SECONDS
                )
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            except ProviderError:
                raise HTTPException(
                    status_code=400,
                    detail="Failed to connect to Jira. Please check your URL, email, and API token.",
                )

            try:
                integration, _ = await store.connect_integration(
                    SERVICE_PRINCIPAL,
                    principal.user_id,
                    SystemType.JIRA,
                    connection.base_url,
                    connection.metadata,
                    connection.token_pair,
                )
            except MetadataError as e:
                raise HTTPException(status_code=400, detail=str(e))
            except (AuthorizationError, StoreError) as e:
                raise_for_store_error(e, "Jira connect")

            logger.info(f"Jira integration {integration.id} connected.")
            return ConnectedIntegration(
                id=integration.id,
                system_type=integration.system_type,
                instance_url=integration.instance_url,
                status=integration.status,
            )

    @router.post(
        "/integrations/{system_type}/disconnect", response_model=DisconnectResponse
    )
    async def disconnect(
        system_type: SystemType,
        principal: Principal = Depends(get_current_principal),
    ):
        """
        Marks the user's active integration as disconnected and drops its tokens.
        """
        with log_step(LOG_STEP), log_context(user_id=principal.user_id):
            try:
                integration = await store.disconnect_integration(
                    principal, principal.user_id, system_type
                )
            except (AuthorizationError, StoreError) as e:
                raise_for_store_error(e, "Disconnect")

            if integration is None:
                raise HTTPException(
                    status_code=404,
                    detail=f"No active {system_type.value} integration found",
                )
            return DisconnectResponse(status="disconnected", id=integration.id)

    @router.get("/integrations/health", response_model=HealthReport)
    async def integrations_health(
        principal: Principal = Depends(get_current_principal),
    ):
        """
        Returns the status of the user's integrations.
        """
        with log_step(LOG_STEP):
            try:
                return await diagnostics.health(principal)
            except (AuthorizationError, StoreError) as e:
                raise_for_store_error(e, "Health check")

    @router.get("/salesforce/test-connection")
    async def salesforce_test_connection(
        principal: Principal = Depends(get_current_principal),
    ):
        """
        Makes a simple API call to verify the stored Salesforce tokens work.
        """
        with log_step(LOG_STEP), log_context(user_id=principal.user_id):
            try:
                integration = await store.get_integration(
                    principal,
                    principal.user_id,
                    SystemType.SALESFORCE,
                    status=IntegrationStatus.ACTIVE,
                )
            except (AuthorizationError, StoreError) as e:
                raise_for_store_error(e, "Salesforce test")

            if integration is None:
                return {"connected": False, "error": "Salesforce not connected"}

            try:
                access_token = await oauth.get_valid_access_token(store, integration)
                response = await oauth.run_query(
                    integration.instance_url or "", access_token
                )
            except ProviderError as e:
                logger.warning(f"Salesforce connection test failed: {e}")
                return {
                    "connected": False,
                    "error": "Salesforce token expired or invalid",
                    "needs_reconnect": True,
                }
            except StoreError as e:
                raise_for_store_error(e, "Salesforce test")

            if response.status_code == 401:
                return {
                    "connected": False,
                    "error": "Access token expired or invalid",
                    "status_code": 401,
                }
            if response.status_code != 200:
                logger.warning(
                    f"Salesforce API error {response.status_code}: {response.text}"
                )
                return {
                    "connected": False,
                    "error": "Salesforce API error",
                    "status_code": response.status_code,
                }

            records = response.json().get("records") or []
            return {
                "connected": True,
                "integration": {
                    "id": integration.id,
                    "instance_url": integration.instance_url,
                    "connected_at": integration.connected_at,
                },
                "test": {"success": True, "records_returned": len(records)},
            }

    return router
