import logging
import urllib.parse

from core.authentication import SERVICE_PRINCIPAL, get_optional_principal
from core.config import Settings
from core.errors import ConfigurationError, IntegrationError, ProviderError
from core.logging_setup import log_context, log_step
from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from integrations.salesforce import SalesforceOAuth
from models.integrations import SystemType
from services.credential_store import CredentialStore

logger = logging.getLogger(__name__)


def fallback_redirect(settings: Settings, **params: str) -> RedirectResponse:
    """Redirects to the app's fallback page with an opaque status code."""
    query = urllib.parse.urlencode(params)
    return RedirectResponse(url=f"{settings.FALLBACK_PATH}?{query}")


def create_auth_router(
    settings: Settings,
    oauth: SalesforceOAuth,
    store: CredentialStore,
) -> APIRouter:
    """
    Creates the REST API router for the Salesforce OAuth flow.
    """
    router = APIRouter(
        prefix="/api/auth",
    )
    LOG_STEP = "API-AUTH"

    @router.get("/salesforce")
    async def salesforce_login(principal=Depends(get_optional_principal)):
        """
        Redirects the browser to the Salesforce authorize page.
        Nothing is stored until the callback succeeds.
        """
        with log_step(LOG_STEP):
            if principal is None:
                logger.warning("Salesforce OAuth requested without a session.")
                return fallback_redirect(settings, error="not_authenticated")

            try:
                authorize_url = oauth.build_authorize_url()
            except ConfigurationError as e:
                logger.error(f"Salesforce OAuth is misconfigured: {e}")
                return fallback_redirect(settings, error="salesforce_oauth_failed")
            except Exception as e:
                logger.error(
                    f"Salesforce OAuth initiation error: {e}", exc_info=True
                )
                return fallback_redirect(settings, error="salesforce_oauth_failed")

            with log_context(user_id=principal.user_id):
                logger.info(f"Redirecting to Salesforce OAuth: {authorize_url}")
            return RedirectResponse(url=authorize_url)

    @router.get("/salesforce/callback")
    async def salesforce_callback(
        request: Request,
        principal=Depends(get_optional_principal),
    ):
        """
        Handles the OAuth redirect from Salesforce.
        Exchanges the code for tokens and stores the integration and its
        tokens in one transaction.
        """
        with log_step(LOG_STEP):
            error = request.query_params.get("error")
            code = request.query_params.get("code")

            if error:
                logger.warning(f"Salesforce returned an OAuth error: {error}")
                return fallback_redirect(settings, error="salesforce_auth_failed")
            if not code:
                logger.warning("Salesforce callback missing 'code' query parameter.")
                return fallback_redirect(settings, error="no_code")
            if principal is None:
                logger.warning("Salesforce callback received without a session.")
                return fallback_redirect(settings, error="not_authenticated")

            user_id = principal.user_id
            with log_context(user_id=user_id):
                try:
                    tokens = await oauth.exchange_code(code)
                    integration, _ = await store.connect_integration(
                        SERVICE_PRINCIPAL,
                        user_id,
                        SystemType.SALESFORCE,
                        tokens.instance_url,
                        tokens.to_metadata(),
                        tokens.to_token_pair(),
                    )
                except ConfigurationError as e:
                    logger.error(f"Salesforce OAuth is misconfigured: {e}")
                    return fallback_redirect(
                        settings, error="salesforce_oauth_failed"
                    )
                except ProviderError as e:
                    logger.error(f"Salesforce token exchange failed: {e}")
                    return fallback_redirect(
                        settings, error="salesforce_connection_failed"
                    )
                except IntegrationError as e:
                    logger.error(f"Failed to store Salesforce integration: {e}")
                    return fallback_redirect(
                        settings, error="salesforce_connection_failed"
                    )
                except Exception as e:
                    logger.error(
                        f"Unhandled error in GET /api/auth/salesforce/callback: {e}",
                        exc_info=True,
                    )
                    return fallback_redirect(
                        settings, error="salesforce_connection_failed"
                    )

                with log_context(integration_id=integration.id):
                    logger.info("Salesforce integration connected.")
            return fallback_redirect(settings, salesforce="connected")

    return router
