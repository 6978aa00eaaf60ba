import logging
import urllib.parse
from datetime import datetime, timedelta, timezone

import httpx
from core.authentication import SERVICE_PRINCIPAL
from core.config import Settings
from core.errors import ConfigurationError, ProviderError
from core.logging_setup import log_context, log_step
from models.integrations import Integration, IntegrationStatus
from models.metadata import SalesforceMetadata
from pydantic import BaseModel
from services.credential_store import CredentialStore, TokenPair

logger = logging.getLogger(__name__)

LOG_STEP = "INT-SALESFORCE"

AUTHORIZE_PATH = "/services/oauth2/authorize"
TOKEN_PATH = "/services/oauth2/token"
SCOPE = "api refresh_token"
# Salesforce does not return expires_in; sessions default to two hours.
TOKEN_LIFETIME = timedelta(hours=2)
REFRESH_MARGIN = timedelta(seconds=60)
TEST_QUERY = "SELECT Id, Name FROM Account LIMIT 1"


class SalesforceTokenResponse(BaseModel):
    """The fields of the token endpoint response that are kept."""

    access_token: str
    refresh_token: str | None = None
    instance_url: str | None = None
    id: str | None = None
    issued_at: str | None = None
    signature: str | None = None
    token_type: str = "Bearer"

    def expires_at(self) -> datetime:
        if self.issued_at:
            try:
                issued = datetime.fromtimestamp(int(self.issued_at) / 1000, timezone.utc)
                return issued + TOKEN_LIFETIME
            except (TypeError, ValueError):
                logger.warning(f"Unparseable issued_at from Salesforce: {self.issued_at}")
        return datetime.now(timezone.utc) + TOKEN_LIFETIME

    def to_metadata(self) -> SalesforceMetadata:
        """
        The identity URL has the form .../id/<organization id>/<user id>.
        """
        organization_id = salesforce_user_id = None
        if self.id:
            parts = urllib.parse.urlparse(self.id).path.strip("/").split("/")
            if len(parts) >= 3 and parts[-3] == "id":
                organization_id, salesforce_user_id = parts[-2], parts[-1]
        return SalesforceMetadata(
            organization_id=organization_id,
            salesforce_user_id=salesforce_user_id,
            issued_at=self.issued_at,
            signature=self.signature,
        )

    def to_token_pair(self) -> TokenPair:
        return TokenPair(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            token_type="Bearer",
            expires_at=self.expires_at(),
        )


def _is_absolute_http_url(value: str) -> bool:
    try:
        parsed = urllib.parse.urlparse(value)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class SalesforceOAuth:
    """
    Salesforce OAuth 2.0 web-server flow and the authenticated calls that
    depend on it. All configuration comes from the injected Settings.
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self.settings = settings
        self.http_client = http_client

    @property
    def login_url(self) -> str:
        return self.settings.SALESFORCE_LOGIN_URL.rstrip("/")

    def validate_config(self) -> None:
        """Raises ConfigurationError if the OAuth client is not usable."""
        if not self.settings.SALESFORCE_CLIENT_ID.strip():
            raise ConfigurationError("SALESFORCE_CLIENT_ID is not set")
        if not _is_absolute_http_url(self.settings.SALESFORCE_REDIRECT_URI):
            raise ConfigurationError("SALESFORCE_REDIRECT_URI is missing or malformed")
        if not _is_absolute_http_url(self.settings.SALESFORCE_LOGIN_URL):
            raise ConfigurationError("SALESFORCE_LOGIN_URL is missing or malformed")

    def build_authorize_url(self) -> str:
        """
        Builds the provider authorize URL from configuration only. prompt=login
        forces a fresh credential entry so an existing browser session cannot
        be reused silently.
        """
        self.validate_config()
        params = [
            ("response_type", "code"),
            ("client_id", self.settings.SALESFORCE_CLIENT_ID),
            ("redirect_uri", self.settings.SALESFORCE_REDIRECT_URI),
            ("scope", SCOPE),
            ("prompt", "login"),
        ]
        query = urllib.parse.urlencode(params, quote_via=urllib.parse.quote)
        return f"{self.login_url}{AUTHORIZE_PATH}?{query}"

    async def _post_token(self, data: dict) -> dict:
        try:
            response = await self.http_client.post(
                f"{self.login_url}{TOKEN_PATH}",
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            with log_step(LOG_STEP):
                logger.error(f"Network error calling Salesforce token endpoint: {e}")
            raise ProviderError("Salesforce token endpoint unreachable") from e

        if response.status_code != 200:
            with log_step(LOG_STEP):
                logger.error(
                    f"Salesforce token endpoint returned {response.status_code}: {response.text}"
                )
            raise ProviderError(
                "Salesforce rejected the token request", status_code=response.status_code
            )

        try:
            return response.json()
        except ValueError as e:
            raise ProviderError("Salesforce token response was not JSON") from e

    async def exchange_code(self, code: str) -> SalesforceTokenResponse:
        """
        Exchanges an authorization code for an access/refresh token pair.
        """
        self.validate_config()
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.settings.SALESFORCE_CLIENT_ID,
            "client_secret": self.settings.SALESFORCE_CLIENT_SECRET,
            "redirect_uri": self.settings.SALESFORCE_REDIRECT_URI,
        }
        with log_step(LOG_STEP):
            logger.info("Exchanging authorization code for tokens...")
        payload = await self._post_token(data)

        try:
            tokens = SalesforceTokenResponse.model_validate(payload)
        except ValueError as e:
            raise ProviderError("Salesforce token response missing access_token") from e

        with log_step(LOG_STEP):
            logger.info("Token exchange successful.")
        return tokens

    async def refresh(self, refresh_token: str) -> SalesforceTokenResponse:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.settings.SALESFORCE_CLIENT_ID,
            "client_secret": self.settings.SALESFORCE_CLIENT_SECRET,
        }
        payload = await self._post_token(data)
        try:
            return SalesforceTokenResponse.model_validate(payload)
        except ValueError as e:
            raise ProviderError("Salesforce refresh response missing access_token") from e

    async def get_valid_access_token(
        self, store: CredentialStore, integration: Integration
    ) -> str:
        """
        Returns a usable access token for the integration, refreshing it first
        if it expires within REFRESH_MARGIN. A refused refresh marks the
        integration as errored. There is no retry.
        """
        with log_step(LOG_STEP), log_context(
            user_id=integration.user_id, integration_id=integration.id
        ):
            tokens = await store.get_tokens(SERVICE_PRINCIPAL, integration.id)
            if tokens is None:
                logger.error("Active Salesforce integration has no token record.")
                raise ProviderError("No tokens stored for this integration")

            expires_at = tokens.expires_at
            if expires_at is None or datetime.now(timezone.utc) < expires_at - REFRESH_MARGIN:
                return tokens.access_token

            logger.info("Salesforce access token expired. Refreshing...")
            if not tokens.refresh_token:
                await store.mark_status(
                    SERVICE_PRINCIPAL, integration.id, IntegrationStatus.ERROR
                )
                raise ProviderError("No refresh token available. Reconnect Salesforce.")

            try:
                refreshed = await self.refresh(tokens.refresh_token)
            except ProviderError:
                await store.mark_status(
                    SERVICE_PRINCIPAL, integration.id, IntegrationStatus.ERROR
                )
                raise

            await store.update_access_token(
                SERVICE_PRINCIPAL,
                integration.id,
                refreshed.access_token,
                refreshed.expires_at(),
                refresh_token=refreshed.refresh_token,
            )
            return refreshed.access_token

    async def run_query(
        self, instance_url: str, access_token: str, soql: str = TEST_QUERY
    ) -> httpx.Response:
        url = (
            f"{instance_url.rstrip('/')}/services/data/"
            f"{self.settings.SALESFORCE_API_VERSION}/query"
        )
        try:
            return await self.http_client.get(
                url,
                params={"q": soql},
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            with log_step(LOG_STEP):
                logger.error(f"Network error querying Salesforce: {e}")
            raise ProviderError("Salesforce API unreachable") from e
