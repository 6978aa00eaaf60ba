import base64
import logging
import re
from dataclasses import dataclass

import httpx
from core.errors import ProviderError
from core.logging_setup import log_step
from models.metadata import JiraMetadata
from pydantic import BaseModel
from services.credential_store import TokenPair

logger = logging.getLogger(__name__)

LOG_STEP = "INT-JIRA"

MYSELF_PATH = "/rest/api/3/myself"


class JiraConnectRequest(BaseModel):
    """Matches the JSON body from the settings page"""

    jira_url: str
    email: str
    api_token: str


@dataclass(frozen=True)
class JiraConnection:
    base_url: str
    metadata: JiraMetadata
    token_pair: TokenPair


def normalize_base_url(jira_url: str) -> str:
    """
    Accepts 'acme.atlassian.net', 'https://acme.atlassian.net/' and similar,
    and returns 'https://acme.atlassian.net'.
    """
    cleaned = re.sub(r"^https?://", "", jira_url.strip()).rstrip("/")
    if not cleaned or " " in cleaned:
        raise ValueError("Invalid Jira URL")
    return f"https://{cleaned}"


def _basic_auth(email: str, api_token: str) -> str:
    creds = f"{email}:{api_token}"
    return f"Basic {base64.b64encode(creds.encode()).decode()}"


async def verify_credentials(
    http_client: httpx.AsyncClient,
    request: JiraConnectRequest,
    timeout: float = 15.0,
) -> JiraConnection:
    """
    Checks the API token against the Jira 'myself' endpoint and returns what
    should be stored. Nothing is persisted here.
    """
    with log_step(LOG_STEP):
        if not request.jira_url or not request.email or not request.api_token:
            raise ValueError("Jira URL, email, and API token are required.")

        base_url = normalize_base_url(request.jira_url)

        try:
            response = await http_client.get(
                f"{base_url}{MYSELF_PATH}",
                headers={
                    "Authorization": _basic_auth(request.email, request.api_token),
                    "Accept": "application/json",
                },
                timeout=timeout,
            )
        except httpx.HTTPError as e:
            logger.error(f"Network error verifying Jira credentials: {e}")
            raise ProviderError("Jira is unreachable") from e

        if response.status_code != 200:
            logger.warning(
                f"Jira connection test failed with {response.status_code}: {response.text}"
            )
            raise ProviderError(
                "Jira rejected the credentials", status_code=response.status_code
            )

        try:
            jira_user = response.json()
        except ValueError as e:
            logger.warning("Jira returned a non-JSON response to the credential check.")
            raise ProviderError("Jira returned an unexpected response") from e
        if not isinstance(jira_user, dict):
            raise ProviderError("Jira returned an unexpected response")

        logger.info(f"Jira connection verified for {jira_user.get('displayName')}")

        return JiraConnection(
            base_url=base_url,
            metadata=JiraMetadata(
                email=request.email,
                jira_user_name=jira_user.get("displayName"),
                jira_account_id=jira_user.get("accountId"),
            ),
            token_pair=TokenPair(
                access_token=request.api_token,
                refresh_token=None,
                token_type="api_token",
                expires_at=None,
            ),
        )
