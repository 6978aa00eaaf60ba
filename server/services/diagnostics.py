import logging
from datetime import datetime

from core.authentication import SERVICE_PRINCIPAL, Principal
from core.logging_setup import log_step
from models.integrations import IntegrationStatus, SystemType
from pydantic import BaseModel
from services.credential_store import CredentialStore, as_utc

logger = logging.getLogger(__name__)

LOG_STEP = "DIAGNOSTICS"


class TokenPreview(BaseModel):
    """Never carries the token itself."""

    present: bool
    readable: bool = True
    length: int = 0
    prefix: str = ""


class IntegrationDiagnostic(BaseModel):
    id: str
    user_id: str
    system_type: str
    status: str
    instance_url: str | None
    connected_at: datetime | None
    has_tokens: bool
    token_type: str | None = None
    expires_at: datetime | None = None
    has_refresh_token: bool = False
    access_token_preview: TokenPreview
    consistent: bool


class IntegrationHealth(BaseModel):
    id: str
    type: str
    status: str
    issues: list[str]
    has_credentials: bool
    is_active: bool
    instance_url: str | None


class HealthReport(BaseModel):
    overall: str
    integrations: list[IntegrationHealth]
    summary: dict[str, int]


class DiagnosticsService:
    """
    Read-only views over integration and token state. Token summaries are
    fetched with the service principal internally, but only lengths and
    short prefixes are ever returned, and integration rows stay scoped to
    the caller.
    """

    def __init__(self, store: CredentialStore):
        self.store = store

    async def list_integrations(
        self,
        principal: Principal,
        user_id: str | None = None,
        system_type: SystemType | None = None,
        status: IntegrationStatus | None = None,
    ) -> list[IntegrationDiagnostic]:
        if not principal.is_service:
            user_id = principal.user_id

        with log_step(LOG_STEP):
            integrations = await self.store.list_integrations(
                principal, user_id, system_type=system_type, status=status
            )
            summaries = await self.store.list_token_summaries(
                SERVICE_PRINCIPAL,
                user_id=user_id,
                system_type=system_type,
                status=status,
            )

            entries = []
            for integration in integrations:
                summary = summaries.get(integration.id)
                is_active = integration.status == IntegrationStatus.ACTIVE.value
                entries.append(
                    IntegrationDiagnostic(
                        id=integration.id,
                        user_id=integration.user_id,
                        system_type=integration.system_type,
                        status=integration.status,
                        instance_url=integration.instance_url,
                        connected_at=as_utc(integration.connected_at),
                        has_tokens=summary is not None,
                        token_type=summary.token_type if summary else None,
                        expires_at=summary.expires_at if summary else None,
                        has_refresh_token=(
                            summary.has_refresh_token if summary else False
                        ),
                        access_token_preview=(
                            TokenPreview(
                                present=True,
                                readable=summary.readable,
                                length=summary.access_token_length,
                                prefix=summary.access_token_prefix,
                            )
                            if summary
                            else TokenPreview(present=False)
                        ),
                        consistent=not (
                            is_active and (summary is None or not summary.readable)
                        ),
                    )
                )

            inconsistent = [entry.id for entry in entries if not entry.consistent]
            if inconsistent:
                logger.warning(
                    f"Active integrations without usable token records: {inconsistent}"
                )
            return entries

    async def health(self, principal: Principal) -> HealthReport:
        """
        Per-system health for the caller, judged on the newest integration of
        each system type: 'critical' when it is active without credentials,
        'warning' when it is not active.
        """
        latest = {}
        for entry in await self.list_integrations(principal):
            latest.setdefault(entry.system_type, entry)

        health = []
        for entry in latest.values():
            is_active = entry.status == IntegrationStatus.ACTIVE.value
            issues = []
            if is_active and not entry.has_tokens:
                state = "critical"
                issues.append("Missing credentials - reconnect required")
            elif is_active and not entry.access_token_preview.readable:
                state = "critical"
                issues.append("Stored credentials cannot be decrypted - reconnect required")
            elif not is_active:
                state = "warning"
                issues.append("Integration is not active")
            else:
                state = "healthy"

            health.append(
                IntegrationHealth(
                    id=entry.id,
                    type=entry.system_type,
                    status=state,
                    issues=issues,
                    has_credentials=entry.has_tokens,
                    is_active=is_active,
                    instance_url=entry.instance_url,
                )
            )

        critical = sum(1 for h in health if h.status == "critical")
        warnings = sum(1 for h in health if h.status == "warning")
        overall = "critical" if critical else "warning" if warnings else "healthy"

        return HealthReport(
            overall=overall,
            integrations=health,
            summary={
                "total": len(health),
                "healthy": len(health) - critical - warnings,
                "warnings": warnings,
                "critical": critical,
            },
        )
