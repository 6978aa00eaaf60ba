"""
Persistence for integrations and their OAuth token records.

Every public method takes the acting Principal first. Integration rows are
always filtered by owning user; token material is only readable and writable
by the service principal.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from auth.encryption import TokenCipher
from core.authentication import Principal
from core.errors import AuthorizationError, StoreError
from core.logging_setup import log_context, log_step
from models.integrations import Integration, IntegrationStatus, SystemType, TokenRecord
from models.metadata import metadata_to_dict, parse_metadata
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

LOG_STEP = "CRED-STORE"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_at: datetime | None = None


@dataclass(frozen=True)
class TokenSummary:
    """A token record described without any secret material."""

    integration_id: str
    user_id: str
    system_type: str
    integration_status: str
    token_type: str
    expires_at: datetime | None
    access_token_length: int
    access_token_prefix: str
    has_refresh_token: bool
    updated_at: datetime | None
    readable: bool = True


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _require_service(principal: Principal, operation: str) -> None:
    if not principal.is_service:
        with log_step(LOG_STEP):
            logger.warning(
                f"Denied {operation}: token access requires the service principal."
            )
        raise AuthorizationError(f"{operation} requires a service credential")


def _require_owner(principal: Principal, user_id: str) -> None:
    if principal.is_service:
        return
    if not principal.user_id or principal.user_id != user_id:
        with log_step(LOG_STEP):
            logger.warning(
                f"Denied access: user {principal.user_id} requested rows of {user_id}."
            )
        raise AuthorizationError("Cannot access another user's integrations")


class CredentialStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: TokenCipher,
    ):
        self._session_factory = session_factory
        self._cipher = cipher

    # ------------------------------------------------------------------
    # Integrations
    # ------------------------------------------------------------------

    async def get_integration(
        self,
        principal: Principal,
        user_id: str,
        system_type: SystemType,
        status: IntegrationStatus | None = None,
    ) -> Integration | None:
        """
        Returns the most recently connected integration for the pair, or None.
        """
        _require_owner(principal, user_id)
        query = (
            select(Integration)
            .where(
                Integration.user_id == user_id,
                Integration.system_type == SystemType(system_type).value,
            )
            .order_by(Integration.connected_at.desc(), Integration.updated_at.desc())
            .limit(1)
        )
        if status is not None:
            query = query.where(Integration.status == IntegrationStatus(status).value)

        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise self._store_error("get_integration", e) from e

    async def list_integrations(
        self,
        principal: Principal,
        user_id: str | None,
        system_type: SystemType | None = None,
        status: IntegrationStatus | None = None,
    ) -> list[Integration]:
        """
        Lists integrations, newest first. Only the service principal may pass
        user_id=None to list across all users.
        """
        if user_id is None:
            _require_service(principal, "list_integrations across users")
        else:
            _require_owner(principal, user_id)

        query = select(Integration).order_by(Integration.connected_at.desc())
        if user_id is not None:
            query = query.where(Integration.user_id == user_id)
        if system_type is not None:
            query = query.where(
                Integration.system_type == SystemType(system_type).value
            )
        if status is not None:
            query = query.where(Integration.status == IntegrationStatus(status).value)

        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise self._store_error("list_integrations", e) from e

    async def upsert_integration(
        self,
        principal: Principal,
        user_id: str,
        system_type: SystemType,
        instance_url: str | None,
        metadata: Any = None,
    ) -> Integration:
        """
        Creates the active integration for the pair, superseding any
        previously active one.
        """
        _require_owner(principal, user_id)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    integration = await self._upsert_integration(
                        session, user_id, system_type, instance_url, metadata
                    )
            return integration
        except SQLAlchemyError as e:
            raise self._store_error("upsert_integration", e) from e

    async def mark_status(
        self,
        principal: Principal,
        integration_id: str,
        status: IntegrationStatus,
    ) -> None:
        _require_service(principal, "mark_status")
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        update(Integration)
                        .where(Integration.id == integration_id)
                        .values(status=IntegrationStatus(status).value)
                    )
            with log_step(LOG_STEP), log_context(integration_id=integration_id):
                logger.info(f"Integration status set to {IntegrationStatus(status).value}.")
        except SQLAlchemyError as e:
            raise self._store_error("mark_status", e) from e

    async def disconnect_integration(
        self,
        principal: Principal,
        user_id: str,
        system_type: SystemType,
    ) -> Integration | None:
        """
        Marks the active integration for the pair as disconnected and removes
        its token record. Returns None if there was nothing to disconnect.
        """
        _require_owner(principal, user_id)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        select(Integration).where(
                            Integration.user_id == user_id,
                            Integration.system_type == SystemType(system_type).value,
                            Integration.status == IntegrationStatus.ACTIVE.value,
                        )
                    )
                    integrations = list(result.scalars().all())
                    if not integrations:
                        return None

                    ids = [integration.id for integration in integrations]
                    await session.execute(
                        delete(TokenRecord).where(TokenRecord.integration_id.in_(ids))
                    )
                    for integration in integrations:
                        integration.status = IntegrationStatus.DISCONNECTED.value

            with log_step(LOG_STEP), log_context(user_id=user_id):
                logger.info(
                    f"Disconnected {SystemType(system_type).value} integration(s): {ids}"
                )
            return integrations[0]
        except SQLAlchemyError as e:
            raise self._store_error("disconnect_integration", e) from e

    # ------------------------------------------------------------------
    # Tokens (service principal only)
    # ------------------------------------------------------------------

    async def store_tokens(
        self,
        principal: Principal,
        integration_id: str,
        token_pair: TokenPair,
    ) -> TokenRecord:
        """
        Replaces the token record of an integration. Access and refresh token
        are committed together or not at all.
        """
        _require_service(principal, "store_tokens")
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    record = await self._store_tokens(session, integration_id, token_pair)
            return record
        except SQLAlchemyError as e:
            raise self._store_error("store_tokens", e) from e

    async def connect_integration(
        self,
        principal: Principal,
        user_id: str,
        system_type: SystemType,
        instance_url: str | None,
        metadata: Any,
        token_pair: TokenPair,
    ) -> tuple[Integration, TokenRecord]:
        """
        Upserts the integration and stores its tokens in a single transaction,
        so the new active row is never visible without its token record.
        """
        _require_service(principal, "connect_integration")
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    integration = await self._upsert_integration(
                        session, user_id, system_type, instance_url, metadata
                    )
                    record = await self._store_tokens(
                        session, integration.id, token_pair
                    )
            return integration, record
        except SQLAlchemyError as e:
            raise self._store_error("connect_integration", e) from e

    async def get_tokens(
        self, principal: Principal, integration_id: str
    ) -> TokenPair | None:
        _require_service(principal, "get_tokens")
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(TokenRecord).where(
                        TokenRecord.integration_id == integration_id
                    )
                )
                record = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise self._store_error("get_tokens", e) from e

        if record is None:
            with log_step(LOG_STEP), log_context(integration_id=integration_id):
                logger.warning("No token record found for integration.")
            return None

        return TokenPair(
            access_token=self._cipher.decrypt(record.access_token),
            refresh_token=self._cipher.decrypt_optional(record.refresh_token),
            token_type=record.token_type,
            expires_at=as_utc(record.expires_at),
        )

    async def update_access_token(
        self,
        principal: Principal,
        integration_id: str,
        access_token: str,
        expires_at: datetime | None,
        refresh_token: str | None = None,
    ) -> bool:
        """
        Refreshes the access token in place. The refresh token is only
        replaced when the provider rotated it. Returns False if no record
        exists for the integration.
        """
        _require_service(principal, "update_access_token")
        values = {
            "access_token": self._cipher.encrypt(access_token),
            "expires_at": expires_at,
        }
        if refresh_token:
            values["refresh_token"] = self._cipher.encrypt(refresh_token)

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(TokenRecord)
                        .where(TokenRecord.integration_id == integration_id)
                        .values(**values)
                    )
                    updated = result.rowcount > 0
        except SQLAlchemyError as e:
            raise self._store_error("update_access_token", e) from e

        with log_step(LOG_STEP), log_context(integration_id=integration_id):
            if updated:
                logger.info("Access token refreshed in place.")
            else:
                logger.warning("Token refresh found no record to update.")
        return updated

    async def list_token_summaries(
        self,
        principal: Principal,
        user_id: str | None = None,
        system_type: SystemType | None = None,
        status: IntegrationStatus | None = None,
    ) -> dict[str, TokenSummary]:
        """
        Describes token records keyed by integration id, without exposing
        secrets. Decryption happens here so only lengths and a short prefix
        ever leave the store.
        """
        _require_service(principal, "list_token_summaries")
        query = select(TokenRecord, Integration).join(
            Integration, Integration.id == TokenRecord.integration_id
        )
        if user_id is not None:
            query = query.where(Integration.user_id == user_id)
        if system_type is not None:
            query = query.where(
                Integration.system_type == SystemType(system_type).value
            )
        if status is not None:
            query = query.where(Integration.status == IntegrationStatus(status).value)

        try:
            async with self._session_factory() as session:
                rows = (await session.execute(query)).all()
        except SQLAlchemyError as e:
            raise self._store_error("list_token_summaries", e) from e

        summaries = {}
        for record, integration in rows:
            try:
                access_token = self._cipher.decrypt(record.access_token)
                readable = True
            except StoreError:
                with log_step(LOG_STEP), log_context(integration_id=integration.id):
                    logger.warning("Token record cannot be decrypted with the current key.")
                access_token = ""
                readable = False
            summaries[integration.id] = TokenSummary(
                integration_id=integration.id,
                user_id=integration.user_id,
                system_type=integration.system_type,
                integration_status=integration.status,
                token_type=record.token_type,
                expires_at=as_utc(record.expires_at),
                access_token_length=len(access_token),
                access_token_prefix=redacted_prefix(access_token),
                has_refresh_token=bool(record.refresh_token),
                updated_at=as_utc(record.updated_at),
                readable=readable,
            )
        return summaries

    # ------------------------------------------------------------------
    # Transaction-scoped helpers
    # ------------------------------------------------------------------

    async def _upsert_integration(
        self,
        session: AsyncSession,
        user_id: str,
        system_type: SystemType,
        instance_url: str | None,
        metadata: Any,
    ) -> Integration:
        system_type = SystemType(system_type)
        validated = parse_metadata(system_type, metadata)

        result = await session.execute(
            select(Integration).where(
                Integration.user_id == user_id,
                Integration.system_type == system_type.value,
                Integration.status == IntegrationStatus.ACTIVE.value,
            )
        )
        superseded = list(result.scalars().all())
        if superseded:
            superseded_ids = [integration.id for integration in superseded]
            await session.execute(
                delete(TokenRecord).where(
                    TokenRecord.integration_id.in_(superseded_ids)
                )
            )
            for integration in superseded:
                integration.status = IntegrationStatus.DISCONNECTED.value
            # The active-pair index must see the old rows released before the insert.
            await session.flush()
            with log_step(LOG_STEP), log_context(user_id=user_id):
                logger.info(
                    f"Superseding active {system_type.value} integration(s): {superseded_ids}"
                )

        integration = Integration(
            user_id=user_id,
            system_type=system_type.value,
            status=IntegrationStatus.ACTIVE.value,
            instance_url=instance_url,
            metadata_=metadata_to_dict(validated),
            connected_at=datetime.now(timezone.utc),
        )
        session.add(integration)
        await session.flush()

        with log_step(LOG_STEP), log_context(
            user_id=user_id, integration_id=integration.id
        ):
            logger.info(f"Stored active {system_type.value} integration.")
        return integration

    async def _store_tokens(
        self,
        session: AsyncSession,
        integration_id: str,
        token_pair: TokenPair,
    ) -> TokenRecord:
        if not token_pair.access_token:
            raise StoreError("Refusing to store a token record without an access token")

        await session.execute(
            delete(TokenRecord).where(TokenRecord.integration_id == integration_id)
        )
        record = TokenRecord(
            integration_id=integration_id,
            access_token=self._cipher.encrypt(token_pair.access_token),
            refresh_token=self._cipher.encrypt_optional(token_pair.refresh_token),
            token_type=token_pair.token_type,
            expires_at=token_pair.expires_at,
        )
        session.add(record)
        await session.flush()

        with log_step(LOG_STEP), log_context(integration_id=integration_id):
            logger.info(f"Stored {token_pair.token_type} token record.")
        return record

    def _store_error(self, operation: str, error: SQLAlchemyError) -> StoreError:
        if isinstance(error, IntegrityError):
            with log_step(LOG_STEP):
                logger.warning(
                    f"Credential store {operation} conflicted with a concurrent write: {error}"
                )
            return StoreError(f"{operation} conflicts with an existing active integration")
        with log_step(LOG_STEP):
            logger.error(f"Credential store {operation} failed: {error}", exc_info=True)
        return StoreError(f"{operation} failed")


PREVIEW_MAX_CHARS = 4


def redacted_prefix(secret: str | None) -> str:
    """
    Returns at most a quarter of the secret, capped at PREVIEW_MAX_CHARS,
    so the prefix is always strictly shorter than the secret itself.
    """
    if not secret:
        return ""
    return secret[: min(PREVIEW_MAX_CHARS, len(secret) // 4)]
