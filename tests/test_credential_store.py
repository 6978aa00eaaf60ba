from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from core.authentication import SERVICE_PRINCIPAL, Principal
from core.errors import AuthorizationError, MetadataError, StoreError
from core.orm import create_session_factory
from models.integrations import Integration, IntegrationStatus, SystemType, TokenRecord
from services.credential_store import TokenPair, redacted_prefix

ALICE = Principal.user("alice")
BOB = Principal.user("bob")

PAIR = TokenPair(
    access_token="access-token-value",
    refresh_token="refresh-token-value",
    token_type="Bearer",
    expires_at=datetime(2030, 1, 1, tzinfo=timezone.utc),
)


async def _connect(store, user_id="alice", system_type=SystemType.SALESFORCE, **kwargs):
    metadata = kwargs.pop("metadata", {})
    return await store.connect_integration(
        SERVICE_PRINCIPAL,
        user_id,
        system_type,
        kwargs.pop("instance_url", "https://acme.my.salesforce.com"),
        metadata,
        kwargs.pop("token_pair", PAIR),
    )


# Purpose: verify an unknown pair returns None rather than raising.
@pytest.mark.asyncio
async def test_get_integration_absent(store):
    assert await store.get_integration(ALICE, "alice", SystemType.SALESFORCE) is None


# Purpose: verify a user principal cannot read another user's rows.
@pytest.mark.asyncio
async def test_get_integration_is_scoped_to_owner(store):
    await _connect(store, user_id="bob")

    with pytest.raises(AuthorizationError):
        await store.get_integration(ALICE, "bob", SystemType.SALESFORCE)

    assert await store.get_integration(ALICE, "alice", SystemType.SALESFORCE) is None
    assert await store.get_integration(BOB, "bob", SystemType.SALESFORCE) is not None


# Purpose: verify the newest connection wins when several rows exist for a pair.
@pytest.mark.asyncio
async def test_get_integration_returns_most_recent(store, engine):
    older = Integration(
        user_id="alice",
        system_type="salesforce",
        status="disconnected",
        instance_url="https://old.my.salesforce.com",
        metadata_={},
        connected_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )
    newer = Integration(
        user_id="alice",
        system_type="salesforce",
        status="active",
        instance_url="https://new.my.salesforce.com",
        metadata_={},
        connected_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )
    async with create_session_factory(engine)() as session:
        session.add_all([newer, older])
        await session.commit()

    found = await store.get_integration(ALICE, "alice", SystemType.SALESFORCE)
    assert found.instance_url == "https://new.my.salesforce.com"


# Purpose: verify upsert supersedes the previous active row and drops its tokens.
@pytest.mark.asyncio
async def test_upsert_supersedes_previous_active(store):
    first, _ = await _connect(store)

    second = await store.upsert_integration(
        ALICE, "alice", SystemType.SALESFORCE, "https://acme.my.salesforce.com", {}
    )

    rows = await store.list_integrations(ALICE, "alice")
    statuses = {row.id: row.status for row in rows}
    assert statuses == {
        first.id: IntegrationStatus.DISCONNECTED.value,
        second.id: IntegrationStatus.ACTIVE.value,
    }
    assert await store.get_tokens(SERVICE_PRINCIPAL, first.id) is None


# Purpose: verify supersession is per system type and per user.
@pytest.mark.asyncio
async def test_upsert_does_not_touch_other_pairs(store):
    salesforce, _ = await _connect(store)
    jira_row, _ = await _connect(
        store,
        system_type=SystemType.JIRA,
        instance_url="https://acme.atlassian.net",
        metadata={"email": "alice@example.com"},
    )
    bob_row, _ = await _connect(store, user_id="bob")

    await _connect(store)

    rows = await store.list_integrations(SERVICE_PRINCIPAL, None)
    statuses = {row.id: row.status for row in rows}
    assert statuses[salesforce.id] == "disconnected"
    assert statuses[jira_row.id] == "active"
    assert statuses[bob_row.id] == "active"


# Purpose: verify connect writes the integration and token record together.
@pytest.mark.asyncio
async def test_connect_integration_is_atomic(store, engine):
    integration, record = await _connect(store)

    assert record.integration_id == integration.id
    tokens = await store.get_tokens(SERVICE_PRINCIPAL, integration.id)
    assert tokens == PAIR


# Purpose: verify a failed token write rolls back the integration row as well.
@pytest.mark.asyncio
async def test_connect_integration_rolls_back_on_token_failure(store):
    previous, _ = await _connect(store)

    with pytest.raises(StoreError):
        await _connect(store, token_pair=TokenPair(access_token=""))

    rows = await store.list_integrations(ALICE, "alice")
    assert [(row.id, row.status) for row in rows] == [(previous.id, "active")]
    assert await store.get_tokens(SERVICE_PRINCIPAL, previous.id) is not None


# Purpose: verify metadata of the wrong shape is rejected before anything is written.
@pytest.mark.asyncio
async def test_connect_rejects_unknown_metadata_keys(store):
    with pytest.raises(MetadataError):
        await _connect(store, metadata={"favourite_colour": "green"})

    with pytest.raises(MetadataError):
        await _connect(store, system_type=SystemType.JIRA, metadata={})

    assert await store.list_integrations(SERVICE_PRINCIPAL, None) == []


# Purpose: verify tokens are encrypted at rest and decrypted on read.
@pytest.mark.asyncio
async def test_tokens_are_encrypted_at_rest(store, engine):
    integration, _ = await _connect(store)

    async with create_session_factory(engine)() as session:
        record = (
            await session.execute(
                select(TokenRecord).where(TokenRecord.integration_id == integration.id)
            )
        ).scalar_one()

    assert record.access_token != PAIR.access_token
    assert PAIR.access_token not in record.access_token
    assert record.refresh_token != PAIR.refresh_token


# Purpose: verify store_tokens replaces instead of adding a second record.
@pytest.mark.asyncio
async def test_store_tokens_replaces_existing(store, engine):
    integration, _ = await _connect(store)

    await store.store_tokens(
        SERVICE_PRINCIPAL,
        integration.id,
        TokenPair(access_token="new-access", refresh_token=None, token_type="Bearer"),
    )

    async with create_session_factory(engine)() as session:
        records = (
            await session.execute(
                select(TokenRecord).where(TokenRecord.integration_id == integration.id)
            )
        ).scalars().all()
    assert len(records) == 1

    tokens = await store.get_tokens(SERVICE_PRINCIPAL, integration.id)
    assert tokens.access_token == "new-access"
    assert tokens.refresh_token is None


# Purpose: verify token reads and writes require the service principal.
@pytest.mark.asyncio
async def test_token_access_requires_service_principal(store):
    integration, _ = await _connect(store)

    with pytest.raises(AuthorizationError):
        await store.get_tokens(ALICE, integration.id)
    with pytest.raises(AuthorizationError):
        await store.store_tokens(ALICE, integration.id, PAIR)
    with pytest.raises(AuthorizationError):
        await store.connect_integration(
            ALICE, "alice", SystemType.SALESFORCE, None, {}, PAIR
        )
    with pytest.raises(AuthorizationError):
        await store.list_integrations(ALICE, None)


# Purpose: verify in-place refresh keeps the refresh token unless a new one is given.
@pytest.mark.asyncio
async def test_update_access_token(store):
    integration, _ = await _connect(store)
    new_expiry = datetime.now(timezone.utc) + timedelta(hours=2)

    updated = await store.update_access_token(
        SERVICE_PRINCIPAL, integration.id, "refreshed-access", new_expiry
    )

    assert updated is True
    tokens = await store.get_tokens(SERVICE_PRINCIPAL, integration.id)
    assert tokens.access_token == "refreshed-access"
    assert tokens.refresh_token == PAIR.refresh_token
    assert tokens.expires_at == new_expiry

    assert (
        await store.update_access_token(SERVICE_PRINCIPAL, "missing", "x", None)
        is False
    )


# Purpose: verify disconnect marks the row and removes its token record.
@pytest.mark.asyncio
async def test_disconnect_integration(store):
    integration, _ = await _connect(store)

    disconnected = await store.disconnect_integration(
        ALICE, "alice", SystemType.SALESFORCE
    )

    assert disconnected.id == integration.id
    row = await store.get_integration(ALICE, "alice", SystemType.SALESFORCE)
    assert row.status == IntegrationStatus.DISCONNECTED.value
    assert await store.get_tokens(SERVICE_PRINCIPAL, integration.id) is None

    assert (
        await store.disconnect_integration(ALICE, "alice", SystemType.SALESFORCE)
        is None
    )


# Purpose: verify mark_status records refresh failures on the integration.
@pytest.mark.asyncio
async def test_mark_status(store):
    integration, _ = await _connect(store)

    await store.mark_status(SERVICE_PRINCIPAL, integration.id, IntegrationStatus.ERROR)

    row = await store.get_integration(ALICE, "alice", SystemType.SALESFORCE)
    assert row.status == "error"


# Purpose: verify a changed encryption key surfaces as a store error, not garbage tokens.
@pytest.mark.asyncio
async def test_wrong_key_raises_store_error(store, engine):
    from cryptography.fernet import Fernet

    from auth.encryption import TokenCipher
    from services.credential_store import CredentialStore

    integration, _ = await _connect(store)
    other = CredentialStore(
        create_session_factory(engine), TokenCipher(Fernet.generate_key().decode())
    )

    with pytest.raises(StoreError):
        await other.get_tokens(SERVICE_PRINCIPAL, integration.id)


# Purpose: verify the redacted prefix is always shorter than the secret.
@pytest.mark.parametrize("length", list(range(0, 70)))
def test_redacted_prefix_never_reveals_secret(length):
    secret = "s" * length
    prefix = redacted_prefix(secret)
    assert len(prefix) < max(length, 1)
    assert len(prefix) <= 4


# Purpose: verify the schema rejects a second active integration for the same pair.
@pytest.mark.asyncio
async def test_second_active_row_is_rejected(store, engine):
    from sqlalchemy.exc import IntegrityError

    await _connect(store)

    async with create_session_factory(engine)() as session:
        session.add(
            Integration(
                user_id="alice",
                system_type="salesforce",
                status="active",
                instance_url="https://racer.my.salesforce.com",
                metadata_={},
            )
        )
        with pytest.raises(IntegrityError):
            await session.commit()

    async with create_session_factory(engine)() as session:
        session.add_all(
            [
                Integration(
                    user_id="alice",
                    system_type="salesforce",
                    status=status,
                    metadata_={},
                )
                for status in ("disconnected", "disconnected", "error")
            ]
        )
        await session.commit()

    rows = await store.list_integrations(ALICE, "alice", status=IntegrationStatus.ACTIVE)
    assert len(rows) == 1


# Purpose: verify a unique-index conflict surfaces as a store error.
def test_integrity_conflict_maps_to_store_error(cipher):
    from sqlalchemy.exc import IntegrityError

    from services.credential_store import CredentialStore

    error = CredentialStore(None, cipher)._store_error(
        "connect_integration",
        IntegrityError("INSERT INTO integrations", {}, Exception("UNIQUE constraint failed")),
    )

    assert isinstance(error, StoreError)
    assert "conflicts" in str(error)
