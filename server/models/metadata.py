"""Typed per-system metadata stored on an integration row."""

from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from core.errors import MetadataError
from models.integrations import SystemType


class _Metadata(BaseModel):
    model_config = ConfigDict(extra="forbid")


class SalesforceMetadata(_Metadata):
    organization_id: str | None = None
    salesforce_user_id: str | None = None
    issued_at: str | None = None
    signature: str | None = None


class JiraMetadata(_Metadata):
    email: str
    jira_user_name: str | None = None
    jira_account_id: str | None = None


METADATA_MODELS: dict[SystemType, type[_Metadata]] = {
    SystemType.SALESFORCE: SalesforceMetadata,
    SystemType.JIRA: JiraMetadata,
}


def parse_metadata(system_type: SystemType, raw: Any) -> _Metadata:
    """
    Validates a metadata mapping against the model for its system type.
    Raises MetadataError on unknown keys or wrong value types.
    """
    model = METADATA_MODELS[SystemType(system_type)]
    if isinstance(raw, model):
        return raw
    try:
        return model.model_validate(raw or {})
    except ValidationError as e:
        raise MetadataError(
            f"Invalid {SystemType(system_type).value} metadata: {e.error_count()} error(s)"
        ) from e


def metadata_to_dict(metadata: _Metadata) -> dict:
    return metadata.model_dump(exclude_none=True)
