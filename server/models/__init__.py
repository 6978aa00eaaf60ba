from .integrations import Integration, IntegrationStatus, SystemType, TokenRecord
from .metadata import JiraMetadata, SalesforceMetadata, parse_metadata

__all__ = [
    "Integration",
    "IntegrationStatus",
    "JiraMetadata",
    "SalesforceMetadata",
    "SystemType",
    "TokenRecord",
    "parse_metadata",
]
