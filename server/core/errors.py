class IntegrationError(Exception):
    """Base class for errors raised by the integration layer."""


class ConfigurationError(IntegrationError):
    """Required OAuth configuration is missing or malformed."""


class ProviderError(IntegrationError):
    """The external provider rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AuthorizationError(IntegrationError):
    """The principal is not allowed to perform the requested operation."""


class StoreError(IntegrationError):
    """The credential store could not read or write."""


class MetadataError(IntegrationError):
    """Integration metadata does not match the shape for its system type."""
