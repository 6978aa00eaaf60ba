import sys

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Defines the application's configuration settings.

    Pydantic will automatically read from the environment or a .env file.
    The Salesforce client credentials default to empty so that a missing value
    surfaces as an error redirect in the OAuth flow instead of a failed boot.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    DATABASE_URL: str

    ENCRYPTION_KEY: str

    JWT_SECRET_KEY: str

    SERVICE_API_KEY: str

    SALESFORCE_LOGIN_URL: str

    SALESFORCE_CLIENT_ID: str = ""

    SALESFORCE_CLIENT_SECRET: str = ""

    SALESFORCE_REDIRECT_URI: str = ""

    SALESFORCE_API_VERSION: str = "v59.0"

    JIRA_API_TIMEOUT_SECONDS: float = 15.0

    FALLBACK_PATH: str = "/dashboard"

    LOGGING_LEVEL: str = "INFO"


def load_settings() -> Settings:
    try:
        return Settings()
    except Exception as e:
        print(f"FATAL: Failed to load application settings: {e}", file=sys.stderr)
        sys.exit("Failed to load configuration. Exiting.")


settings = load_settings()
