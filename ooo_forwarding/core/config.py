"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version
    VERSION: str = "0.01.00"

    # Database
    DATABASE_URL: str

    # Session Token (supports key rotation)
    JWT_SECRET: str = "change-this-in-production"
    JWT_SECRET_PREVIOUS: str = ""  # Set during rotation, clear after
    JWT_EXPIRES_HOURS: int = 4

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Internal scheduled endpoints (cron jobs)
    INTERNAL_SECRET: str = ""  # Secret for /internal/scheduled/* endpoints

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Microsoft Graph (client credentials, app-level mailbox access)
    AZURE_TENANT_ID: str = ""
    AZURE_CLIENT_ID: str = ""
    AZURE_CLIENT_SECRET: str = ""
    GRAPH_API_BASE: str = "https://graph.microsoft.com/v1.0"
    GRAPH_LOGIN_BASE: str = "https://login.microsoftonline.com"
    GRAPH_TIMEOUT_SECONDS: float = 10.0

    # Forwarding rule (one well-known rule per mailbox)
    FORWARDING_RULE_NAME: str = "ProConnect OOO Forwarding"

    # Reconciler
    GATEWAY_CALL_TIMEOUT_SECONDS: float = 30.0
    RECONCILE_LOOP_ENABLED: bool = True
    RECONCILE_INTERVAL_SECONDS: int = 60
    RECONCILE_STARTUP_DELAY_SECONDS: int = 5  # let DB connections settle

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def jwt_secrets(self) -> list[str]:
        """Returns list of valid secrets (current first, then previous if set)."""
        secrets = [self.JWT_SECRET]
        if self.JWT_SECRET_PREVIOUS:
            secrets.append(self.JWT_SECRET_PREVIOUS)
        return secrets

    @property
    def internal_dev_bypass(self) -> bool:
        """
        Unauthenticated internal endpoints, only without INTERNAL_SECRET and
        only when ENV=dev was set explicitly (the default does not count).
        """
        return (
            not self.INTERNAL_SECRET
            and self.ENV == "dev"
            and "ENV" in self.model_fields_set
        )

    @property
    def graph_configured(self) -> bool:
        """True when all Azure app credentials are present."""
        return bool(self.AZURE_TENANT_ID and self.AZURE_CLIENT_ID and self.AZURE_CLIENT_SECRET)


settings = Settings()
