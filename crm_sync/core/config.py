"""Service configuration (settings and environment).

Single source of truth for all configuration. Uses pydantic-settings
with .env support. Secrets needed to decrypt stored credentials are
validated at load time.
"""

from functools import lru_cache

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment and .env.

    Provider client ids/secrets are optional; a provider without them can
    still be used with tokens handed over by ``POST /accounts`` but cannot
    refresh or exchange codes.
    """

    # App
    app_name: str = "crm-sync"
    app_version: str = "0.1.0"
    debug: bool = False

    # Database (empty URL: SQL endpoints answer 503)
    database_url: str = ""
    database_echo: bool = False
    db_pool_size: int | None = None
    db_max_overflow: int | None = None
    db_command_timeout: int | None = None

    # Credential encryption (Fernet key derived with PBKDF2)
    credential_encryption_secret: SecretStr = SecretStr("")
    encryption_salt: SecretStr = SecretStr("")

    # CORS
    allowed_origins: str = "http://localhost:3000,http://localhost:8080"

    # Request / middleware
    request_timeout_seconds: int = 120
    request_id_header: str = "X-Request-ID"

    # Google
    google_client_id: str = ""
    google_client_secret: SecretStr = SecretStr("")
    google_redirect_uri: str = ""

    # Microsoft (Graph)
    microsoft_client_id: str = ""
    microsoft_client_secret: SecretStr = SecretStr("")
    microsoft_redirect_uri: str = ""
    microsoft_tenant: str = "common"
    microsoft_graph_url: str = "https://graph.microsoft.com/v1.0"
    # Graph echoes clientState on every notification; mismatches are dropped.
    microsoft_webhook_client_state: SecretStr | None = None

    # Nylas (v3)
    nylas_client_id: str = ""
    nylas_api_key: SecretStr = SecretStr("")
    nylas_redirect_uri: str = ""
    nylas_api_uri: str = "https://api.us.nylas.com"
    # If set, POST /webhooks/nylas must carry X-Nylas-Signature = hex(hmac_sha256(secret, body)).
    nylas_webhook_secret: SecretStr | None = None
    nylas_webhook_require_signature: bool = False

    # Outbound provider calls
    provider_timeout_seconds: float = 30.0
    provider_read_max_attempts: int = 3
    provider_retry_base_delay_seconds: float = 1.0

    # Token refresh
    token_refresh_skew_seconds: int = 300
    token_refresh_max_attempts: int = 2
    token_refresh_failure_threshold: int = 3

    # Sync
    sync_window_days_back: int = 30
    sync_window_days_forward: int = 30
    sync_max_messages: int = 50
    sync_max_duration_seconds: int = 300
    sync_max_error_messages: int = 20
    reconcile_max_attempts: int = 3
    export_reservation_ttl_seconds: int = 900

    # Periodic scheduler
    sync_scheduler_enabled: bool = False
    sync_interval_seconds: int = 900
    sync_max_concurrent_accounts: int = 4

    # Redis (distributed run guard)
    redis_enabled: bool = False
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: SecretStr | None = None

    # OpenTelemetry
    telemetry_enabled: bool = False
    telemetry_exporter: str = "console"
    telemetry_otlp_endpoint: str | None = None
    telemetry_sample_rate: float = 1.0
    telemetry_environment: str = "development"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_required_and_limits(self) -> "Settings":
        """Validate secrets and numeric limits.

        - CREDENTIAL_ENCRYPTION_SECRET and ENCRYPTION_SALT are required.
        - Sync window, limits and attempts must be positive.
        """
        if not self.credential_encryption_secret.get_secret_value():
            raise ValueError(
                "CREDENTIAL_ENCRYPTION_SECRET is required. Generate with: openssl rand -hex 32."
            )
        if not self.encryption_salt.get_secret_value():
            raise ValueError(
                "ENCRYPTION_SALT is required. Generate with: openssl rand -hex 16."
            )
        for name in (
            "sync_window_days_back",
            "sync_window_days_forward",
            "sync_max_messages",
            "sync_max_duration_seconds",
            "sync_max_error_messages",
            "reconcile_max_attempts",
            "provider_read_max_attempts",
            "token_refresh_max_attempts",
            "token_refresh_failure_threshold",
            "sync_max_concurrent_accounts",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name.upper()} must be >= 1")
        return self

    @property
    def sql_configured(self) -> bool:
        return bool(self.database_url)


@lru_cache
def get_settings() -> Settings:
    """Return cached settings (single instance per process).

    In tests, call get_settings.cache_clear() after changing env vars so the
    next get_settings() picks up the new values.
    """
    return Settings()
