# chatpush/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    run_mode: Literal["all", "web", "worker"] = "all"
    log_level: str = "INFO"

    # Database
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5

    # Direct-call authentication
    # "bearer" - Authorization: Bearer <api_token>
    # "hmac" - X-Timestamp + X-Signature headers signed with api_token
    # "both" - Accept either method
    api_token: str | None = None
    api_auth_mode: Literal["bearer", "hmac", "both"] = "both"
    allowed_origins: list[str] = ["*"]

    # Firebase Cloud Messaging (HTTP v1)
    fcm_project_id: str | None = None
    google_credentials_json: str | None = None  # Service account JSON content
    google_credentials_file: str | None = None  # Or a path to the JSON key file
    fcm_android_channel_id: str = "chat"
    fcm_click_action: str = "FLUTTER_NOTIFICATION_CLICK"
    fcm_request_timeout_seconds: float = 10.0

    # Dispatch
    token_lookup_batch_size: int = 500  # Max user ids per token lookup query
    dispatch_max_concurrency: int = 100  # Concurrent sends per dispatch, 0 = unbounded

    # Job Worker (store-triggered events)
    job_worker_enabled: bool = True
    job_worker_poll_interval: float = 1.0     # Seconds between polls when idle
    job_worker_batch_size: int = 5            # Jobs claimed per poll cycle
    job_worker_base_retry_delay: float = 5.0  # Base delay for exponential backoff (seconds)
    job_worker_stale_timeout: int = 300       # Reset jobs stuck 'running' for this long (seconds)

    # Feature Flags
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def fcm_enabled(self) -> bool:
        """Check if FCM credentials are configured"""
        return bool(
            self.fcm_project_id
            and (self.google_credentials_json or self.google_credentials_file)
        )

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}"
            f"@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        required_fields = [
            ("api_token", self.api_token),
            ("fcm_project_id", self.fcm_project_id),
            (
                "google_credentials_json or google_credentials_file",
                self.google_credentials_json or self.google_credentials_file,
            ),
        ]

        return [name for name, value in required_fields if not value]


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if not s.api_token:
        warnings.append("api_token is missing (direct-call endpoint will reject every caller).")

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    if not s.fcm_enabled:
        warnings.append(
            "FCM is not configured (fcm_project_id / google credentials); "
            "the service runs but every send will fail."
        )

    if s.token_lookup_batch_size <= 0:
        warnings.append("token_lookup_batch_size must be positive; falling back to 500.")

    if s.dispatch_max_concurrency == 0:
        warnings.append("dispatch_max_concurrency=0: large audiences fan out without a bound.")

    if s.run_mode in ("all", "worker") and not s.job_worker_enabled:
        warnings.append("job worker disabled: new-message notifications will not be sent.")

    return warnings


settings = Settings()
