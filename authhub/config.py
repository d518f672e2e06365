from typing import Optional
from urllib.parse import urlparse

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ALLOWED_JWT_ALGORITHMS = {"HS256", "HS384", "HS512"}
_PRODUCTION_ENVIRONMENTS = {"prod", "production"}


class Settings(BaseSettings):
    # Runtime environment
    environment: str = "development"

    # Core database and auth settings
    database_url: Optional[str] = None
    database_hostname: str = "localhost"
    database_port: int = 5432
    database_password: str = "password123"
    database_name: str = "authhub"
    database_username: str = "postgres"
    secret_key: str = "replace-this-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 7
    password_hash_rounds: int = 12

    # API versioning
    api_latest_version: str = "v1"
    api_supported_versions: list[str] = ["v1"]

    # Redis (OAuth handshake state)
    redis_url: str = "redis://localhost:6379/0"
    redis_health_required: bool = False

    # Observability
    enable_optional_observability: bool = True
    metrics_enabled: bool = True
    sentry_dsn: Optional[str] = None
    sentry_environment: str = "development"
    sentry_traces_sample_rate: float = 0.0

    # OAuth / third-party login
    oauth_state_expire_seconds: int = 300
    oauth_http_timeout_seconds: float = 10.0
    oauth_public_base_url: Optional[str] = None
    oauth_allowed_redirect_origins: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]
    oauth_github_client_id: Optional[str] = None
    oauth_github_client_secret: Optional[str] = None
    oauth_github_callback_url: Optional[str] = None
    oauth_jira_client_id: Optional[str] = None
    oauth_jira_client_secret: Optional[str] = None
    oauth_jira_callback_url: Optional[str] = None

    # Session cookie
    session_cookie_name: str = "auth_token"
    session_cookie_max_age_seconds: int = 7 * 24 * 60 * 60
    session_query_token_enabled: bool = True

    # Request security controls
    trusted_hosts: list[str] = ["localhost", "127.0.0.1", "testserver"]
    security_headers_enabled: bool = True
    security_csp_enabled: bool = True
    security_hsts_enabled: bool = False
    security_hsts_max_age_seconds: int = 31_536_000
    security_https_redirect: bool = False

    # CORS
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in _PRODUCTION_ENVIRONMENTS

    @property
    def sqlalchemy_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg2://{self.database_username}:{self.database_password}"
            f"@{self.database_hostname}:{self.database_port}/{self.database_name}"
        )

    @field_validator("algorithm")
    @classmethod
    def validate_algorithm(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in _ALLOWED_JWT_ALGORITHMS:
            allowed = ", ".join(sorted(_ALLOWED_JWT_ALGORITHMS))
            raise ValueError(f"ALGORITHM must be one of: {allowed}")
        return normalized

    @field_validator("oauth_allowed_redirect_origins")
    @classmethod
    def validate_oauth_allowed_redirect_origins(cls, value: list[str]) -> list[str]:
        normalized: list[str] = []
        for origin in value:
            parsed = urlparse(origin)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ValueError(
                    "OAUTH_ALLOWED_REDIRECT_ORIGINS entries must be http/https origins"
                )
            if parsed.fragment or parsed.query:
                raise ValueError(
                    "OAUTH_ALLOWED_REDIRECT_ORIGINS entries must not include a query or fragment"
                )
            normalized.append(origin.rstrip("/"))
        return normalized

    @field_validator("password_hash_rounds")
    @classmethod
    def validate_password_hash_rounds(cls, value: int) -> int:
        if not 4 <= value <= 31:
            raise ValueError("PASSWORD_HASH_ROUNDS must be between 4 and 31")
        return value

    @model_validator(mode="after")
    def validate_production_secret(self) -> "Settings":
        if self.is_production:
            insecure_secrets = {
                "",
                "replace-this-in-production",
                "test-secret-key",
                "changeme",
            }
            if self.secret_key in insecure_secrets or len(self.secret_key) < 32:
                raise ValueError(
                    "SECRET_KEY must be a high-entropy value (>=32 chars) in production"
                )
        return self


settings = Settings()
