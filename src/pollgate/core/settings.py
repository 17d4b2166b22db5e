"""Application settings and configuration.

This module defines all configuration options for the Pollgate request
protection layer. Settings are loaded from environment variables with
sensible defaults.
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CSRF_SECRET = "default-csrf-secret-change-in-production"
MIN_CSRF_TOKEN_BYTES = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Pollgate", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Session tokens (default session provider)
    secret_key: str = Field(alias="SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(
        default=60 * 24 * 7,
        alias="ACCESS_TOKEN_EXPIRE_MINUTES",
    )
    session_cookie_name: str = Field(default="access_token", alias="SESSION_COOKIE_NAME")

    # CSRF protection
    csrf_secret: str = Field(default=DEFAULT_CSRF_SECRET, alias="CSRF_SECRET")
    csrf_token_bytes: int = Field(default=MIN_CSRF_TOKEN_BYTES, alias="CSRF_TOKEN_BYTES")
    csrf_exempt_prefixes: list[str] = Field(
        default=["/api/auth/callback", "/api/webhooks/"],
        alias="CSRF_EXEMPT_PREFIXES",
    )

    # Rate limiting (windows are in milliseconds)
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")
    rate_limit_auth_limit: int = Field(default=5, alias="RATE_LIMIT_AUTH_LIMIT")
    rate_limit_auth_window_ms: int = Field(
        default=15 * 60 * 1000, alias="RATE_LIMIT_AUTH_WINDOW_MS"
    )
    rate_limit_create_poll_limit: int = Field(default=10, alias="RATE_LIMIT_CREATE_POLL_LIMIT")
    rate_limit_create_poll_window_ms: int = Field(
        default=60 * 60 * 1000, alias="RATE_LIMIT_CREATE_POLL_WINDOW_MS"
    )
    rate_limit_vote_limit: int = Field(default=50, alias="RATE_LIMIT_VOTE_LIMIT")
    rate_limit_vote_window_ms: int = Field(
        default=60 * 60 * 1000, alias="RATE_LIMIT_VOTE_WINDOW_MS"
    )
    rate_limit_general_limit: int = Field(default=100, alias="RATE_LIMIT_GENERAL_LIMIT")
    rate_limit_general_window_ms: int = Field(
        default=15 * 60 * 1000, alias="RATE_LIMIT_GENERAL_WINDOW_MS"
    )
    rate_limit_sweep_interval_seconds: float = Field(
        default=300.0,
        alias="RATE_LIMIT_SWEEP_INTERVAL_SECONDS",
    )

    # Route gating
    login_path: str = Field(default="/auth/login", alias="LOGIN_PATH")
    home_path: str = Field(default="/", alias="HOME_PATH")
    public_path_prefixes: list[str] = Field(
        default=["/auth", "/polls"],
        alias="PUBLIC_PATH_PREFIXES",
    )
    gate_exempt_prefixes: list[str] = Field(
        default=[
            "/api",
            "/static",
            "/_next",
            "/favicon.ico",
            "/health",
            "/docs",
            "/redoc",
            "/openapi.json",
        ],
        alias="GATE_EXEMPT_PREFIXES",
    )

    # CORS configuration for web frontend access
    cors_origins: list[str] = Field(default=["*"], alias="CORS_ORIGINS")
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(default=["*"], alias="CORS_ALLOW_HEADERS")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
    )

    @field_validator("csrf_token_bytes")
    @classmethod
    def _enforce_token_entropy(cls, value: int) -> int:
        if value < MIN_CSRF_TOKEN_BYTES:
            raise ValueError(f"CSRF_TOKEN_BYTES must be at least {MIN_CSRF_TOKEN_BYTES}")
        return value

    @property
    def uses_default_csrf_secret(self) -> bool:
        """Return True when the placeholder CSRF secret is still configured."""
        return self.csrf_secret == DEFAULT_CSRF_SECRET

    @property
    def rate_limit_windows(self) -> dict[str, tuple[int, int]]:
        """Return `(limit, window_ms)` pairs keyed by route class.

        Returns:
            Dictionary mapping route class names to their configured quota
        """
        return {
            "auth": (self.rate_limit_auth_limit, self.rate_limit_auth_window_ms),
            "create_poll": (
                self.rate_limit_create_poll_limit,
                self.rate_limit_create_poll_window_ms,
            ),
            "vote": (self.rate_limit_vote_limit, self.rate_limit_vote_window_ms),
            "general": (self.rate_limit_general_limit, self.rate_limit_general_window_ms),
        }


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()  # type: ignore[call-arg]


settings = get_settings()
