"""Configuration management for AgriLens."""

from __future__ import annotations

from functools import lru_cache
from typing import Self

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_VALID_ENVIRONMENTS = ("production", "development", "test")


def _split_csv(value: str | None) -> list[str]:
    if value is None:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="",
        populate_by_name=True,
    )

    # Application
    environment: str = Field(default="production", description="Environment name")
    host: str = Field(default="0.0.0.0", description="Bind address")  # nosec B104
    port: int = Field(default=3000, description="Bind port")
    trust_proxy: bool = Field(
        default=False, description="Derive client identity from X-Forwarded-For"
    )
    allowed_origins_str: str | None = Field(
        default=None,
        alias="ALLOWED_ORIGINS",
        description="Origins allowed by CORS (comma-separated, '*' for any)",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_to_file: bool = Field(default=True, description="Enable file-based logging")
    log_directory: str = Field(default="logs", description="Directory for log files")
    log_file_max_bytes: int = Field(
        default=10485760,  # 10MB
        description="Max size per log file before rotation",
    )
    log_file_backup_count: int = Field(
        default=5, description="Number of rotated log files to keep"
    )
    log_file_prefix: str = Field(default="agrilens", description="Prefix for log file names")
    sensitive_fields_str: str = Field(
        default="password,apiKey,token,secret,privateKey,authorization",
        alias="SENSITIVE_FIELDS",
        description="Field names masked in every log event (comma-separated)",
    )

    # Request guard
    max_body_bytes: int = Field(default=1024 * 1024, description="Request body ceiling")

    # Response headers and access log
    content_security_policy: str = Field(
        default="default-src 'none'; frame-ancestors 'none'; base-uri 'none'",
        description="Content-Security-Policy sent on every response",
    )
    hsts_max_age: int = Field(
        default=31536000, description="Strict-Transport-Security max-age (production only)"
    )
    slow_request_ms: float = Field(
        default=5000.0, description="Requests slower than this are logged as slow"
    )
    very_slow_request_ms: float = Field(
        default=10000.0, description="Requests slower than this are logged as very slow"
    )

    # Injection detector
    prompt_min_length: int = Field(default=1, description="Minimum prompt length")
    prompt_max_length: int = Field(default=5000, description="Maximum prompt length")
    injection_flag_threshold: int = Field(
        default=5, description="Score above which a prompt is flagged"
    )
    repetition_threshold: int = Field(
        default=50, description="Repeats of one short substring treated as degenerate"
    )
    allowed_models_str: str = Field(
        default=(
            "gemini-1.5-flash,gemini-1.5-pro,gemini-2.0-flash-thinking-exp-01-21,"
            "gemma-2-9b-it,gemma-2-27b-it"
        ),
        alias="ALLOWED_MODELS",
        description="Generative models a client may request (comma-separated)",
    )

    # Geometry validator
    geo_allowed_types_str: str = Field(
        default="Polygon,Point,LineString",
        alias="GEO_ALLOWED_TYPES",
        description="Accepted GeoJSON geometry types (comma-separated)",
    )
    geo_max_coordinates: int = Field(default=1000, description="Max coordinate pairs")
    geo_max_nesting: int = Field(default=10, description="Max coordinate array depth")
    geo_lng_min: float = Field(default=-180.0)
    geo_lng_max: float = Field(default=180.0)
    geo_lat_min: float = Field(default=-90.0)
    geo_lat_max: float = Field(default=90.0)

    # Rate limiting (fixed window, per client and endpoint class)
    rate_limit_ai_max: int = Field(default=3)
    rate_limit_ai_window_seconds: float = Field(default=60.0)
    rate_limit_analysis_max: int = Field(default=3)
    rate_limit_analysis_window_seconds: float = Field(default=60.0)
    rate_limit_auth_max: int = Field(default=5)
    rate_limit_auth_window_seconds: float = Field(default=60.0)
    rate_limit_general_max: int = Field(default=100)
    rate_limit_general_window_seconds: float = Field(default=15 * 60.0)
    rate_limit_sweep_seconds: float = Field(
        default=300.0, description="Interval between idle window evictions"
    )
    skip_rate_limit: bool = Field(
        default=False, description="Disable rate limiting (development only)"
    )

    # Authentication
    jwt_secret: SecretStr = Field(default=SecretStr(""), description="Session token secret")
    auth_api_key_hash: str | None = Field(
        default=None, description="bcrypt hash of the login API key"
    )
    session_expiry_seconds: int = Field(default=86400, description="Session token lifetime")

    # External backends
    generative_backend_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Base URL of the generative-text backend",
    )
    generative_api_key: SecretStr | None = Field(
        default=None, description="API key for the generative-text backend"
    )
    default_model: str = Field(default="gemini-1.5-flash")
    generative_timeout_seconds: float = Field(default=30.0)
    geospatial_backend_url: str = Field(
        default="http://localhost:8081", description="Base URL of the geospatial backend"
    )
    geospatial_timeout_seconds: float = Field(default=60.0)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment name."""
        value = v.lower()
        if value not in _VALID_ENVIRONMENTS:
            raise ValueError(f"environment must be one of {list(_VALID_ENVIRONMENTS)}, got: {v}")
        return value

    @field_validator(
        "max_body_bytes",
        "prompt_max_length",
        "repetition_threshold",
        "geo_max_coordinates",
        "geo_max_nesting",
        "rate_limit_ai_max",
        "rate_limit_analysis_max",
        "rate_limit_auth_max",
        "rate_limit_general_max",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate limits are positive."""
        if v <= 0:
            raise ValueError(f"Value must be positive, got: {v}")
        return v

    @model_validator(mode="after")
    def validate_bounds(self) -> Self:
        """Validate coordinate bounds, prompt length and slow-request thresholds."""
        if self.geo_lng_min >= self.geo_lng_max:
            raise ValueError("geo_lng_min must be below geo_lng_max")
        if self.geo_lat_min >= self.geo_lat_max:
            raise ValueError("geo_lat_min must be below geo_lat_max")
        if self.prompt_min_length > self.prompt_max_length:
            raise ValueError("prompt_min_length must not exceed prompt_max_length")
        if self.slow_request_ms > self.very_slow_request_ms:
            raise ValueError("slow_request_ms must not exceed very_slow_request_ms")
        return self

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    @property
    def expose_error_details(self) -> bool:
        """Stack traces and internal details are only rendered outside production."""
        return not self.is_production

    @property
    def allowed_origins(self) -> list[str]:
        return _split_csv(self.allowed_origins_str)

    @property
    def sensitive_fields(self) -> list[str]:
        return _split_csv(self.sensitive_fields_str)

    @property
    def allowed_models(self) -> list[str]:
        return _split_csv(self.allowed_models_str)

    @property
    def geo_allowed_types(self) -> list[str]:
        return _split_csv(self.geo_allowed_types_str)

    @property
    def log_file_path(self) -> str:
        """Get the full log file path."""
        return f"{self.log_directory}/{self.log_file_prefix}.log"

    @property
    def security_log_file_path(self) -> str:
        """Get the security event log file path."""
        return f"{self.log_directory}/{self.log_file_prefix}_security.log"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
