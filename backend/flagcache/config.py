from functools import lru_cache
import logging
import sys
from urllib.parse import urlparse

from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)


class ConfigurationError(RuntimeError):
    """Raised when required configuration is missing or invalid."""
    pass


class Settings(BaseSettings):
    """Application configuration pulled from environment variables or .env file."""

    # Upstream flag source
    upstream_base_url: str = ""
    upstream_flags_path: str = "/flags"
    upstream_api_token: str | None = None
    upstream_timeout: float = 10.0

    # Cache behaviour
    cache_validity_seconds: float = 60.0
    unknown_policy: str = "block"   # "block" waits for the first fetch, "unknown" answers immediately
    warm_cache_on_startup: bool = True

    # CORS settings
    # Comma-separated list of allowed origins, or "*" for all (not recommended)
    cors_allowed_origins: str = "http://localhost:5173,http://localhost:3000"

    # Environment (development, staging, production)
    environment: str = "development"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    def validate_required(self) -> list[str]:
        """Validate required configuration settings.

        Returns a list of error messages for invalid settings.
        """
        errors: list[str] = []
        warnings: list[str] = []

        if not self.upstream_base_url:
            errors.append("UPSTREAM_BASE_URL is required but not set")
        else:
            parsed = urlparse(self.upstream_base_url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                errors.append(f"UPSTREAM_BASE_URL must be an http(s) URL, got {self.upstream_base_url!r}")
            elif parsed.scheme == "http" and self.upstream_api_token:
                warnings.append("UPSTREAM_API_TOKEN is sent over plain http")

        if self.upstream_timeout <= 0:
            errors.append("UPSTREAM_TIMEOUT must be positive")

        if self.cache_validity_seconds <= 0:
            errors.append("CACHE_VALIDITY_SECONDS must be positive")
        elif self.upstream_timeout >= self.cache_validity_seconds:
            warnings.append(
                "UPSTREAM_TIMEOUT is not shorter than CACHE_VALIDITY_SECONDS, "
                "a slow refresh can outlive the snapshot it replaces"
            )

        if self.unknown_policy not in ("block", "unknown"):
            errors.append(f"UNKNOWN_POLICY must be 'block' or 'unknown', got {self.unknown_policy!r}")

        if self.environment.lower() == "production" and self.cors_allowed_origins == "*":
            errors.append(
                "CORS_ALLOWED_ORIGINS is set to '*' (allow all) in production. "
                "This is a security risk. Set specific allowed origins."
            )

        for warning in warnings:
            logger.warning(f"Config warning: {warning}")

        return errors


def validate_config_on_startup(settings: Settings) -> None:
    """Validate configuration and raise if critical settings are missing."""
    errors = settings.validate_required()

    if errors:
        logger.error("Configuration validation failed:")
        for error in errors:
            logger.error(f"  - {error}")
        print("\nConfiguration Error:", file=sys.stderr)
        print("The following required settings are missing or invalid:", file=sys.stderr)
        for error in errors:
            print(f"  - {error}", file=sys.stderr)
        print("\nPlease check your .env file or environment variables.", file=sys.stderr)
        raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}")

    logger.info("Configuration validated successfully")


@lru_cache
def get_settings() -> Settings:
    return Settings()
