"""
Application configuration loaded from environment variables.

Uses pydantic-settings to define typed configuration that automatically reads
from environment variables (prefix MCP_) or a local .env file.

Secrets in here (data_api_key, google_client_secret, cookie_encryption_key)
are read only by the server wiring. The authentication core never receives
them, so they can't end up in an AuthResult or an error message.

validate_settings() checks the loaded values for problems that would only
surface at request time (missing store, half-configured OAuth, weak keys)
and initialize_settings() turns those into a startup failure.
"""

import logging
from dataclasses import dataclass, field

from pydantic_settings import BaseSettings

from gateway_auth.errors import ConfigurationError

logger = logging.getLogger("mcp-server.config")

DEV_COOKIE_ENCRYPTION_KEY = "dev-cookie-key-change-me-0000000000000000"


class Settings(BaseSettings):
    """
    Server configuration with environment variable bindings.

    Each field maps to an environment variable with the MCP_ prefix.
    For example, `hosted_domain` reads from MCP_HOSTED_DOMAIN.
    """

    # --- Server settings ---

    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "info"

    # --- Authentication policy ---

    # The only email domain accepted for OAuth users. Matched as an exact
    # "@<domain>" suffix, so subdomains are not accepted.
    hosted_domain: str = "agile6.com"

    # Where MCP token records live. "memory://" keeps them in-process
    # (lost on restart); "redis://host:6379/0" shares them across replicas.
    # Empty means not configured: OAuth still works, MCP tokens don't.
    token_store_url: str | None = "memory://"

    enable_auth_logging: bool = True

    # --- OAuth session ---

    # HMAC key signing the session tokens issued after the OAuth callback.
    # Default is for local development only - NEVER use this in production.
    cookie_encryption_key: str = DEV_COOKIE_ENCRYPTION_KEY
    session_algorithm: str = "HS256"
    session_ttl_seconds: int = 3600

    google_client_id: str | None = None
    google_client_secret: str | None = None

    # --- Downstream data API ---

    # Shared key for the downstream data API. Only ever read from here,
    # never from anything a client sends.
    data_api_key: str | None = None

    model_config = {
        "env_prefix": "MCP_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


@dataclass
class SettingsValidation:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def validate_settings(config: Settings) -> SettingsValidation:
    """Check settings for misconfiguration. Messages never include secret values."""
    result = SettingsValidation()

    # Downstream API key
    if not config.data_api_key:
        result.errors.append(
            "MCP_DATA_API_KEY is required. It is the shared key used for all downstream data-API calls."
        )
    elif len(config.data_api_key) < 20:
        result.warnings.append("MCP_DATA_API_KEY seems unusually short (< 20 chars).")

    # Token store
    store_url = config.token_store_url
    if not store_url:
        result.errors.append("MCP_TOKEN_STORE_URL is required for MCP token storage.")
    elif store_url == "memory://":
        result.warnings.append(
            "MCP_TOKEN_STORE_URL is memory:// - tokens are lost on restart and not shared between replicas."
        )
    elif not store_url.startswith(("redis://", "rediss://", "unix://")):
        result.errors.append("MCP_TOKEN_STORE_URL must be memory://, redis://, rediss:// or unix://.")

    # OAuth configuration: all or nothing
    fields_set = config.model_fields_set
    oauth_fields = {
        "google_client_id": ("MCP_GOOGLE_CLIENT_ID", bool(config.google_client_id)),
        "google_client_secret": ("MCP_GOOGLE_CLIENT_SECRET", bool(config.google_client_secret)),
        "cookie_encryption_key": ("MCP_COOKIE_ENCRYPTION_KEY", "cookie_encryption_key" in fields_set),
    }
    configured = sum(1 for _, present in oauth_fields.values() if present)
    if 0 < configured < len(oauth_fields):
        for env_name, present in oauth_fields.values():
            if not present:
                result.errors.append(f"{env_name} is required when OAuth is configured.")

    if len(config.cookie_encryption_key) < 32:
        result.errors.append("MCP_COOKIE_ENCRYPTION_KEY must be at least 32 characters.")
    elif config.cookie_encryption_key == DEV_COOKIE_ENCRYPTION_KEY:
        result.warnings.append("MCP_COOKIE_ENCRYPTION_KEY is the development default. Set a real key in production.")

    if not config.google_client_id:
        result.warnings.append("OAuth is not configured - only MCP access tokens can authenticate.")

    # Domain policy
    if not config.hosted_domain or "@" in config.hosted_domain:
        result.errors.append("MCP_HOSTED_DOMAIN must be a bare domain such as 'example.com'.")

    # Session lifetime
    if config.session_ttl_seconds < 1:
        result.errors.append("MCP_SESSION_TTL_SECONDS must be a positive integer (seconds).")
    elif config.session_ttl_seconds < 300:
        result.warnings.append("MCP_SESSION_TTL_SECONDS is under 5 minutes; OAuth sessions will expire quickly.")

    return result


def initialize_settings(config: Settings) -> None:
    """
    Validate settings at startup.

    Logs warnings and raises ConfigurationError listing every error.
    """
    validation = validate_settings(config)

    for warning in validation.warnings:
        logger.warning("Configuration warning: %s", warning)

    if not validation.valid:
        raise ConfigurationError(
            "Invalid configuration:\n" + "\n".join(f"  - {error}" for error in validation.errors)
        )


# Singleton instance: import this from other modules.
settings = Settings()
