"""Configuration management for Herald."""

import logging
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

HERALD_VERSION = "0.1.0"


class Settings(BaseSettings):
    """Herald configuration.

    All settings can be overridden via environment variables with
    the HERALD_ prefix. For example, HERALD_STORAGE_BACKEND=qdrant.
    """

    env: Literal["development", "production", "test"] = Field(
        default="development",
        description="Deployment environment",
    )

    # Storage
    storage_backend: Literal["memory", "qdrant"] = Field(
        default="memory",
        description="Where subscriptions and deliveries are persisted",
    )
    qdrant_url: str = Field(
        default="http://localhost:6333",
        description="Qdrant server URL",
    )
    qdrant_api_key: str | None = Field(
        default=None,
        description="Qdrant API key (optional for local)",
    )
    collection_prefix: str = Field(
        default="herald",
        description="Prefix for Qdrant collection names",
    )
    storage_max_scroll_limit: int = Field(
        default=10000,
        ge=1,
        le=100000,
        description="Maximum points read by a single Qdrant scroll",
    )

    # Delivery policy defaults
    default_max_attempts: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Default number of delivery attempts per subscription",
    )
    default_timeout_seconds: int = Field(
        default=30,
        gt=0,
        le=300,
        description="Default per-attempt HTTP timeout in seconds",
    )
    retry_backoff_unit_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description=(
            "Unit of the exponential backoff. The delay after attempt k is "
            "2^k units, so the default yields 2, 4, 8... minutes."
        ),
    )
    retry_client_errors: bool = Field(
        default=False,
        description="Retry 4xx responses other than 408 and 429",
    )
    max_concurrent_deliveries: int = Field(
        default=10,
        ge=1,
        le=1000,
        description="Maximum simultaneous outbound HTTP attempts",
    )
    response_body_max_chars: int = Field(
        default=10000,
        ge=0,
        description="Stored response bodies are truncated to this length",
    )
    error_body_max_chars: int = Field(
        default=500,
        ge=0,
        description="Length of the response snippet kept in error messages",
    )
    secret_bytes: int = Field(
        default=32,
        ge=16,
        le=128,
        description="Random bytes in a generated signing secret",
    )
    user_agent: str = Field(
        default=f"herald-webhooks/{HERALD_VERSION}",
        description="User-Agent header sent with every delivery",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format",
    )

    model_config = {
        "env_prefix": "HERALD_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_nested_delimiter": "__",
    }

    @model_validator(mode="after")
    def validate_storage_settings(self) -> "Settings":
        """Reject a Qdrant backend without a usable URL."""
        if self.storage_backend == "qdrant" and not self.qdrant_url:
            raise ValueError("HERALD_QDRANT_URL is required when storage_backend is 'qdrant'")
        if self.env == "production" and self.storage_backend == "memory":
            logger.warning(
                "Memory storage in production: subscriptions and deliveries "
                "are lost when the process exits"
            )
        return self


# Global settings instance
settings = Settings()
