"""Application configuration and settings.

Objective:
    Provide a single source of truth for runtime configuration used across the
    application (execution-engine access, retry behavior, local data sources
    and logging).

Responsibilities:
    - Define the enumerations shared by every component
      (:class:`CompositionStrategy`, :class:`MailboxProvider`,
      :class:`DeploymentStatus`, :class:`GraphStatus`, :class:`OutcomeKind`).
    - Load environment-driven settings via :class:`Settings` (Pydantic
      BaseSettings).

High-level call tree:
    - :func:`get_settings` -> returns :class:`Settings`
    - :class:`Settings`
        - :meth:`Settings.retry_policy`

Operational notes:
    - ``Settings`` loads from ``.env`` by default via ``pydantic-settings``.
      Every variable is prefixed with ``COMPOSER_``.
    - Components accept a ``Settings`` object explicitly to enable testing;
      the pipeline falls back to :func:`get_settings` when not provided.
"""

from enum import Enum
from typing import Optional
import logging

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .retry import RetryPolicy

logger = logging.getLogger(__name__)

# Strategy switch points. A score landing exactly on a boundary selects the
# simpler structure.
UNIFIED_THRESHOLD = 0.70
HYBRID_THRESHOLD = 0.40


class CompositionStrategy(str, Enum):
    """How category fragments are combined into one automation graph."""

    UNIFIED = "unified"
    HYBRID = "hybrid"
    MODULAR = "modular"


class MailboxProvider(str, Enum):
    """Mailbox providers a tenant can connect.

    The value doubles as the ``providerId`` used in
    ``{{credential:<providerId>}}`` placeholders.
    """

    GMAIL = "gmail"
    OUTLOOK = "outlook"


class DeploymentStatus(str, Enum):
    """Status of a single deployment attempt in the ledger."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    UNCHANGED = "unchanged"


class GraphStatus(str, Enum):
    """Live status of a deployed graph as reported by the execution engine."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


class OutcomeKind(str, Enum):
    """What a deploy or rollback call did."""

    DEPLOYED = "deployed"
    UNCHANGED = "unchanged"
    ACTIVATION_FAILED = "activation_failed"
    ROLLED_BACK = "rolled_back"


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Attributes:
        engine_base_url: Base URL of the execution engine REST API.
        engine_api_key: API key sent in the ``X-N8N-API-KEY`` header.
        engine_timeout_seconds: Per-request timeout for engine calls.
        retry_max_retries: Retries after the first attempt for transient errors.
        retry_base_delay: First backoff delay in seconds.
        retry_max_delay: Backoff cap in seconds.
        retry_jitter_range: Fraction of the delay used as +/- jitter.
        catalog_dir: Directory of category definition JSON files.
        tenants_file: JSON file holding tenant profiles, labels and credentials.
        ledger_path: Optional JSON-lines file for durable deployment history.
        log_level: Logging level.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="COMPOSER_",
        case_sensitive=False,
    )

    # Execution engine
    engine_base_url: str = Field(
        default="http://localhost:5678", description="Execution engine base URL"
    )
    engine_api_key: str = Field(default="", description="Execution engine API key")
    engine_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Timeout for a single engine request"
    )

    # Retry behavior for transient engine failures
    retry_max_retries: int = Field(default=3, ge=0, le=10)
    retry_base_delay: float = Field(default=0.5, ge=0)
    retry_max_delay: float = Field(default=8.0, ge=0)
    retry_jitter_range: float = Field(default=0.5, ge=0, le=1)

    # Local data sources
    catalog_dir: str = Field(
        default="catalog", description="Directory of category definition JSON files"
    )
    tenants_file: str = Field(
        default="tenants.json", description="Tenant profiles, labels and credentials"
    )
    ledger_path: Optional[str] = Field(
        default=None, description="JSON-lines file for durable deployment history"
    )

    log_level: str = Field(default="INFO", description="Logging level")

    def retry_policy(self) -> RetryPolicy:
        """Build the retry policy described by these settings.

        Returns:
            RetryPolicy: Policy used by the deployment orchestrator.
        """
        return RetryPolicy(
            max_retries=self.retry_max_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            jitter_range=self.retry_jitter_range,
        )


def get_settings() -> Settings:
    """
    Load and return application settings.

    For tests, construct a :class:`Settings` instance directly or pass a
    mocked settings object.

    Returns:
        Settings: Application settings instance.

    Raises:
        ValidationError: If an environment variable has an invalid value.
    """
    return Settings()
