"""
Configuration — typed, validated settings loaded from environment/.env.

Uses pydantic-settings to:
  - Load from environment variables (12-factor app)
  - Fall back to .env file
  - Validate types and constraints at startup
  - Keep secrets out of source control

Architecture: Only AppSettings is a BaseSettings instance. Sub-settings are plain
BaseModel classes populated by AppSettings via env_nested_delimiter="__", so the env
var ISSUER__API_URL maps to issuer.api_url, DATABASE__HOST maps to database.host, etc.
"""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the .env file relative to the project root (two levels above this file),
# so settings load correctly regardless of the working directory at runtime.
_ENV_FILE = Path(__file__).parent.parent.parent / ".env"


class StorageBackend(StrEnum):
    POSTGRES = "postgres"
    MEMORY = "memory"


class IssuerMode(StrEnum):
    HTTP = "http"
    LOCAL = "local"


class StorageSettings(BaseModel):
    """Where jobs, certificates and revocations live."""

    backend: StorageBackend = Field(default=StorageBackend.POSTGRES)


class DatabaseSettings(BaseModel):
    """
    PostgreSQL connection configuration.

    Accepts either a full connection string via DATABASE__DSN or individual
    components (DATABASE__HOST, DATABASE__PORT, DATABASE__NAME,
    DATABASE__USERNAME, DATABASE__PASSWORD). The DSN takes priority when both
    are provided. Only required when storage.backend is "postgres"; the check
    lives on AppSettings.
    """

    dsn: SecretStr | None = Field(
        default=None,
        description="Full PostgreSQL connection string (overrides individual fields)",
    )
    host: str | None = Field(default=None, description="PostgreSQL host")
    port: int = Field(default=5432, ge=1, le=65535, description="PostgreSQL port")
    name: str | None = Field(default=None, description="PostgreSQL database name")
    username: str | None = Field(default=None, description="PostgreSQL username")
    password: SecretStr | None = Field(default=None, description="PostgreSQL password")
    apply_schema: bool = Field(
        default=False, description="Create missing tables and indexes at startup"
    )

    def missing_components(self) -> list[str]:
        if self.dsn is not None:
            return []
        return [f for f, v in [
            ("DATABASE__HOST", self.host),
            ("DATABASE__NAME", self.name),
            ("DATABASE__USERNAME", self.username),
            ("DATABASE__PASSWORD", self.password),
        ] if not v]

    def get_dsn(self) -> str:
        """Return the active database DSN as a plain string."""
        if self.dsn is not None:
            return self.dsn.get_secret_value()
        missing = self.missing_components()
        if missing:
            raise ValueError("Set DATABASE__DSN or provide all of: " + ", ".join(missing))
        return (
            f"postgresql://{self.username}:{self.password.get_secret_value()}"  # type: ignore[union-attr]
            f"@{self.host}:{self.port}/{self.name}"
        )


class IssuerSettings(BaseModel):
    """
    Credential provider configuration.

    mode "http" talks to the provider's REST API at api_url; mode "local"
    signs with an in-process Ed25519 key (signing_seed, 32 bytes hex) and
    serves credentials under public_base_url.
    """

    mode: IssuerMode = Field(default=IssuerMode.HTTP)
    api_url: str = Field(default="http://localhost:8080", description="Provider API base URL")
    api_key: SecretStr = Field(default=SecretStr(""), description="Provider bearer token")
    issuer_did: str = Field(default="did:web:agriqcert.com", description="DID of the issuer")
    webhook_secret: SecretStr = Field(
        default=SecretStr(""), description="Shared HMAC secret for provider callbacks"
    )
    signing_seed: SecretStr | None = Field(default=None, description="Local Ed25519 seed (hex)")
    public_base_url: str = Field(
        default="https://mock-storage.agriqcert.com/credentials",
        description="Base of retrieval URLs handed out by the local issuer",
    )

    @field_validator("signing_seed")
    @classmethod
    def validate_seed(cls, value: SecretStr | None) -> SecretStr | None:
        """A seed must be exactly 32 bytes of hex."""
        if value is None:
            return value
        raw = value.get_secret_value()
        try:
            seed = bytes.fromhex(raw)
        except ValueError as e:
            raise ValueError("signing_seed must be hex encoded") from e
        if len(seed) != 32:
            raise ValueError(f"signing_seed must be 32 bytes, got {len(seed)}")
        return value


class WorkerSettings(BaseModel):
    poll_interval_seconds: float = Field(default=3.0, gt=0)
    concurrency: int = Field(default=2, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    shutdown_timeout_seconds: float = Field(default=30.0, ge=0)


class CredentialSettings(BaseModel):
    expiry_days: int = Field(default=365, ge=1)


class HousekeepingSettings(BaseModel):
    """
    Housekeeping schedule using a standard 5-field cron expression.

    Format: minute hour day-of-month month day-of-week
    Examples:
      "*/15 * * * *" — every 15 minutes (default)
      "0 2 * * *"    — daily at 02:00
    """

    cron: str = Field(
        default="*/15 * * * *",
        description="Cron expression (5 fields: minute hour dom month dow)",
    )
    job_retention_days: int = Field(default=30, ge=1)
    run_on_startup: bool = Field(default=False)

    @field_validator("cron")
    @classmethod
    def validate_cron(cls, value: str) -> str:
        """Reject expressions that don't have exactly 5 space-separated fields."""
        fields = value.strip().split()
        if len(fields) != 5:
            raise ValueError(
                f"Cron expression must have exactly 5 fields "
                f"(minute hour dom month dow), got {len(fields)}: {value!r}"
            )
        return value.strip()


class AppSettings(BaseSettings):
    """
    Root application settings — aggregates all sub-settings.

    Load order (highest priority first):
      1. Environment variables
      2. .env file
      3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    storage: StorageSettings = Field(default_factory=lambda: StorageSettings())
    database: DatabaseSettings = Field(default_factory=lambda: DatabaseSettings())
    issuer: IssuerSettings = Field(default_factory=lambda: IssuerSettings())
    worker: WorkerSettings = Field(default_factory=lambda: WorkerSettings())
    credential: CredentialSettings = Field(default_factory=lambda: CredentialSettings())
    housekeeping: HousekeepingSettings = Field(default_factory=lambda: HousekeepingSettings())

    http_timeout_seconds: int = Field(default=30, ge=1)
    log_level: str = Field(default="INFO")

    @model_validator(mode="after")
    def check_backends(self) -> AppSettings:
        """Fail at startup when the selected backends lack what they need."""
        if self.storage.backend is StorageBackend.POSTGRES:
            missing = self.database.missing_components()
            if missing:
                raise ValueError(
                    "storage.backend=postgres needs DATABASE__DSN or all of: "
                    + ", ".join(missing)
                )
        if self.issuer.mode is IssuerMode.HTTP and not self.issuer.api_key.get_secret_value():
            raise ValueError("issuer.mode=http needs ISSUER__API_KEY")
        if not self.issuer.webhook_secret.get_secret_value():
            raise ValueError("ISSUER__WEBHOOK_SECRET is required to verify provider callbacks")
        return self
