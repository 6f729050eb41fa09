"""
Pydantic v2 Configuration Models for AnchorMigration

Provides strict, typed configuration for every collaborator of the pipeline:
- Source store backend (SQLite export or HTTP cursor API)
- Content store (pinning API) credentials, retries, and rate limits
- Ledger relay endpoints per network, signer identity, confirmation policy
- Subject address directory location
- Run options (batch size, dry run, filters, retry limit, pacing)
- Checkpoint and report paths
- Top-level MigrationConfig as single source of truth

All models use extra="forbid" for strict validation. Environment variables
and CLI overrides follow: file < env < CLI precedence.
"""

from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Any, ClassVar, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

from CertLedger.AnchorMigration.models import RunOptions
from CertLedger.AnchorMigration.packager import PackagerOptions

# ============================================================================
# Shared Policy Models
# ============================================================================


class NetworkName(str, Enum):
    """Supported ledger networks."""

    HARDHAT = "hardhat"
    MUMBAI = "mumbai"
    POLYGON = "polygon"


class RetryPolicy(BaseModel):
    """Configuration for transient network failure retries."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    retry_statuses: List[int] = Field(
        default=[429, 500, 502, 503, 504],
        description="HTTP status codes that trigger retry",
    )
    max_attempts: int = Field(default=4, description="Maximum attempts including the first")
    base_delay_s: float = Field(default=1.0, description="Exponential backoff multiplier")
    max_delay_s: float = Field(default=30.0, description="Maximum single backoff delay")

    @field_validator("max_attempts")
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_attempts must be >= 1")
        return v

    @field_validator("base_delay_s", "max_delay_s")
    @classmethod
    def validate_delays(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Delay values must be >= 0")
        return v


_RATE_UNITS = frozenset({"SECOND", "MINUTE", "HOUR", "DAY"})


class RateLimitPolicy(BaseModel):
    """Request allowance expressed as pyrate-limiter rate strings (e.g. ``50/HOUR``)."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    rates: List[str] = Field(default_factory=list, description="Rate windows, e.g. 180/MINUTE")
    max_delay_ms: int = Field(
        default=3_600_000, description="Longest wait for capacity before failing the record"
    )

    @field_validator("rates")
    @classmethod
    def validate_rates(cls, v: List[str]) -> List[str]:
        for rate in v:
            limit, _, unit = rate.partition("/")
            if not limit.strip().isdigit() or unit.strip().upper() not in _RATE_UNITS:
                raise ValueError(f"Invalid rate '{rate}'. Use '<limit>/<SECOND|MINUTE|HOUR|DAY>'")
        return v

    @field_validator("max_delay_ms")
    @classmethod
    def validate_max_delay(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_delay_ms must be >= 0")
        return v


# ============================================================================
# Collaborator Models
# ============================================================================


class SourceConfig(BaseModel):
    """Source-of-truth store configuration."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    backend: Literal["sqlite", "http"] = Field(default="sqlite", description="Store backend")
    path: str = Field(default="state/certificates.sqlite", description="SQLite export path")
    url: Optional[str] = Field(default=None, description="Base URL of the HTTP export API")
    token: Optional[SecretStr] = Field(default=None, description="Bearer token for the HTTP API")
    page_size: int = Field(default=100, description="Records per cursor page")
    timeout_s: float = Field(default=30.0, description="HTTP timeout in seconds")

    @field_validator("page_size")
    @classmethod
    def validate_page_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("page_size must be >= 1")
        return v

    @model_validator(mode="after")
    def validate_backend(self) -> "SourceConfig":
        if self.backend == "http" and not self.url:
            raise ValueError("source.url is required when backend='http'")
        return self


class ContentStoreConfig(BaseModel):
    """Pinning API configuration for the content-addressed store."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    api_url: str = Field(default="https://api.pinata.cloud", description="Pinning API base URL")
    gateway: str = Field(default="https://ipfs.io/ipfs/", description="Public gateway prefix")
    api_key: Optional[SecretStr] = Field(default=None, description="Pinning API key")
    secret_api_key: Optional[SecretStr] = Field(default=None, description="Pinning API secret")
    timeout_s: float = Field(default=30.0, description="HTTP timeout in seconds")
    cid_version: Literal[0, 1] = Field(default=1, description="CID version requested on upload")
    retry: RetryPolicy = Field(default_factory=RetryPolicy, description="Upload retry policy")
    rate_limit: RateLimitPolicy = Field(
        default_factory=lambda: RateLimitPolicy(rates=["180/MINUTE"]),
        description="Upload rate limit",
    )


_DEFAULT_NETWORKS: Dict[str, Dict[str, Any]] = {
    "hardhat": {
        "chain_id": 31337,
        "relay_url": "http://localhost:8787",
        "explorer_url": "http://localhost:3000",
    },
    "mumbai": {
        "chain_id": 80001,
        "relay_url": "http://localhost:8787",
        "explorer_url": "https://mumbai.polygonscan.com",
    },
    "polygon": {
        "chain_id": 137,
        "relay_url": "http://localhost:8787",
        "explorer_url": "https://polygonscan.com",
    },
}


class NetworkProfile(BaseModel):
    """Per-network ledger relay settings."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    chain_id: int = Field(description="EVM chain id")
    relay_url: str = Field(description="Base URL of the anchoring relay for this network")
    contract_address: str = Field(default="", description="Certificate registry address")
    explorer_url: str = Field(default="", description="Block explorer base URL")


class LedgerConfig(BaseModel):
    """Distributed ledger configuration."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    networks: Dict[str, NetworkProfile] = Field(
        default_factory=lambda: {k: NetworkProfile(**v) for k, v in _DEFAULT_NETWORKS.items()},
        description="Network profiles keyed by network name",
    )
    signer_address: Optional[str] = Field(default=None, description="Signing identity address")
    signer_credential: Optional[SecretStr] = Field(
        default=None, description="Credential presented to the relay for the signer"
    )
    confirmation_timeout_s: float = Field(
        default=300.0, description="Per-transaction confirmation timeout"
    )
    poll_interval_s: float = Field(default=2.0, description="Confirmation poll interval")
    confirmations: int = Field(default=2, description="Block confirmations required by the relay")
    backoff_base_s: float = Field(default=2.0, description="AnchorTimeout backoff multiplier")
    backoff_max_s: float = Field(default=60.0, description="AnchorTimeout backoff ceiling")
    timeout_s: float = Field(default=30.0, description="HTTP timeout in seconds")
    submit_retry: RetryPolicy = Field(
        default_factory=lambda: RetryPolicy(max_attempts=3),
        description="Retry policy for relay submission transport errors",
    )
    rate_limit: RateLimitPolicy = Field(
        default_factory=lambda: RateLimitPolicy(rates=["50/HOUR"]),
        description="Anchor submission rate limit",
    )

    @field_validator("networks", mode="before")
    @classmethod
    def merge_network_defaults(cls, v: Any) -> Any:
        if not isinstance(v, dict):
            return v
        merged: Dict[str, Any] = {k: dict(p) for k, p in _DEFAULT_NETWORKS.items()}
        for name, profile in v.items():
            if isinstance(profile, NetworkProfile):
                profile = profile.model_dump()
            merged.setdefault(name, {}).update(profile or {})
        return merged

    @field_validator("confirmation_timeout_s", "poll_interval_s", "timeout_s")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Must be > 0")
        return v

    @field_validator("backoff_base_s", "backoff_max_s")
    @classmethod
    def validate_backoff(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Backoff values must be >= 0")
        return v


class DirectoryConfig(BaseModel):
    """Location of the pre-registered subject → ledger address directory."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    path: str = Field(
        default="state/subject-addresses.yaml",
        description="YAML or JSON mapping of subject ids to ledger addresses",
    )


class PackagerConfig(BaseModel):
    """Metadata presentation settings."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    issuer_name: str = Field(default="GroeiMetAI", description="Issuer shown in package names")
    default_image: str = Field(
        default="ipfs://certificate-template", description="Image used when a record has no proof URL"
    )


class RunConfig(BaseModel):
    """Options for one migration run."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    batch_size: int = Field(default=10, description="Records per checkpointed batch")
    dry_run: bool = Field(default=False, description="Use the no-op transport")
    from_date: Optional[date] = Field(default=None, description="Earliest completion date")
    course_ids: List[str] = Field(default_factory=list, description="Restrict to these courses")
    max_retries: int = Field(default=3, description="AnchorTimeout retries per record")
    inter_record_delay_s: float = Field(
        default=2.0, description="Pause after each successful anchor"
    )
    publish_workers: int = Field(default=1, description="Package/publish worker threads")

    @field_validator("batch_size", "publish_workers")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Must be >= 1")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_retries must be >= 0")
        return v

    @field_validator("inter_record_delay_s")
    @classmethod
    def validate_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("inter_record_delay_s must be >= 0")
        return v

    @field_validator("course_ids", mode="before")
    @classmethod
    def split_course_ids(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        if isinstance(v, (int, float)):
            return [str(v)]
        if isinstance(v, (list, tuple)):
            return [str(item) for item in v]
        return v


class PathsConfig(BaseModel):
    """Persisted state locations."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    checkpoint: str = Field(
        default="state/migration-checkpoint.jsonl", description="Append-only checkpoint log"
    )
    report_dir: str = Field(default="reports", description="Directory for run reports")


# ============================================================================
# Top-Level Configuration
# ============================================================================


class MigrationConfig(BaseModel):
    """
    Single source of truth for AnchorMigration configuration.

    Loaded from file (YAML/JSON), overlaid with environment variables,
    and finally overridden by CLI arguments. Precedence: file < env < CLI.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid", validate_assignment=True)

    run_id: Optional[str] = Field(default=None, description="Unique run identifier")
    network: NetworkName = Field(default=NetworkName.MUMBAI, description="Target ledger network")
    run: RunConfig = Field(default_factory=RunConfig, description="Run options")
    source: SourceConfig = Field(default_factory=SourceConfig, description="Source store")
    content_store: ContentStoreConfig = Field(
        default_factory=ContentStoreConfig, description="Content store"
    )
    ledger: LedgerConfig = Field(default_factory=LedgerConfig, description="Ledger relay")
    directory: DirectoryConfig = Field(
        default_factory=DirectoryConfig, description="Subject address directory"
    )
    packager: PackagerConfig = Field(default_factory=PackagerConfig, description="Packaging")
    paths: PathsConfig = Field(default_factory=PathsConfig, description="State paths")

    @model_validator(mode="after")
    def validate_network_profile(self) -> "MigrationConfig":
        if self.network.value not in self.ledger.networks:
            raise ValueError(f"No ledger profile configured for network '{self.network.value}'")
        return self

    def network_profile(self) -> NetworkProfile:
        return self.ledger.networks[self.network.value]

    def gateway_url(self, content_hash: str) -> str:
        """Public gateway address of published content."""

        return f"{self.content_store.gateway.rstrip('/')}/{content_hash}"

    def explorer_tx_url(self, tx_ref: str) -> Optional[str]:
        """Block explorer page for ``tx_ref``; ``None`` when no explorer is configured."""

        base = self.network_profile().explorer_url
        if not base:
            return None
        return f"{base.rstrip('/')}/tx/{tx_ref}"

    def run_options(self) -> RunOptions:
        return RunOptions(
            batch_size=self.run.batch_size,
            dry_run=self.run.dry_run,
            from_date=self.run.from_date,
            course_ids=tuple(self.run.course_ids),
            max_retries=self.run.max_retries,
            inter_record_delay=self.run.inter_record_delay_s,
            publish_workers=self.run.publish_workers,
        )

    def packager_options(self) -> PackagerOptions:
        return PackagerOptions(
            issuer_name=self.packager.issuer_name,
            default_image=self.packager.default_image,
        )

    def config_hash(self) -> str:
        """
        Compute deterministic SHA256 hash of config for reproducibility.

        Secrets are masked by Pydantic before hashing, so rotating a credential
        does not change the hash.

        Returns:
            Hex-encoded SHA256 hash of normalized config JSON.
        """
        import hashlib
        import json

        normalized = json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(normalized.encode()).hexdigest()

    def public_dict(self) -> Dict[str, Any]:
        """Config snapshot safe to persist in reports (secrets masked)."""

        return self.model_dump(mode="json")
