"""
AnchorMigration Configuration Package

Public API for loading, validating, and introspecting migration configuration.

Example:
    from CertLedger.AnchorMigration.config import load_config

    config = load_config(
        path="migration.yaml",
        cli_overrides={"network": "polygon", "run": {"batch_size": 25}},
    )
    config_id = config.config_hash()
"""

from .loader import (
    ENV_PREFIX,
    export_config_schema,
    load_config,
    validate_config_file,
)
from .models import (
    ContentStoreConfig,
    DirectoryConfig,
    LedgerConfig,
    MigrationConfig,
    NetworkName,
    NetworkProfile,
    PackagerConfig,
    PathsConfig,
    RateLimitPolicy,
    RetryPolicy,
    RunConfig,
    SourceConfig,
)

__all__ = [
    # Models
    "MigrationConfig",
    "NetworkName",
    "NetworkProfile",
    "RunConfig",
    "SourceConfig",
    "ContentStoreConfig",
    "LedgerConfig",
    "DirectoryConfig",
    "PackagerConfig",
    "PathsConfig",
    "RetryPolicy",
    "RateLimitPolicy",
    # Loading/validation
    "ENV_PREFIX",
    "load_config",
    "validate_config_file",
    "export_config_schema",
]
