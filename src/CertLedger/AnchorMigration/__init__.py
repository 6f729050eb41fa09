# === NAVMAP v1 ===
# {
#   "module": "CertLedger.AnchorMigration",
#   "purpose": "Package initialization for CertLedger.AnchorMigration",
#   "sections": [
#     {"id": "getattr", "name": "__getattr__", "anchor": "function-getattr", "kind": "function"},
#     {"id": "dir", "name": "__dir__", "anchor": "function-dir", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Public API for the CertLedger certificate anchoring migration.

The facade exposes the pieces external callers compose: configuration
loading, the startup bootstrap, the batch orchestrator, and the report
writer. Submodules are imported lazily so ``import CertLedger.AnchorMigration``
stays cheap for the CLI's ``--help``.
"""

from __future__ import annotations

from importlib import import_module
from typing import Any

__version__ = "0.1.0"

_ATTRIBUTE_EXPORTS: dict[str, tuple[str, str]] = {
    "MigrationConfig": (".config", "MigrationConfig"),
    "load_config": (".config", "load_config"),
    "build_context": (".bootstrap", "build_context"),
    "run_from_config": (".bootstrap", "run_from_config"),
    "BatchOrchestrator": (".orchestrator", "BatchOrchestrator"),
    "CheckpointStore": (".checkpoint", "CheckpointStore"),
    "SourceRecordReader": (".source", "SourceRecordReader"),
    "build_package": (".packager", "build_package"),
    "ContentStorePublisher": (".content_store", "ContentStorePublisher"),
    "LedgerAnchorWriter": (".anchor", "LedgerAnchorWriter"),
    "LiveTransport": (".transport", "LiveTransport"),
    "DryRunTransport": (".transport", "DryRunTransport"),
    "finalize": (".report", "finalize"),
    "MigrationResult": (".models", "MigrationResult"),
    "MigrationStatus": (".models", "MigrationStatus"),
    "RunOptions": (".models", "RunOptions"),
    "SourceRecord": (".models", "SourceRecord"),
    "AnchorReceipt": (".models", "AnchorReceipt"),
    "MigrationError": (".errors", "MigrationError"),
}

__all__ = ["__version__", *_ATTRIBUTE_EXPORTS]


def __getattr__(name: str) -> Any:
    """Lazily import public exports on first access."""

    target = _ATTRIBUTE_EXPORTS.get(name)
    if target is None:
        raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
    module = import_module(target[0], __name__)
    value = getattr(module, target[1])
    globals()[name] = value
    return value


def __dir__() -> list[str]:
    """Expose lazily-populated attributes in ``dir()`` results."""

    return sorted(set(globals()) | set(__all__))
