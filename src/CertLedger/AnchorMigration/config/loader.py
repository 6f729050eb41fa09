# === NAVMAP v1 ===
# {
#   "module": "CertLedger.AnchorMigration.config.loader",
#   "purpose": "Compose MigrationConfig from a file, CERTLEDGER_ variables and CLI flags",
#   "sections": [
#     {"id": "read-file", "name": "_read_file", "anchor": "function-read-file", "kind": "function"},
#     {"id": "env-overrides", "name": "_env_overrides", "anchor": "function-env-overrides", "kind": "function"},
#     {"id": "deep-merge", "name": "_deep_merge", "anchor": "function-deep-merge", "kind": "function"},
#     {"id": "load-config", "name": "load_config", "anchor": "function-load-config", "kind": "function"},
#     {"id": "validate-config-file", "name": "validate_config_file", "anchor": "function-validate-config-file", "kind": "function"},
#     {"id": "export-config-schema", "name": "export_config_schema", "anchor": "function-export-config-schema", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Configuration loading with file < environment < CLI precedence.

Environment variables use ``__`` for nesting::

  CERTLEDGER_RUN__BATCH_SIZE=25               → run.batch_size = 25
  CERTLEDGER_LEDGER__RATE_LIMIT__RATES='["10/MINUTE"]'

Values that parse as JSON literals (numbers, booleans, lists) are decoded;
everything else is handed to Pydantic as a string. ``CERTLEDGER_CONFIG`` names
the config file and is never merged.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from .models import MigrationConfig

LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "CERTLEDGER_"
_RESERVED_ENV_KEYS = frozenset({"config"})


def _read_file(path: str) -> dict[str, Any]:
    """Parse a ``.yaml``/``.yml`` or ``.json`` config file into a mapping.

    Raises:
        ValueError: If the file is missing, unreadable or not a mapping
    """
    p = Path(path)
    suffix = p.suffix.lower()
    if suffix not in (".yaml", ".yml", ".json"):
        raise ValueError(f"Unsupported config format {suffix or '<none>'}: {path}")
    try:
        text = p.read_text(encoding="utf-8")
        data = json.loads(text) if suffix == ".json" else yaml.safe_load(text)
    except FileNotFoundError as e:
        raise ValueError(f"Config file not found: {path}") from e
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ValueError(f"Cannot parse config file {path}: {e}") from e

    data = data or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must hold a mapping at the top level")
    return data


def _env_overrides(env_prefix: str) -> dict[str, Any]:
    """Collect prefixed environment variables as a nested override mapping."""
    overrides: dict[str, Any] = {}
    for env_key, raw in os.environ.items():
        if not env_key.startswith(env_prefix):
            continue
        path = env_key[len(env_prefix) :].lower().split("__")
        if path[0] in _RESERVED_ENV_KEYS:
            continue
        try:
            value: Any = json.loads(raw)
        except ValueError:
            value = raw
        node = overrides
        for key in path[:-1]:
            node = node.setdefault(key, {})
        node[path[-1]] = value
        # key only; values may be secrets
        LOGGER.debug(f"Environment override: {env_key} → {'.'.join(path)}")
    return overrides


def _deep_merge(base: dict[str, Any], overrides: Mapping[str, Any] | None) -> dict[str, Any]:
    """Merge ``overrides`` into ``base``; ``None`` leaves the base value alone."""
    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if isinstance(value, Mapping):
            current = base.get(key)
            base[key] = _deep_merge(current if isinstance(current, dict) else {}, value)
        else:
            base[key] = value
    return base


def load_config(
    path: str | None = None,
    env_prefix: str = ENV_PREFIX,
    cli_overrides: Mapping[str, Any] | None = None,
) -> MigrationConfig:
    """Load and validate :class:`MigrationConfig`.

    Args:
        path: YAML/JSON config file (optional)
        env_prefix: Environment variable prefix
        cli_overrides: Nested overrides from command-line flags

    Raises:
        ValueError: If the file cannot be read or the result fails validation
    """
    data = _read_file(path) if path else {}
    if path:
        LOGGER.info(f"Loaded config from {path}")
    data = _deep_merge(data, _env_overrides(env_prefix))
    data = _deep_merge(data, cli_overrides)

    try:
        config = MigrationConfig.model_validate(data)
    except ValueError as e:
        LOGGER.error(f"Configuration validation failed: {e}")
        raise
    LOGGER.info(f"Configuration validated. Config hash: {config.config_hash()[:8]}...")
    return config


def validate_config_file(path: str) -> bool:
    """Validate ``path`` with environment overlays applied; raises ``ValueError``."""
    load_config(path=path)
    return True


def export_config_schema() -> dict[str, Any]:
    return MigrationConfig.model_json_schema()
