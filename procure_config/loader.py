"""
Settings Loader (``procure_config.loader``).

Responsibility
--------------
Loads a YAML settings file and parses each section into the typed
configuration dataclass that owns it.  Runtime callers go through
``procure_config.get_active_settings()``.

Architecture position
---------------------
**Config layer** -- sits above ``procure_kernel``, ``procure_batch`` and
``procure_modules`` config schemas and builds them; none of them import
from here.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* A section that is not a mapping, or an unknown top-level section  ->
  ``ValueError``.
* Invalid values  -> ``ValueError`` / ``TypeError`` from the section's
  dataclass.
"""

import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from procure_batch.config import BatchConfig
from procure_kernel.domain.access import AccessPolicy
from procure_kernel.logging_config import get_logger
from procure_kernel.services.retry_service import RetryPolicy
from procure_modules.inventory.config import InventoryConfig
from procure_modules.purchasing.config import PurchasingConfig

logger = get_logger("config.loader")

SECTIONS = frozenset({"access", "purchasing", "inventory", "batch", "retry"})


@dataclass(frozen=True)
class ProcurementSettings:
    """Every configurable policy of the system, parsed and validated."""
    access: AccessPolicy
    purchasing: PurchasingConfig
    inventory: InventoryConfig
    batch: BatchConfig
    retry: RetryPolicy
    checksum: str
    source: str | None = None


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form; identical data, identical checksum."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"settings section '{name}' must be a mapping, got {type(value).__name__}")
    return value


def parse_settings(data: dict[str, Any], source: str | None = None) -> ProcurementSettings:
    """
    Build ``ProcurementSettings`` from a parsed YAML document.

    Omitted sections and keys fall back to the dataclass defaults.
    """
    unknown = set(data) - SECTIONS
    if unknown:
        raise ValueError(f"unknown settings section(s): {sorted(unknown)}")

    access_data = _section(data, "access")
    settings = ProcurementSettings(
        access=(
            AccessPolicy.from_dict(access_data) if access_data
            else AccessPolicy.with_defaults()
        ),
        purchasing=PurchasingConfig.from_dict(_section(data, "purchasing")),
        inventory=InventoryConfig.from_dict(_section(data, "inventory")),
        batch=BatchConfig.from_dict(_section(data, "batch")),
        retry=RetryPolicy.from_dict(_section(data, "retry")),
        checksum=compute_checksum(data),
        source=source,
    )
    logger.info(
        "settings_loaded",
        extra={
            "source": source,
            "checksum": settings.checksum,
            "sections": sorted(data),
        },
    )
    return settings


def load_settings(path: Path | str) -> ProcurementSettings:
    """Load and parse one settings file."""
    path = Path(path)
    return parse_settings(load_yaml_file(path), source=str(path))
