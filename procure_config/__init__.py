"""
procure_config -- single public entrypoint for procurement settings.

Responsibility:
    ``get_active_settings()`` returns the ``ProcurementSettings`` every
    facade is built from: role permissions and approval limits, the
    approval chain, receiving tolerances, stock ledger policy, batch
    tuning, and the retry policy.

Architecture position:
    Configuration layer.  Sits above ``procure_kernel``, ``procure_batch``
    and ``procure_modules``; none of them import from here.

Resolution order:
    1. An explicit ``path`` argument.
    2. The ``PROCURE_CONFIG`` environment variable.
    3. The packaged ``defaults/procurement.yaml``.

Failure modes:
    - ``FileNotFoundError`` -- the resolved file does not exist.
    - ``ValueError`` -- a section or value fails validation.
"""

import os
from pathlib import Path

from procure_config.loader import (
    ProcurementSettings,
    compute_checksum,
    load_settings,
    load_yaml_file,
    parse_settings,
)
from procure_kernel.logging_config import get_logger

logger = get_logger("config")

CONFIG_ENV_VAR = "PROCURE_CONFIG"
DEFAULT_SETTINGS_PATH = Path(__file__).parent / "defaults" / "procurement.yaml"


def get_active_settings(path: Path | str | None = None) -> ProcurementSettings:
    """
    The public settings entrypoint.

    Non-goals:
        - Does NOT cache; callers hold the returned settings for the life
          of their facades.
    """
    resolved = path or os.environ.get(CONFIG_ENV_VAR) or DEFAULT_SETTINGS_PATH
    settings = load_settings(resolved)
    logger.info(
        "settings_activated",
        extra={"source": settings.source, "checksum": settings.checksum},
    )
    return settings


__all__ = [
    "CONFIG_ENV_VAR",
    "DEFAULT_SETTINGS_PATH",
    "ProcurementSettings",
    "compute_checksum",
    "get_active_settings",
    "load_settings",
    "load_yaml_file",
    "parse_settings",
]
