"""
Logging setup.

`logging.yaml` (packaged next to the settings) is the base dictConfig; the level
comes from settings (`CAMPUSMAP_LOG_LEVEL`) unless the caller passes one, e.g.
from a CLI flag.
"""

from __future__ import annotations

import copy
import logging.config

from campusmap.config.settings import get_logging_config, get_settings


def configure_logging(level: str | None = None) -> None:
    """Apply the packaged logging config with the effective level on root and handlers."""
    config = copy.deepcopy(get_logging_config())
    effective = (level or get_settings().app.log_level).upper()

    config.setdefault("root", {})["level"] = effective
    for handler in (config.get("handlers") or {}).values():
        if isinstance(handler, dict):
            handler["level"] = effective

    logging.config.dictConfig(config)
    logging.getLogger(__name__).debug("Logging configured at %s", effective)
