"""
ssp_config -- single public entrypoint for SSP engine configuration.

Responsibility:
    Provides the ONLY way to obtain engine settings at runtime through
    ``get_active_config()``.  Services receive the returned
    ``SspEngineConfig`` at construction and never read YAML themselves.

Architecture position:
    Configuration -- sits above ``ssp_kernel`` and below ``ssp_modules``.
    The kernel and the pure engines never import from ``ssp_config``.

Failure modes:
    - ``FileNotFoundError`` -- the base ``default.yaml`` is missing.
    - ``ValueError`` -- a setting is out of range or malformed.

Audit relevance:
    Every call emits an ``SSP_CONFIG_TRACE`` log record carrying the
    config id, version, company scope and checksum, tying each allocation
    run to the settings that governed it.
"""

from __future__ import annotations

import logging
from pathlib import Path

from ssp_config.loader import load_yaml_file, merge_overlay, parse_engine_config
from ssp_config.schema import PolicyDefaults, SspEngineConfig

_logger = logging.getLogger("ssp_kernel.config")

# Default configuration sets directory
_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"
_BASE_FILE = "default.yaml"


def get_active_config(
    company_id: str | None = None,
    config_dir: Path | None = None,
) -> SspEngineConfig:
    """The ONLY public configuration entrypoint.

    Loads ``default.yaml`` and, when ``company_id`` is given and a
    ``<company_id>.yaml`` file exists alongside it, merges that overlay on
    top.

    Args:
        company_id: Optional company scope for the overlay lookup.
        config_dir: Override path to the configuration sets directory.
            Defaults to ssp_config/sets/.

    Returns:
        SspEngineConfig with a checksum of the merged document.

    Raises:
        FileNotFoundError: If the base configuration file is missing.
        ValueError: If a setting fails validation.
    """
    sets_dir = config_dir or _DEFAULT_CONFIG_DIR
    data = load_yaml_file(sets_dir / _BASE_FILE)

    overlay_applied = False
    if company_id:
        overlay_path = sets_dir / f"{company_id}.yaml"
        if overlay_path.exists():
            data = merge_overlay(data, load_yaml_file(overlay_path))
            overlay_applied = True

    config = parse_engine_config(data, company_id=company_id)

    _logger.info(
        "SSP_CONFIG_TRACE",
        extra={
            "trace_type": "SSP_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "company_id": company_id,
            "overlay_applied": overlay_applied,
            "checksum": config.checksum,
        },
    )
    return config


__all__ = [
    "get_active_config",
    "PolicyDefaults",
    "SspEngineConfig",
]
