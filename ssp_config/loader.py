"""
Configuration Loader (``ssp_config.loader``).

Responsibility
--------------
Loads the YAML configuration sets and parses them into the frozen
``ssp_config.schema`` dataclasses.  The single public entry point for
runtime config is ``ssp_config.get_active_config()``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys in parsed dict  -> ``KeyError`` propagates.
* Out-of-range values  -> ``ValueError`` from the schema dataclasses.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from ssp_config.schema import PolicyDefaults, SspEngineConfig
from ssp_kernel.domain.values import RoundingMode


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_decimal(value: Any, name: str) -> Decimal:
    """Parse a Decimal from a YAML scalar, refusing floats."""
    if isinstance(value, float):
        # YAML floats lose precision; settings are written as quoted strings
        raise ValueError(f"{name} must be quoted as a string, got float {value!r}")
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"{name} is not a decimal: {value!r}") from e


def merge_overlay(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge overlay onto base; overlay wins on conflicts."""
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_overlay(merged[key], value)
        else:
            merged[key] = value
    return merged


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def parse_policy_defaults(data: dict[str, Any]) -> PolicyDefaults:
    return PolicyDefaults(
        rounding=RoundingMode(data.get("rounding", "HALF_UP")),
        residual_allowed=bool(data.get("residual_allowed", True)),
        default_method=data.get("default_method", "OBSERVABLE"),
        corridor_tolerance_pct=parse_decimal(
            data.get("corridor_tolerance_pct", "0.20"), "corridor_tolerance_pct"
        ),
        alert_threshold_pct=parse_decimal(
            data.get("alert_threshold_pct", "0.15"), "alert_threshold_pct"
        ),
    )


def parse_engine_config(
    data: dict[str, Any], company_id: str | None = None
) -> SspEngineConfig:
    """
    Parse a merged configuration document.

    Preconditions:
        - ``data`` has ``config_id``, ``version`` and ``engine`` keys.
    """
    engine = data["engine"]
    return SspEngineConfig(
        config_id=data["config_id"],
        version=int(data["version"]),
        company_id=company_id,
        bundle_weight_tolerance=parse_decimal(
            engine["bundle_weight_tolerance"], "bundle_weight_tolerance"
        ),
        stale_draft_days=int(engine["stale_draft_days"]),
        minimum_peer_group_size=int(engine["minimum_peer_group_size"]),
        discount_tie_break=engine.get("discount_tie_break", "code"),
        policy_defaults=parse_policy_defaults(data.get("policy_defaults", {})),
        checksum=compute_checksum(data),
    )
