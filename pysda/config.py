"""Pipeline configuration: YAML loading and typed section access.

The pipeline config is a mapping of sections (``input``, ``neighbors``,
``diffusion``, ``tracker``, ``projection``, ``output``, ``logging``). A
section may be omitted or left empty in YAML, in which case every value
falls back to its default.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

import yaml

SECTIONS = ("input", "neighbors", "diffusion", "tracker", "projection", "output", "logging")


def load_config(path: str | Path) -> Dict[str, Any]:
    """Load a YAML pipeline config; an empty file gives an empty config."""

    with Path(path).open("r", encoding="utf-8") as fh:
        config = yaml.safe_load(fh) or {}
    if not isinstance(config, dict):
        raise ValueError(f"Config {path} must be a mapping of sections, got {type(config).__name__}")
    unknown = sorted(set(config) - set(SECTIONS))
    if unknown:
        raise ValueError(f"Unknown config sections in {path}: {unknown}")
    return config


def get_section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Return one config section; a missing or null section is empty."""

    if name not in SECTIONS:
        raise ValueError(f"Unknown config section: {name}")
    section = config.get(name)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ValueError(f"Config section {name!r} must be a mapping, got {section!r}")
    return section


def get_nested(config: Dict[str, Any], keys: list[str], default: Any) -> Any:
    """Value at ``section.key...``; missing keys and nulls give ``default``."""

    current: Any = get_section(config, keys[0])
    for key in keys[1:]:
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return default if current is None else current
