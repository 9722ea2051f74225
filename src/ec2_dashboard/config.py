from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .aws_api import DEFAULT_BOOTSTRAP_REGION, DEFAULT_INSTANCE_STATES

DEFAULT_CONFIG_PATH = Path("ec2-dashboard.yaml")
KNOWN_INSTANCE_STATES = frozenset(
    {"pending", "running", "shutting-down", "terminated", "stopping", "stopped"}
)


@dataclass(slots=True, frozen=True)
class DashboardConfig:
    bootstrap_region: str = DEFAULT_BOOTSTRAP_REGION
    instance_states: tuple[str, ...] = DEFAULT_INSTANCE_STATES
    regions: tuple[str, ...] = ()

    def select_regions(self, discovered: list[str]) -> list[str]:
        if not self.regions:
            return list(discovered)
        allowed = set(self.regions)
        return [region for region in discovered if region in allowed]


DEFAULT_DASHBOARD_CONFIG = DashboardConfig()


def load_dashboard_config(config_path: str | Path | None = None) -> DashboardConfig:
    path = Path(config_path).expanduser() if config_path else DEFAULT_CONFIG_PATH
    if not path.is_file():
        return DEFAULT_DASHBOARD_CONFIG

    with path.open("r", encoding="utf-8") as handle:
        loaded = yaml.safe_load(handle) or {}

    bootstrap_region = _coerce_name(
        _safe_mapping_get(loaded, "bootstrap_region"),
        fallback=DEFAULT_DASHBOARD_CONFIG.bootstrap_region,
    )
    states = tuple(
        state
        for state in _parse_names(_safe_mapping_get(loaded, "instance_states"))
        if state in KNOWN_INSTANCE_STATES
    )
    regions = _parse_names(_safe_mapping_get(loaded, "regions"))
    return DashboardConfig(
        bootstrap_region=bootstrap_region,
        instance_states=states if states else DEFAULT_DASHBOARD_CONFIG.instance_states,
        regions=regions,
    )


def _parse_names(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        value = [value]
    try:
        iterator = iter(value)
    except TypeError:
        return ()

    parsed: list[str] = []
    for item in iterator:
        name = _coerce_name(item, fallback=None)
        if name is not None and name not in parsed:
            parsed.append(name)
    return tuple(parsed)


def _coerce_name(value: Any, fallback: str | None) -> str | None:
    if not isinstance(value, str):
        return fallback
    stripped = value.strip()
    return stripped or fallback


def _safe_mapping_get(mapping: Any, key: str, fallback: Any = None) -> Any:
    try:
        return mapping[key]
    except (KeyError, TypeError):
        return fallback
