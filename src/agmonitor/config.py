"""Configuration for agmonitor.

Configuration is optional. Every value has a default, and malformed entries
are logged and replaced by their defaults instead of stopping the monitor.
"""

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agmonitor.errors import ConfigurationInvalid
from agmonitor.groups import DEFAULT_GROUPS
from agmonitor.models import GroupDefinition, Thresholds

logger = logging.getLogger(__name__)

MIN_POLL_INTERVAL = 1.0


@dataclass(slots=True, frozen=True)
class GroupSettings:
    """User settings for one model group."""

    enabled: bool = True
    limits: Thresholds = field(default_factory=Thresholds)


@dataclass(slots=True, frozen=True)
class MonitorConfig:
    """Values consumed by the monitoring core."""

    poll_interval: float = 30.0
    probe_timeout: float = 5.0
    request_timeout: float = 5.0
    command_timeout: float = 10.0
    locale: str = "en"
    model_groups: Mapping[str, GroupSettings] = field(default_factory=dict)
    group_definitions: tuple[GroupDefinition, ...] = DEFAULT_GROUPS

    def group_settings(self, group_id: str) -> GroupSettings:
        """Settings for a group, falling back to the defaults when absent."""
        return self.model_groups.get(group_id) or GroupSettings()


def parse_group_settings(raw: Any) -> GroupSettings:
    """
    Parse one `{enabled, limits: {yellow, red}}` entry.

    Raises:
        ConfigurationInvalid: If the entry is not a mapping or its limits are
            not numbers in 0-100 with red at or below yellow.
    """
    if not isinstance(raw, Mapping):
        raise ConfigurationInvalid(f"group settings must be an object, got {type(raw).__name__}")

    limits = raw.get("limits")
    if limits is None:
        limits = {}
    if not isinstance(limits, Mapping):
        raise ConfigurationInvalid("limits must be an object")

    defaults = Thresholds()
    yellow = limits.get("yellow", defaults.yellow)
    red = limits.get("red", defaults.red)
    for name, value in (("yellow", yellow), ("red", red)):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationInvalid(f"{name} limit must be a number, got {value!r}")
        if not 0 <= value <= 100:
            raise ConfigurationInvalid(f"{name} limit {value} is outside 0-100")
    if red > yellow:
        raise ConfigurationInvalid(f"red limit {red} is above yellow limit {yellow}")

    return GroupSettings(
        enabled=raw.get("enabled") is not False,
        limits=Thresholds(yellow=float(yellow), red=float(red)),
    )


def parse_group_definitions(raw: Any) -> tuple[GroupDefinition, ...]:
    """
    Parse a list of `{id, name, patterns}` group definitions.

    Raises:
        ConfigurationInvalid: If any definition is malformed or ids repeat.
    """
    if not isinstance(raw, list) or not raw:
        raise ConfigurationInvalid("group_definitions must be a non-empty list")

    definitions: list[GroupDefinition] = []
    seen: set[str] = set()
    for entry in raw:
        if not isinstance(entry, Mapping):
            raise ConfigurationInvalid(f"group definition must be an object, got {entry!r}")
        group_id = entry.get("id")
        patterns = entry.get("patterns")
        if not isinstance(group_id, str) or not group_id or group_id in seen:
            raise ConfigurationInvalid(f"invalid or duplicate group id {group_id!r}")
        if not isinstance(patterns, list) or not all(isinstance(p, str) and p for p in patterns):
            raise ConfigurationInvalid(f"group {group_id!r} patterns must be non-empty strings")
        seen.add(group_id)
        definitions.append(
            GroupDefinition(
                id=group_id,
                display_name=str(entry.get("name") or group_id),
                label_patterns=tuple(p.lower() for p in patterns),
            )
        )
    return tuple(definitions)


def _positive_number(raw: Mapping[str, Any], key: str, default: float) -> float:
    value = raw.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        logger.warning("Invalid %s %r in configuration, using %s", key, value, default)
        return default
    return float(value)


def parse_config(raw: Any) -> MonitorConfig:
    """Build a MonitorConfig from decoded JSON, replacing bad entries with defaults."""
    if not isinstance(raw, Mapping):
        logger.warning("Configuration must be an object, using defaults")
        return MonitorConfig()

    defaults = MonitorConfig()

    model_groups: dict[str, GroupSettings] = {}
    raw_groups = raw.get("model_groups") or {}
    if isinstance(raw_groups, Mapping):
        for group_id, entry in raw_groups.items():
            try:
                model_groups[str(group_id)] = parse_group_settings(entry)
            except ConfigurationInvalid as e:
                logger.warning("Invalid settings for group %s (%s), using defaults", group_id, e)
    else:
        logger.warning("model_groups must be an object, using defaults")

    definitions = defaults.group_definitions
    if "group_definitions" in raw:
        try:
            definitions = parse_group_definitions(raw["group_definitions"])
        except ConfigurationInvalid as e:
            logger.warning("Invalid group definitions (%s), using built-in groups", e)

    locale = raw.get("locale", defaults.locale)
    if not isinstance(locale, str) or not locale:
        logger.warning("Invalid locale %r in configuration, using %s", locale, defaults.locale)
        locale = defaults.locale

    return MonitorConfig(
        poll_interval=max(
            MIN_POLL_INTERVAL, _positive_number(raw, "poll_interval", defaults.poll_interval)
        ),
        probe_timeout=_positive_number(raw, "probe_timeout", defaults.probe_timeout),
        request_timeout=_positive_number(raw, "request_timeout", defaults.request_timeout),
        command_timeout=_positive_number(raw, "command_timeout", defaults.command_timeout),
        locale=locale,
        model_groups=model_groups,
        group_definitions=definitions,
    )


def load_config(path: str | Path | None) -> MonitorConfig:
    """Load configuration from a JSON file. Missing or unreadable files yield defaults."""
    if path is None:
        return MonitorConfig()
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Could not read configuration %s (%s), using defaults", path, e)
        return MonitorConfig()
    return parse_config(raw)
