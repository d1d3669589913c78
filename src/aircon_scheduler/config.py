"""Scheduler configuration loading and validation.

Reads an ``aircon.toml`` file, resolves ``${VAR}`` references from the
environment, and returns a validated :class:`AppConfig` dataclass.

Example::

    [scheduler]
    name = "office-aircon"
    timezone = "Pacific/Auckland"
    refresh_interval_seconds = 1800
    lead_time_minutes = 5
    merge_gap_minutes = 10

    [scheduler.logging]
    level = "INFO"
    format = "json"

    [graph]
    access_token = "${GRAPH_ACCESS_TOKEN}"

    [mqtt]
    host = "broker.local"
    username = "${MQTT_USER}"
    password = "${MQTT_PASSWORD}"

    [[rooms]]
    name = "Room A"
    email = "room-a@example.com"
    device_id = 3
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from types import MappingProxyType
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_CONFIG_PATH = Path("aircon.toml")
DEFAULT_GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
DEFAULT_TOPIC_TEMPLATE = "aircon/{device_id}/power"

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when scheduler configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [scheduler.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class SchedulerConfig:
    """Core scheduling policy from the [scheduler] section.

    ``merge_gap`` is the back-to-back threshold: a meeting whose power-on time
    falls less than this far after the running end of the previous chain is
    merged into that chain.
    """

    name: str = "aircon-scheduler"
    timezone: str = "UTC"
    refresh_interval: timedelta = timedelta(minutes=30)
    lead_time: timedelta = timedelta(minutes=5)
    merge_gap: timedelta = timedelta(minutes=10)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


@dataclass
class GraphConfig:
    """Microsoft Graph calendar access from the [graph] section."""

    access_token: str
    base_url: str = DEFAULT_GRAPH_BASE_URL
    sync_window: timedelta = timedelta(hours=24)
    resync_interval: timedelta = timedelta(hours=12)
    page_size: int = 50
    timeout_seconds: float = 30.0


@dataclass
class MqttConfig:
    """MQTT broker connection from the [mqtt] section."""

    host: str
    port: int = 1883
    username: str | None = None
    password: str | None = None
    client_id: str | None = None
    topic_template: str = DEFAULT_TOPIC_TEMPLATE
    qos: int = 1
    keepalive: int = 60


@dataclass
class RoomConfig:
    """A single [[rooms]] entry: a bookable room and its climate unit."""

    name: str
    email: str
    device_id: str
    disabled: bool = False


@dataclass
class AppConfig:
    """Parsed and validated scheduler configuration."""

    scheduler: SchedulerConfig
    graph: GraphConfig
    mqtt: MqttConfig
    rooms: list[RoomConfig] = field(default_factory=list)

    @property
    def enabled_rooms(self) -> list[RoomConfig]:
        return [room for room in self.rooms if not room.disabled]

    def device_table(self) -> MappingProxyType[str, str]:
        """Return the immutable room-name to device-id table for enabled rooms."""
        return MappingProxyType({room.name: room.device_id for room in self.enabled_rooms})


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)  # keep placeholder for error reporting
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _number(section: dict, key: str, default: float, *, label: str) -> float:
    raw = section.get(key, default)
    if isinstance(raw, bool):
        raise ConfigError(f"Invalid {label}.{key}: {raw!r}. Must be a number.")
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {label}.{key}: {raw!r}. Must be a number.") from exc


def _positive_number(section: dict, key: str, default: float, *, label: str) -> float:
    value = _number(section, key, default, label=label)
    if value <= 0:
        raise ConfigError(f"Invalid {label}.{key}: {section.get(key)!r}. Must be positive.")
    return value


def _non_negative_number(section: dict, key: str, default: float, *, label: str) -> float:
    value = _number(section, key, default, label=label)
    if value < 0:
        raise ConfigError(f"Invalid {label}.{key}: {section.get(key)!r}. Must not be negative.")
    return value


def _integer(section: dict, key: str, default: int, *, label: str) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool) or (isinstance(raw, float) and not raw.is_integer()):
        raise ConfigError(f"Invalid {label}.{key}: {raw!r}. Must be an integer.")
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {label}.{key}: {raw!r}. Must be an integer.") from exc


def _optional_str(section: dict, key: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_logging(scheduler_section: dict) -> LoggingConfig:
    logging_section = scheduler_section.get("logging", {})
    log_level = str(logging_section.get("level", "INFO")).upper()
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid scheduler.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    return LoggingConfig(
        level=log_level,
        format=log_format,
        log_root=logging_section.get("log_root"),
    )


def _parse_scheduler(data: dict) -> SchedulerConfig:
    section = data.get("scheduler", {})
    if not isinstance(section, dict):
        raise ConfigError("[scheduler] must be a table")

    timezone = str(section.get("timezone", "UTC")).strip()
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Invalid scheduler.timezone: {timezone!r}") from exc

    lead_minutes = _non_negative_number(section, "lead_time_minutes", 5, label="scheduler")
    merge_gap_minutes = _non_negative_number(section, "merge_gap_minutes", 10, label="scheduler")

    refresh_seconds = _positive_number(
        section, "refresh_interval_seconds", 1800, label="scheduler"
    )

    return SchedulerConfig(
        name=str(section.get("name", "aircon-scheduler")),
        timezone=timezone,
        refresh_interval=timedelta(seconds=refresh_seconds),
        lead_time=timedelta(minutes=lead_minutes),
        merge_gap=timedelta(minutes=merge_gap_minutes),
        logging=_parse_logging(section),
    )


def _parse_graph(data: dict) -> GraphConfig:
    section = data.get("graph")
    if not isinstance(section, dict):
        raise ConfigError("Missing [graph] section in config")

    access_token = _optional_str(section, "access_token")
    if access_token is None:
        raise ConfigError("Missing required field: graph.access_token")

    page_size = _integer(section, "page_size", 50, label="graph")
    if page_size <= 0:
        raise ConfigError(f"Invalid graph.page_size: {page_size!r}. Must be positive.")

    return GraphConfig(
        access_token=access_token,
        base_url=str(section.get("base_url", DEFAULT_GRAPH_BASE_URL)).rstrip("/"),
        sync_window=timedelta(
            hours=_positive_number(section, "sync_window_hours", 24, label="graph")
        ),
        resync_interval=timedelta(
            hours=_positive_number(section, "resync_interval_hours", 12, label="graph")
        ),
        page_size=page_size,
        timeout_seconds=_positive_number(section, "timeout_seconds", 30.0, label="graph"),
    )


def _parse_mqtt(data: dict) -> MqttConfig:
    section = data.get("mqtt")
    if not isinstance(section, dict):
        raise ConfigError("Missing [mqtt] section in config")

    host = _optional_str(section, "host")
    if host is None:
        raise ConfigError("Missing required field: mqtt.host")

    qos = _integer(section, "qos", 1, label="mqtt")
    if qos not in (0, 1, 2):
        raise ConfigError(f"Invalid mqtt.qos: {qos!r}. Expected 0, 1 or 2.")

    port = _integer(section, "port", 1883, label="mqtt")
    if not 0 < port < 65536:
        raise ConfigError(f"Invalid mqtt.port: {port!r}. Expected 1-65535.")

    keepalive = _integer(section, "keepalive", 60, label="mqtt")
    if keepalive <= 0:
        raise ConfigError(f"Invalid mqtt.keepalive: {keepalive!r}. Must be positive.")

    topic_template = str(section.get("topic_template", DEFAULT_TOPIC_TEMPLATE))
    if "{device_id}" not in topic_template:
        raise ConfigError(
            f"Invalid mqtt.topic_template: {topic_template!r}. Must contain '{{device_id}}'."
        )

    return MqttConfig(
        host=host,
        port=port,
        username=_optional_str(section, "username"),
        password=_optional_str(section, "password"),
        client_id=_optional_str(section, "client_id"),
        topic_template=topic_template,
        qos=qos,
        keepalive=keepalive,
    )


def _parse_room(entry: Any, index: int) -> RoomConfig:
    if not isinstance(entry, dict):
        raise ConfigError(f"rooms[{index}] must be a table")

    missing = [key for key in ("name", "email", "device_id") if entry.get(key) in (None, "")]
    if missing:
        raise ConfigError(f"rooms[{index}] is missing required field(s): {', '.join(missing)}")

    return RoomConfig(
        name=str(entry["name"]).strip(),
        email=str(entry["email"]).strip(),
        # Device ids may be written as integers in TOML; topics always use strings.
        device_id=str(entry["device_id"]).strip(),
        disabled=bool(entry.get("disabled", False)),
    )


def parse_config(data: dict[str, Any]) -> AppConfig:
    """Validate an already-decoded config mapping."""
    data = resolve_env_vars(data)

    raw_rooms = data.get("rooms", [])
    if not isinstance(raw_rooms, list):
        raise ConfigError("[[rooms]] must be an array of tables")
    rooms = [_parse_room(entry, i) for i, entry in enumerate(raw_rooms)]

    seen: set[str] = set()
    for room in rooms:
        if room.name in seen:
            raise ConfigError(f"Duplicate room name: {room.name!r}")
        seen.add(room.name)

    config = AppConfig(
        scheduler=_parse_scheduler(data),
        graph=_parse_graph(data),
        mqtt=_parse_mqtt(data),
        rooms=rooms,
    )
    if not config.enabled_rooms:
        raise ConfigError("At least one enabled [[rooms]] entry is required")
    return config


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> AppConfig:
    """Load and validate the TOML config file at *path*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    raw_bytes = path.read_bytes()
    try:
        data = tomllib.loads(raw_bytes.decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc

    return parse_config(data)
