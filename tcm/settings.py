from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field, fields
from typing import Any, Mapping

from .logging import LOG_FORMATS
from .models import FilterSpec


ENV_PREFIX = "CONTAINER_"
DEFAULT_CONFIG_FILES = (
    "/etc/tedge-container-plugin/config.toml",
    "~/.tedge-container-plugin.toml",
)
MIN_METRICS_INTERVAL_S = 60.0

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


class SettingsError(Exception):
    pass


def parse_duration(raw: Any) -> float:
    """Parse `300`, `300s`, `5m`, `1h` or `500ms` into seconds."""
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return float(raw)
    m = _DURATION_RE.match(str(raw))
    if not m:
        raise SettingsError(f"Invalid duration: {raw!r}")
    return float(m.group(1)) * _DURATION_UNITS[m.group(2)]


def _as_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in {"1", "true", "yes", "y", "on"}


def _as_int(raw: Any, default: int) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _as_list(raw: Any) -> tuple[str, ...]:
    if isinstance(raw, (list, tuple)):
        return tuple(str(x) for x in raw)
    # env values: comma or whitespace separated
    return tuple(x for x in re.split(r"[,\s]+", str(raw)) if x)


def _opt(key: str, default: Any, kind: str = "str") -> Any:
    return field(default=default, metadata={"key": key, "kind": kind})


def _flatten(data: Mapping[str, Any], prefix: str = "") -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in data.items():
        name = f"{prefix}{k}"
        if isinstance(v, Mapping):
            out.update(_flatten(v, prefix=f"{name}."))
        else:
            out[name] = v
    return out


def env_name(key: str) -> str:
    return ENV_PREFIX + key.replace(".", "_").replace("-", "_").upper()


@dataclass(frozen=True)
class Settings:
    # Core
    service_name: str = _opt("service_name", "tedge-container-plugin")
    topic_root: str = _opt("topic_root", "te")
    topic_id: str = _opt("topic_id", "device/main//")
    device_id: str = _opt("device_id", "")
    data_dir: tuple[str, ...] = _opt(
        "data_dir", ("/data/tedge-container-plugin", "/var/tedge-container-plugin"), "list"
    )
    log_level: str = _opt("log_level", "info")
    log_format: str = _opt("log_format", "text")

    # Container engine
    container_host: str = _opt("container.host", "")
    network: str = _opt("container.network", "tedge")
    always_pull: bool = _opt("container.alwaysPull", False, "bool")
    prune_images: bool = _opt("container.pruneImages", True, "bool")
    image_plugin_enabled: bool = _opt("container_image.enabled", False, "bool")
    credentials_path: str = _opt(
        "registry.credentials_path", "/data/tedge-container-plugin/credentials.toml"
    )

    # Which containers are reported
    include_names: tuple[str, ...] = _opt("filter.include.names", (), "list")
    include_labels: tuple[str, ...] = _opt("filter.include.labels", (), "list")
    include_types: tuple[str, ...] = _opt("filter.include.types", (), "list")
    exclude_names: tuple[str, ...] = _opt("filter.exclude.names", (), "list")
    exclude_labels: tuple[str, ...] = _opt("filter.exclude.labels", ("tedge.ignore",), "list")

    # Reconciliation
    metrics_enabled: bool = _opt("metrics.enabled", True, "bool")
    metrics_interval: float = _opt("metrics.interval", 300.0, "duration")
    events_enabled: bool = _opt("events.enabled", True, "bool")
    delete_from_cloud: bool = _opt("delete_from_cloud.enabled", True, "bool")
    delete_orphans: bool = _opt("delete_from_cloud.orphans", True, "bool")
    delete_legacy: bool = _opt("delete_legacy", True, "bool")

    # thin-edge.io endpoints (port 0 = pick from certificate presence)
    http_host: str = _opt("client.http.host", "127.0.0.1")
    http_port: int = _opt("client.http.port", 8000, "int")
    mqtt_host: str = _opt("client.mqtt.host", "127.0.0.1")
    mqtt_port: int = _opt("client.mqtt.port", 0, "int")
    c8y_host: str = _opt("client.c8y.host", "127.0.0.1")
    c8y_port: int = _opt("client.c8y.port", 8001, "int")
    cert_file: str = _opt("client.cert_file", "")
    key_file: str = _opt("client.key_file", "")
    ca_file: str = _opt("client.ca_file", "")

    # Local activity journal and control API
    journal_path: str = _opt("journal.path", "")
    api_host: str = _opt("api.host", "127.0.0.1")
    api_port: int = _opt("api.port", 0, "int")

    def __post_init__(self) -> None:
        if self.log_format not in LOG_FORMATS:
            raise SettingsError(f"Invalid log_format {self.log_format!r}, expected one of {list(LOG_FORMATS)}")
        if self.metrics_interval < MIN_METRICS_INTERVAL_S:
            object.__setattr__(self, "metrics_interval", MIN_METRICS_INTERVAL_S)

    @classmethod
    def load(cls, path: str | None = None, env: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from defaults, a TOML file and CONTAINER_* environment variables.

        Later sources win. An explicit `path` that does not exist is an error;
        the default locations are optional.
        """
        env = os.environ if env is None else env
        values: dict[str, Any] = {}

        config_file = path
        if config_file is None:
            for candidate in DEFAULT_CONFIG_FILES:
                candidate = os.path.expanduser(candidate)
                if os.path.isfile(candidate):
                    config_file = candidate
                    break
        elif not os.path.isfile(config_file):
            raise SettingsError(f"Config file does not exist: {config_file}")

        if config_file:
            try:
                with open(config_file, "rb") as fp:
                    values.update(_flatten(tomllib.load(fp)))
            except tomllib.TOMLDecodeError as e:
                raise SettingsError(f"Invalid config file {config_file}: {e}") from e

        kwargs: dict[str, Any] = {}
        for f in fields(cls):
            key = f.metadata["key"]
            raw = env.get(env_name(key), values.get(key))
            if raw is None:
                continue
            kind = f.metadata["kind"]
            if kind == "bool":
                kwargs[f.name] = _as_bool(raw)
            elif kind == "int":
                kwargs[f.name] = _as_int(raw, f.default)
            elif kind == "duration":
                kwargs[f.name] = parse_duration(raw)
            elif kind == "list":
                kwargs[f.name] = _as_list(raw)
            else:
                kwargs[f.name] = str(raw)
        return cls(**kwargs)

    def filter_spec(self) -> FilterSpec:
        return FilterSpec(
            names=self.include_names,
            labels=self.include_labels,
            types=self.include_types,
            exclude_names=self.exclude_names,
            exclude_with_label=self.exclude_labels,
        )

    def use_certs(self) -> bool:
        return bool(self.cert_file and self.key_file) and (
            os.path.isfile(self.cert_file) and os.path.isfile(self.key_file)
        )

    def resolved_mqtt_port(self) -> int:
        if self.mqtt_port:
            return self.mqtt_port
        return 8883 if self.use_certs() else 1883

    def persistent_dir(self) -> str:
        """First data dir that exists (or can be created under an existing parent) and is writable."""
        for d in self.data_dir:
            d = os.path.expanduser(d)
            parent = os.path.dirname(d.rstrip("/"))
            if not os.path.isdir(d) and not (parent and os.path.isdir(parent)):
                continue
            try:
                os.makedirs(d, exist_ok=True)
            except OSError:
                continue
            if os.access(d, os.W_OK):
                return d
        raise SettingsError(f"No writable data directory found in {list(self.data_dir)}")

    def journal_location(self) -> str:
        """Journal file path, or "" when no persistent location is available."""
        if self.journal_path:
            return self.journal_path
        try:
            return os.path.join(self.persistent_dir(), "tcm.db")
        except SettingsError:
            return ""
