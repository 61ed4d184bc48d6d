"""tedge-agent log plugins.

tedge-agent asks a log plugin for the log types it offers (`list`) and for
the lines of one type in a time range (`get`). The log types are the names
of the managed containers: plain container names for `container` and
`project@service` for `container-group`.
"""
from __future__ import annotations

import time
from datetime import datetime

from docker.errors import NotFound

from .docker_ops import EngineClient
from .logging import get_logger
from .models import CONTAINER_GROUP_TYPE, CONTAINER_TYPE, LABEL_COMPOSE_PROJECT, FilterSpec
from .settings import SettingsError, parse_duration

log = get_logger(__name__)


LOG_TAIL = "100000"


class LogPluginError(Exception):
    pass


def parse_log_time(raw: str, now: float | None = None) -> datetime | float | None:
    """An ISO 8601 timestamp, or a duration (`42m`) counted back from now."""
    if not raw:
        return None
    try:
        return (time.time() if now is None else now) - parse_duration(raw)
    except SettingsError:
        pass
    try:
        return datetime.fromisoformat(raw)
    except ValueError as e:
        raise LogPluginError(f"Invalid time: {raw!r} (expected a timestamp or a duration like 42m)") from e


class ContainerLogs:
    def __init__(self, engine: EngineClient, filter_spec: FilterSpec, kind: str = CONTAINER_TYPE):
        if kind not in (CONTAINER_TYPE, CONTAINER_GROUP_TYPE):
            raise ValueError(f"Unknown log plugin type: {kind}")
        self.engine = engine
        self.filter_spec = filter_spec
        self.kind = kind

    def list(self) -> list[str]:
        return sorted({r.name for r in self.engine.list(self.filter_spec) if r.service_type == self.kind})

    def _container_id(self, name: str) -> str | None:
        if self.kind == CONTAINER_TYPE:
            return name
        project, sep, service = name.partition("@")
        if not (sep and project and service):
            raise LogPluginError(f"Invalid container-group log type: {name!r} (expected project@service)")
        records = self.engine.list(FilterSpec(labels=(f"{LABEL_COMPOSE_PROJECT}={project}",)))
        for record in records:
            if record.service_name == service:
                return record.id
        return None

    def get(self, name: str, since: str = "", until: str = "") -> str:
        start, end = parse_log_time(since), parse_log_time(until)
        container_id = self._container_id(name)
        if container_id is None:
            log.info("No container found for log type.", name=name)
            return ""
        try:
            return self.engine.logs(container_id, tail=LOG_TAIL, since=start, until=end)
        except NotFound:
            log.info("No container found for log type.", name=name)
            return ""
