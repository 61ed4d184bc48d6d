from __future__ import annotations

import re
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Iterable

from .logging import get_logger

log = get_logger(__name__)


CONTAINER_TYPE = "container"
CONTAINER_GROUP_TYPE = "container-group"
MANAGED_TYPES = (CONTAINER_TYPE, CONTAINER_GROUP_TYPE)

LABEL_COMPOSE_PROJECT = "com.docker.compose.project"
LABEL_COMPOSE_SERVICE = "com.docker.compose.service"
LABEL_COMPOSE_WORKING_DIR = "com.docker.compose.project.working_dir"

STATUS_UP = "up"
STATUS_DOWN = "down"


def to_tedge_status(state: str) -> str:
    return STATUS_UP if state in {"up", "running"} else STATUS_DOWN


def format_ports(ports: Iterable[dict[str, Any]] | None) -> str:
    out: list[str] = []
    for p in ports or []:
        private = p.get("PrivatePort")
        proto = p.get("Type", "tcp")
        public = p.get("PublicPort") or 0
        if not public:
            out.append(f"{private}/{proto}")
        elif not p.get("IP"):
            out.append(f"{public}:{private}/{proto}")
        else:
            out.append(f"{p['IP']}:{public}:{private}/{proto}")
    return ", ".join(out)


def human_size(size: float) -> str:
    """Decimal size with 3 significant digits, e.g. 1.23MB."""
    units = ["B", "kB", "MB", "GB", "TB", "PB"]
    value = float(size)
    i = 0
    while value >= 1000.0 and i < len(units) - 1:
        value /= 1000.0
        i += 1
    return f"{value:.3g}{units[i]}"


def normalize_image_ref(image: str) -> str:
    """Expand short docker.io references, e.g. docker.io/nginx -> docker.io/library/nginx."""
    if not image.startswith("docker.io/"):
        return image
    if image.startswith("docker.io/library/") or image.count("/") >= 2:
        return image
    return "docker.io/library/" + image[len("docker.io/"):]


def short_image_name(image: str) -> str:
    """Last path segment of an image reference (registry/org stripped)."""
    i = image.rfind("/")
    if i > -1 and i < len(image) - 1:
        return image[i + 1:]
    return image


@dataclass(frozen=True)
class ContainerRecord:
    """Snapshot of one container as reported to the cloud.

    Built fresh from every engine listing, never mutated.
    """

    id: str
    name: str
    container_name: str
    service_type: str
    status: str
    image: str = ""
    state: str = ""
    engine_status: str = ""
    created_at: str = ""
    ports: str = ""
    command: str = ""
    network_mode: str = ""
    network_ids: tuple[str, ...] = ()
    network_names: tuple[str, ...] = ()
    filesystem: str = ""
    project_name: str = ""
    service_name: str = ""
    labels: dict[str, str] = field(default_factory=dict, compare=False)
    time: float = field(default_factory=time.time, compare=False)

    @classmethod
    def from_engine(cls, item: dict[str, Any]) -> "ContainerRecord":
        """Build a record from an entry of the engine's container list API."""
        labels = item.get("Labels") or {}
        names = item.get("Names") or [""]
        container_name = names[0].lstrip("/")
        project = labels.get(LABEL_COMPOSE_PROJECT, "")
        service = labels.get(LABEL_COMPOSE_SERVICE, "")

        networks = (item.get("NetworkSettings") or {}).get("Networks") or {}
        network_ids = tuple(v.get("NetworkID", "") for v in networks.values() if v)

        size_rw = item.get("SizeRw") or 0
        size_root = item.get("SizeRootFs") or 0
        filesystem = human_size(size_rw)
        if size_root > 0:
            filesystem = f"{filesystem} (virtual {human_size(size_root)})"

        created = item.get("Created")
        created_at = (
            datetime.fromtimestamp(created, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ") if created else ""
        )

        state = item.get("State") or ""
        return cls(
            id=item.get("Id", ""),
            name=f"{project}@{service}" if project else container_name,
            container_name=container_name,
            service_type=CONTAINER_GROUP_TYPE if LABEL_COMPOSE_PROJECT in labels else CONTAINER_TYPE,
            status=to_tedge_status(state),
            image=item.get("Image", ""),
            state=state,
            engine_status=item.get("Status", ""),
            created_at=created_at,
            ports=format_ports(item.get("Ports")),
            command=item.get("Command", ""),
            network_mode=(item.get("HostConfig") or {}).get("NetworkMode", ""),
            network_ids=network_ids,
            network_names=tuple(sorted(networks)),
            filesystem=filesystem,
            project_name=project,
            service_name=service,
            labels=dict(labels),
        )

    def health_payload(self) -> dict[str, Any]:
        return {"status": self.status, "time": int(self.time)}

    def twin_payload(self) -> dict[str, Any]:
        """The `container` twin fragment; empty values are omitted."""
        payload = {
            "containerId": self.id,
            "state": self.state,
            "containerStatus": self.engine_status,
            "createdAt": self.created_at,
            "image": self.image,
            "ports": self.ports,
            "networks": ", ".join(self.network_names),
            "filesystem": self.filesystem,
            "command": self.command,
            "networkMode": self.network_mode,
            "serviceName": self.service_name,
            "projectName": self.project_name,
        }
        return {k: v for k, v in payload.items() if v}


@dataclass(frozen=True)
class FilterSpec:
    """Which containers a listing covers.

    `names`, `ids` and `labels` are passed to the engine (OR within a field,
    AND across fields). `types`, `exclude_names` and `exclude_with_label` are
    applied to the returned records.
    """

    names: tuple[str, ...] = ()
    labels: tuple[str, ...] = ()
    ids: tuple[str, ...] = ()
    types: tuple[str, ...] = ()
    exclude_names: tuple[str, ...] = ()
    exclude_with_label: tuple[str, ...] = ()

    def is_empty(self) -> bool:
        # Only the server-side selection decides whether a listing is complete.
        return not (self.names or self.labels or self.ids)

    def narrowed_to(self, container_id: str) -> "FilterSpec":
        return replace(self, ids=(container_id,))

    def server_filters(self) -> dict[str, list[str]]:
        filters: dict[str, list[str]] = {}
        if self.names:
            filters["name"] = list(self.names)
        if self.ids:
            filters["id"] = list(self.ids)
        if self.labels:
            filters["label"] = list(self.labels)
        return filters

    def _exclude_patterns(self) -> list[re.Pattern[str]]:
        patterns = []
        for raw in self.exclude_names:
            try:
                patterns.append(re.compile(raw))
            except re.error as e:
                log.warning("Invalid exclude name pattern.", pattern=raw, err=str(e))
        return patterns

    def apply(self, records: Iterable[ContainerRecord]) -> list[ContainerRecord]:
        patterns = self._exclude_patterns()
        out: list[ContainerRecord] = []
        for r in records:
            if self.types and r.service_type not in self.types:
                continue
            if any(p.search(r.container_name) or p.search(r.name) for p in patterns):
                continue
            if any(label in r.labels for label in self.exclude_with_label):
                continue
            out.append(r)
        return out


@dataclass(frozen=True)
class CloneSpec:
    """How a replacement container is derived from an existing one."""

    image: str = ""
    env: tuple[str, ...] = ()
    extra_hosts: tuple[str, ...] = ()
    entrypoint: tuple[str, ...] | None = None
    cmd: tuple[str, ...] | None = None
    labels: dict[str, str] = field(default_factory=dict)
    fork_labels: dict[str, str] = field(default_factory=dict)
    auto_remove: bool = False
    healthy_after: float = 10.0
    stop_timeout: float = 120.0
    stop_after: float = 0.0
    wait_for_exit: bool = False
    ignore_port_conflicts: bool = False
    skip_network: bool = False
    fork_name: str = ""
