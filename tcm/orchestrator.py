"""Live replacement of a running container by a copy using a new image.

update() walks: resolve target -> pull image -> (check only: decide) ->
fork or clone. Cloning stops the original, renames it to a backup name,
starts the copy under the original name and waits for it to become healthy.
A container cannot replace itself (stopping it would kill the process doing
the work), so in that case a short-lived helper container is forked which
runs the clone from outside.

When the copy fails to start or does not become healthy it is removed and
the original is renamed back and started again before the error is raised.
"""
from __future__ import annotations

import enum
import shutil
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from docker.errors import APIError

from .db import Journal
from .docker_ops import (
    LABEL_FORK,
    LABEL_FORKED_NAME,
    AuthFunc,
    ContainerNotFound,
    EngineClient,
    WaitTimeout,
    is_inside_container,
)
from .logging import get_logger
from .models import CloneSpec

log = get_logger(__name__)


FORK_HEALTHY_TIMEOUT_S = 30.0
OCI_LABEL_PREFIX = "org.opencontainers."

_CONFIG_KEYS = (
    "User",
    "Cmd",
    "Entrypoint",
    "StopSignal",
    "Volumes",
    "Tty",
    "ExposedPorts",
    "Domainname",
)
_HOST_CONFIG_KEYS = (
    "Binds",
    "Annotations",
    "CapAdd",
    "CapDrop",
    "Dns",
    "DnsOptions",
    "DnsSearch",
    "Links",
    "Privileged",
    "Mounts",
    "Tmpfs",
    "PortBindings",
    "PublishAllPorts",
    "OomScoreAdj",
    "ReadonlyRootfs",
    "VolumeDriver",
    "VolumesFrom",
    "Init",
    "LogConfig",
    "StorageOpt",
    "ReadonlyPaths",
    "SecurityOpt",
    "GroupAdd",
    "Runtime",
    "ContainerIDFile",
)


class CloneError(Exception):
    pass


class CloneTimeout(CloneError):
    pass


class ForkError(Exception):
    pass


class UpdateOutcome(enum.Enum):
    UPDATED = "updated"
    UPDATE_NEEDED = "update-needed"
    NO_UPDATE_NEEDED = "no-update-needed"
    FORKED = "forked"


@dataclass(frozen=True)
class UpdateRequest:
    container: str = ""  # id or name; empty = the container this process runs in
    image: str = ""  # empty = keep the current image
    check_only: bool = False
    force: bool = False
    fork: bool = False
    clone: CloneSpec = field(default_factory=CloneSpec)


def clone_container_config(ref: dict[str, Any], spec: CloneSpec) -> dict[str, Any]:
    config = {k: ref[k] for k in _CONFIG_KEYS if ref.get(k) is not None}
    config["Image"] = spec.image or ref.get("Image", "")
    if spec.cmd:
        config["Cmd"] = list(spec.cmd)
    if spec.entrypoint:
        config["Entrypoint"] = list(spec.entrypoint)

    # OCI labels come with the image itself
    labels = {k: v for k, v in (ref.get("Labels") or {}).items() if not k.startswith(OCI_LABEL_PREFIX)}
    labels.update(spec.labels)
    labels.update(spec.fork_labels)
    config["Labels"] = labels
    config["Env"] = [*(ref.get("Env") or []), *spec.env]
    return config


def clone_host_config(ref: dict[str, Any], spec: CloneSpec, restart_policy: str = "always") -> dict[str, Any]:
    host = {k: ref[k] for k in _HOST_CONFIG_KEYS if ref.get(k) is not None}
    host["AutoRemove"] = spec.auto_remove
    host["RestartPolicy"] = {"Name": restart_policy}
    host["ExtraHosts"] = [*(ref.get("ExtraHosts") or []), *spec.extra_hosts]
    host["NetworkMode"] = "none" if spec.skip_network else ref.get("NetworkMode", "")
    if spec.ignore_port_conflicts:
        host["PortBindings"] = {}
        host["PublishAllPorts"] = False
    return host


def clone_network_config(network_settings: dict[str, Any] | None) -> dict[str, Any]:
    """Only the network ids are copied; full endpoint settings differ between engine versions."""
    endpoints = {}
    for name, value in ((network_settings or {}).get("Networks") or {}).items():
        if value and value.get("NetworkID"):
            endpoints[name] = {"NetworkID": value["NetworkID"]}
    return {"EndpointsConfig": endpoints}


def build_create_config(info: dict[str, Any], spec: CloneSpec, restart_policy: str = "always") -> dict[str, Any]:
    """Create-container body for a copy of the inspected container `info`."""
    config = clone_container_config(info.get("Config") or {}, spec)
    config["HostConfig"] = clone_host_config(info.get("HostConfig") or {}, spec, restart_policy)
    if not spec.skip_network:
        config["NetworkingConfig"] = clone_network_config(info.get("NetworkSettings"))
    return config


def container_name(info: dict[str, Any]) -> str:
    return (info.get("Name") or "").lstrip("/")


def fork_command(container_id: str, image: str, spec: CloneSpec, sudo: bool = False) -> list[str]:
    """Command the helper container runs to replace `container_id` from the outside."""
    cmd = ["sudo"] if sudo else []
    cmd += [
        "tedge-container",
        "tools",
        "container-clone",
        "--container",
        container_id,
        "--image",
        image,
        "--duration",
        f"{spec.healthy_after:g}s",
    ]
    if spec.wait_for_exit:
        cmd += ["--wait-for-exit", "--stop-timeout", f"{spec.stop_timeout:g}s"]
    elif spec.stop_after > 0:
        cmd += ["--stop-after", f"{spec.stop_after:g}s"]
    if spec.auto_remove:
        cmd.append("--rm")
    for host in spec.extra_hosts:
        cmd += ["--add-host", host]
    for env in spec.env:
        cmd += ["--env", env]
    for key, value in spec.labels.items():
        cmd += ["--label", f"{key}={value}"]
    if spec.ignore_port_conflicts:
        cmd.append("--ignore-ports")
    if spec.skip_network:
        cmd.append("--skip-network")
    return cmd


class Orchestrator:
    def __init__(
        self,
        engine: EngineClient,
        always_pull: bool = False,
        auth_factory: Callable[[str], AuthFunc] | None = None,
        journal: Journal | None = None,
        inside_container: Callable[[], bool] = is_inside_container,
        has_sudo: Callable[[], bool] = lambda: shutil.which("sudo") is not None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        pull_wait: float = 5.0,
    ):
        self.engine = engine
        self.always_pull = always_pull
        self.auth_factory = auth_factory
        self.journal = journal or Journal("")
        self.inside_container = inside_container
        self.has_sudo = has_sudo
        self.clock = clock
        self.sleep = sleep
        self.pull_wait = pull_wait

    def _self_info(self) -> dict[str, Any] | None:
        if not self.inside_container():
            return None
        try:
            return self.engine.get_self()
        except ContainerNotFound:
            return None

    def update(self, req: UpdateRequest) -> UpdateOutcome:
        current = self._self_info()
        if req.container:
            target = self.engine.inspect(req.container)
        elif current is not None:
            log.info("No container given, updating the current container.", id=current["Id"])
            target = current
        else:
            raise ContainerNotFound("No container given and not running inside a container")

        target_id = target["Id"]
        name = container_name(target)
        image = req.image or (target.get("Config") or {}).get("Image", "")

        self.pull(image)

        if req.check_only:
            if req.force:
                log.info("Forcing an update.", container=name)
                return UpdateOutcome.UPDATE_NEEDED
            needed, _ = self.engine.update_required(target_id, image)
            return UpdateOutcome.UPDATE_NEEDED if needed else UpdateOutcome.NO_UPDATE_NEEDED

        spec = replace(req.clone, image=image)
        is_self = current is not None and current["Id"] == target_id
        if req.fork or is_self:
            self.fork(current, target_id, name, spec)
            return UpdateOutcome.FORKED

        self.clone(target_id, spec)
        return UpdateOutcome.UPDATED

    def pull(self, image: str) -> dict[str, Any]:
        auth = self.auth_factory(image) if self.auth_factory else None
        info = self.engine.pull_with_retries(image, self.always_pull, attempts=2, wait=self.pull_wait, auth=auth)
        self.journal.log_event("INFO", f"Image available: {image}")
        return info

    def fork(self, current: dict[str, Any] | None, target_id: str, target_name: str, spec: CloneSpec) -> str:
        """Start a helper container that replaces `target_id`; returns the helper id.

        The helper is a copy of the container this process runs in (it ships
        the CLI and has access to the engine socket) with a different command.
        The target itself is never stopped or removed here.
        """
        if current is None:
            raise ForkError("Can't fork from outside of a container")

        helper = CloneSpec(
            image=(current.get("Config") or {}).get("Image", ""),
            entrypoint=tuple(fork_command(target_id, spec.image, spec, sudo=self.has_sudo())),
            cmd=(),
            fork_labels={LABEL_FORK: "1", LABEL_FORKED_NAME: target_name},
            auto_remove=True,
            ignore_port_conflicts=True,
        )
        config = build_create_config(current, helper, restart_policy="no")
        # an empty Cmd would be appended to the entrypoint otherwise
        config["Cmd"] = []

        if spec.fork_name:
            self.engine.stop_remove(spec.fork_name)

        log.info("Forking container.", target=target_name, command=" ".join(config["Entrypoint"]))
        helper_id = self.engine.create_from_config(config, spec.fork_name or None)
        self.engine.start(helper_id)
        self.engine.wait_for_healthy(helper_id, FORK_HEALTHY_TIMEOUT_S)
        self.journal.log_event("INFO", f"Started update helper {helper_id[:12]}", container=target_name)
        return helper_id

    def clone(self, container_id: str, spec: CloneSpec) -> str:
        """Replace `container_id` by a copy running `spec.image`; returns the new container id."""
        prev = self.engine.inspect(container_id)
        prev_id = prev["Id"]
        name = container_name(prev)
        backup = f"{name}-bak-{int(self.clock())}"

        log.info("Removing previous backup container if it exists.", name=backup)
        self.engine.stop_remove(backup)

        if spec.wait_for_exit:
            log.info("Waiting for previous container to stop.", id=prev_id, name=name)
            self.engine.disable_restart(prev_id)
            try:
                self.engine.wait_for_stop(prev_id, spec.stop_timeout)
            except WaitTimeout as e:
                raise CloneTimeout(str(e)) from e
        else:
            if spec.stop_after > 0:
                log.info("Waiting before stopping container.", id=prev_id, seconds=spec.stop_after)
                self.sleep(spec.stop_after)
            log.info("Stopping previous container.", id=prev_id, name=name)
            self.engine.stop(prev_id)

        log.info("Renaming container.", id=prev_id, old=name, new=backup)
        self.engine.rename(prev_id, backup)

        config = build_create_config(prev, spec)
        try:
            new_id = self.engine.create_from_config(config, name)
        except APIError as e:
            self._restore(prev_id, name)
            self.journal.log_event("ERROR", f"Update failed, previous container restored: {e}", container=name)
            raise CloneError(f"Could not create new container {name}: {e}") from e
        log.info("Created new container.", id=new_id, name=name, image=config["Image"])
        self.journal.log_event("INFO", f"Update started: {config['Image']}", container=name)

        try:
            self.engine.start(new_id)
            self.engine.wait_for_healthy(new_id, spec.healthy_after)
        except (APIError, WaitTimeout) as e:
            self._log_tail(new_id)
            self._restore(prev_id, name, new_id)
            self.journal.log_event("ERROR", f"Update failed, previous container restored: {e}", container=name)
            if isinstance(e, WaitTimeout):
                raise CloneTimeout(f"New container {name} did not become healthy: {e}") from e
            raise CloneError(f"New container {name} failed to start: {e}") from e

        log.info("Removing previous container.", id=prev_id, name=backup)
        try:
            self.engine.stop_remove(prev_id)
        except APIError as e:
            log.warning("Failed to remove previous container.", id=prev_id, err=str(e))

        self.journal.log_event("INFO", f"Update finished: {config['Image']}", container=name)
        log.info("Successfully replaced container.", id=new_id, name=name, image=config["Image"])
        return new_id

    def _restore(self, prev_id: str, name: str, new_id: str | None = None) -> None:
        """Put the original container back under its name and start it again."""
        if new_id:
            log.info("Removing failed container.", id=new_id, name=name)
            try:
                self.engine.stop_remove(new_id)
            except APIError as e:
                log.warning("Could not remove the new container, restoring the previous one anyway.", id=new_id, err=str(e))
        log.info("Restoring previous container.", id=prev_id, name=name)
        self.engine.rename(prev_id, name)
        self.engine.start(prev_id)

    def _log_tail(self, container_id: str) -> None:
        try:
            log.warning("Logs of the new container.", id=container_id, logs=self.engine.logs(container_id))
        except APIError as e:
            log.warning("Could not get logs from new container.", id=container_id, err=str(e))
