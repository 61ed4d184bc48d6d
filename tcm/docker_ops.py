from __future__ import annotations

import os
import socket
import time
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from .logging import get_logger
from .models import ContainerRecord, FilterSpec

log = get_logger(__name__)


SOCKET_PATHS = (
    "/var/run/docker.sock",
    "/run/podman/podman.sock",
    "/run/user/0/podman/podman.sock",
)
CONTAINER_ENV_MARKERS = ("/.dockerenv", "/run/.containerenv")

LABEL_FORK = "io.tedge.fork"
LABEL_FORKED_NAME = "io.tedge.forked.name"

# (attempt number) -> auth_config for the pull, or None for anonymous
AuthFunc = Callable[[int], dict[str, str] | None]


class ContainerNotFound(Exception):
    pass


class PullFailure(Exception):
    pass


class WaitTimeout(Exception):
    pass


def is_inside_container(markers: Iterable[str] = CONTAINER_ENV_MARKERS) -> bool:
    return any(os.path.exists(p) for p in markers)


def find_engine_socket(host: str = "", env: Mapping[str, str] | None = None) -> str:
    """Engine address: explicit host, DOCKER_HOST, CONTAINER_HOST, then well-known sockets."""
    env = os.environ if env is None else env
    if host:
        return host
    for key in ("DOCKER_HOST", "CONTAINER_HOST"):
        if env.get(key):
            return env[key]
    for path in SOCKET_PATHS:
        if os.path.exists(path):
            return f"unix://{path}"
    return ""


def compute_stats(stats: dict[str, Any]) -> dict[str, Any]:
    """Resource usage in the shape published as `resource_usage` measurement.

    cpu and memory are percentages, netio the bytes transmitted.
    """
    cpu_stats = stats.get("cpu_stats") or {}
    precpu = stats.get("precpu_stats") or {}
    cpu_delta = (cpu_stats.get("cpu_usage") or {}).get("total_usage", 0) - (precpu.get("cpu_usage") or {}).get(
        "total_usage", 0
    )
    system_delta = cpu_stats.get("system_cpu_usage", 0) - precpu.get("system_cpu_usage", 0)
    online = cpu_stats.get("online_cpus") or len((cpu_stats.get("cpu_usage") or {}).get("percpu_usage") or []) or 1
    cpu = 0.0
    if system_delta > 0 and cpu_delta > 0:
        cpu = cpu_delta / system_delta * online * 100.0

    mem = stats.get("memory_stats") or {}
    usage = mem.get("usage", 0)
    extra = mem.get("stats") or {}
    if "total_inactive_file" in extra and extra["total_inactive_file"] < usage:
        usage -= extra["total_inactive_file"]
    elif extra.get("inactive_file", usage) < usage:
        usage -= extra["inactive_file"]
    limit = mem.get("limit", 0)
    memory = usage / limit * 100.0 if limit else 0.0

    netio = sum(n.get("tx_bytes", 0) for n in (stats.get("networks") or {}).values())

    return {
        "container": {
            "cpu": round(cpu, 2),
            "memory": round(memory, 2),
            "netio": int(round(netio)),
        }
    }


class EngineClient:
    """Thin wrapper over the container engine API (docker or podman's docker-compatible API).

    Raw engine dicts are passed around rather than docker-py model objects, so
    configs can be copied field by field when cloning a container.
    """

    def __init__(
        self,
        client: docker.DockerClient,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = 5.0,
    ):
        self.client = client
        self.api = client.api
        self.sleep = sleep
        self.clock = clock
        self.poll_interval = poll_interval

    @classmethod
    def from_env(cls, host: str = "") -> "EngineClient":
        url = find_engine_socket(host)
        client = docker.DockerClient(base_url=url) if url else docker.from_env()
        return cls(client)

    def available(self) -> bool:
        try:
            self.client.ping()
            return True
        except DockerException:
            return False

    # Listing

    def list(self, filter_spec: FilterSpec | None = None) -> list[ContainerRecord]:
        filter_spec = filter_spec or FilterSpec()
        items = self.api.containers(all=True, size=True, filters=filter_spec.server_filters() or None)
        return filter_spec.apply(ContainerRecord.from_engine(i) for i in items)

    def inspect(self, container_id: str) -> dict[str, Any]:
        return self.api.inspect_container(container_id)

    def get_self(self, hostname: str | None = None) -> dict[str, Any]:
        """Inspect data of the container this process runs in."""
        hostname = hostname or socket.gethostname()
        try:
            return self.inspect(hostname)
        except NotFound:
            pass

        env_hostname = f"HOSTNAME={hostname}"
        for item in self.api.containers(all=False):
            try:
                con = self.inspect(item["Id"])
            except NotFound:
                continue
            cid_file = (con.get("HostConfig") or {}).get("ContainerIDFile") or ""
            if cid_file:
                try:
                    with open(cid_file, encoding="utf-8") as fp:
                        if fp.read().strip() == hostname:
                            return con
                except OSError:
                    pass
            config = con.get("Config") or {}
            # fork helpers are short lived copies of the real container
            if LABEL_FORK in (config.get("Labels") or {}):
                continue
            if config.get("Hostname") == hostname or env_hostname in (config.get("Env") or []):
                return con
        raise ContainerNotFound(f"Could not find the container with hostname {hostname}")

    # Lifecycle

    def stop_remove(self, container_id: str) -> None:
        """Stop and remove a container. A container that does not exist counts as removed."""
        try:
            self.api.stop(container_id)
            self.api.remove_container(container_id, force=True)
        except NotFound:
            return
        log.info("Removed container.", container=container_id)

    def stop(self, container_id: str) -> None:
        self.api.stop(container_id)

    def start(self, container_id: str) -> None:
        self.api.start(container_id)

    def restart(self, container_id: str) -> None:
        log.info("Restarting container.", id=container_id)
        self.api.restart(container_id)

    def rename(self, container_id: str, name: str) -> None:
        self.api.rename(container_id, name)

    def disable_restart(self, container_id: str) -> None:
        try:
            self.api.update_container(container_id, restart_policy={"Name": "no"})
        except NotFound:
            log.warning("Container vanished before its restart policy could be changed.", container=container_id)

    def create_from_config(self, config: dict[str, Any], name: str | None = None) -> str:
        resp = self.api.create_container_from_config(config, name or None)
        return resp["Id"]

    def wait_for_stop(self, container_id: str, timeout: float) -> None:
        deadline = self.clock() + timeout
        while True:
            try:
                con = self.inspect(container_id)
                if not (con.get("State") or {}).get("Running"):
                    log.info("Container is not running.", container=container_id)
                    return
                log.info("Container is still running.", container=container_id)
            except NotFound:
                return
            except APIError as e:
                log.info("Could not get container status.", container=container_id, err=str(e))
            self._pause_until(deadline, f"Container {container_id} did not stop within {timeout}s")

    def wait_for_healthy(self, container_id: str, timeout: float) -> None:
        """Wait until the health check reports healthy.

        Without a health check the container must be seen running on more than
        two consecutive polls.
        """
        deadline = self.clock() + timeout
        running_count = 0
        while True:
            try:
                con = self.inspect(container_id)
            except APIError as e:
                log.info("Could not get container status.", container=container_id, err=str(e))
                con = None

            if con is not None:
                state = con.get("State") or {}
                if not (con.get("Config") or {}).get("Healthcheck"):
                    if state.get("Running") and running_count > 1:
                        return
                    running_count = running_count + 1 if state.get("Running") else 0
                    log.info("Container has no health check, using its state.", status=state.get("Status"), ok_count=running_count)
                else:
                    status = ((state.get("Health") or {}).get("Status") or "").lower()
                    if status.startswith("healthy"):
                        log.info("Container is healthy.", container=container_id)
                        return
                    log.info("Container is not healthy yet.", container=container_id, status=status)
            self._pause_until(deadline, f"Container {container_id} was not healthy within {timeout}s")

    def _pause_until(self, deadline: float, message: str) -> None:
        remaining = deadline - self.clock()
        if remaining <= 0:
            raise WaitTimeout(message)
        self.sleep(min(self.poll_interval, remaining))

    # Images

    def inspect_image(self, ref: str) -> dict[str, Any]:
        return self.api.inspect_image(ref)

    def pull_with_retries(
        self,
        ref: str,
        always_pull: bool = False,
        attempts: int = 2,
        wait: float = 5.0,
        auth: AuthFunc | None = None,
    ) -> dict[str, Any]:
        """Pull an image unless it is present, and verify it exists afterwards.

        `auth` is called with the attempt number so credential helpers can
        refresh cached credentials on a retry.
        """
        try:
            image = self.inspect_image(ref)
            if not always_pull:
                log.info("Image already exists.", ref=ref, id=image.get("Id"))
                return image
        except ImageNotFound:
            log.info("Image does not exist yet, pulling it.", ref=ref)

        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                self.sleep(wait)
            log.info("Pulling image.", ref=ref, attempt=attempt)
            try:
                auth_config = auth(attempt) if auth else None
                for chunk in self.api.pull(ref, stream=True, decode=True, auth_config=auth_config or None):
                    if "error" in chunk:
                        log.warning("Image pull reported an error.", ref=ref, err=chunk["error"])
                # pulls from private registries can "succeed" without an image
                image = self.inspect_image(ref)
                log.info("Image found after pull.", ref=ref, id=image.get("Id"))
                return image
            except DockerException as e:
                log.warning("Image pull failed.", ref=ref, attempt=attempt, err=str(e))
                last_error = e
        raise PullFailure(f"Could not pull image {ref} after {attempts} attempts: {last_error}") from last_error

    def update_required(self, container_id: str, image: str = "") -> tuple[bool, dict[str, Any]]:
        """Whether the container runs a different image than the local `image` reference."""
        current = self.inspect(container_id)
        image = image or current["Config"]["Image"]
        images = self.api.images(filters={"reference": image})
        if not images:
            log.info("Image does not exist locally, assuming update is required.", ref=image)
            return True, current
        if current.get("Image") == images[0]["Id"]:
            log.info("Container image is already up to date.", image=image, id=current.get("Image"))
            return False, current
        return True, current

    def load_image(self, path: str) -> list[str]:
        """Load an image archive and return the references it contained."""
        refs: list[str] = []
        with open(path, "rb") as fp:
            for chunk in self.api.load_image(fp):
                for line in str(chunk.get("stream", "")).splitlines():
                    if line.startswith("Loaded image: "):
                        refs.append(line[len("Loaded image: "):].strip())
        return refs

    def prune_unused_images(self) -> dict[str, Any]:
        return self.api.prune_images(filters={"dangling": False})

    def list_images(self) -> list[dict[str, Any]]:
        return self.api.images()

    def remove_image(self, ref: str) -> bool:
        """Remove an image; False when it does not exist."""
        try:
            self.api.remove_image(ref)
        except NotFound:
            log.info("Image reference not found, so nothing to remove.", ref=ref)
            return False
        log.info("Removed image.", ref=ref)
        return True

    # Misc

    def ensure_network(self, name: str) -> None:
        try:
            self.client.networks.get(name)
        except NotFound:
            self.client.networks.create(name, driver="bridge")
            log.info("Created network.", name=name)

    def stats(self, container_id: str) -> dict[str, Any]:
        return compute_stats(self.api.stats(container_id, stream=False))

    def events(self) -> Any:
        """Stream of decoded container events; call `.close()` to stop it."""
        return self.api.events(decode=True, filters={"type": "container"})

    def logs(
        self,
        container_id: str,
        tail: int | str = 100,
        since: datetime | float | None = None,
        until: datetime | float | None = None,
    ) -> str:
        kwargs: dict[str, Any] = {}
        if since is not None:
            kwargs["since"] = since
        if until is not None:
            kwargs["until"] = until
        raw = self.api.logs(container_id, stdout=True, stderr=True, tail=tail, **kwargs)
        return raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)
