from __future__ import annotations

import enum
import queue
import re
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable

from .db import Journal
from .docker_ops import EngineClient
from .logging import get_logger
from .models import MANAGED_TYPES, ContainerRecord, FilterSpec
from .registry import LEGACY_SERVICE, TedgeClient, Target

log = get_logger(__name__)


METRICS_WORKERS = 5

# engine action -> wording used in published events
EVENT_TEXT = {
    "create": "created",
    "start": "started",
    "stop": "stopped",
    "destroy": "destroyed",
    "remove": "removed",
    "die": "died",
    "pause": "paused",
    "unpause": "unpaused",
    "exec_die": "process died",
    "health_status: healthy": "healthy",
    "health_status: unhealthy": "unhealthy",
}
# refresh only the container the event is about
NARROW_UPDATE_ACTIONS = {
    "exec_die",
    "create",
    "start",
    "stop",
    "pause",
    "unpause",
    "health_status: healthy",
    "health_status: unhealthy",
}
# the container is gone, a full pass is needed to deregister it
FULL_UPDATE_ACTIONS = {"destroy", "remove", "die"}


class Action(enum.Enum):
    UPDATE_ALL = "update-all"
    UPDATE_METRICS = "update-metrics"


@dataclass
class ActionRequest:
    action: Action
    filter: FilterSpec
    result: Future | None = None


@dataclass
class ReconcileResult:
    registered: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    deregistered: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class PartialMetricsFailure(Exception):
    def __init__(self, errors: list[Exception]):
        super().__init__(f"{len(errors)} metric update(s) failed: " + "; ".join(str(e) for e in errors))
        self.errors = errors


def _topic_safe(action: str) -> str:
    return re.sub(r"[^A-Za-z0-9_-]+", "_", action)


class Reconciler:
    """Keeps the thin-edge.io entity store in line with the containers on this host.

    All work happens on one worker thread that drains a request queue in
    order, so two reconciliation passes never interleave. Event streams,
    timers and MQTT callbacks only enqueue requests.
    """

    def __init__(
        self,
        engine: EngineClient,
        registry: TedgeClient,
        device: Target,
        service_name: str,
        delete_from_cloud: bool = True,
        delete_orphans: bool = False,
        events_enabled: bool = True,
        journal: Journal | None = None,
        settle_delay: float = 0.5,
        debounce: float = 0.5,
        backoff: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        timer_factory: Callable[..., Any] = threading.Timer,
    ):
        self.engine = engine
        self.registry = registry
        self.device = device
        self.service_name = service_name
        self.service_target = device.service(service_name)
        self.delete_from_cloud = delete_from_cloud
        self.delete_orphans = delete_orphans
        self.events_enabled = events_enabled
        self.journal = journal or Journal("")
        self.settle_delay = settle_delay
        self.debounce = debounce
        self.backoff = backoff
        self.sleep = sleep
        self.timer_factory = timer_factory

        self._requests: queue.Queue[ActionRequest | None] = queue.Queue()
        self._thr: threading.Thread | None = None

    # Worker

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._thr = threading.Thread(target=self._loop, name="reconciler", daemon=True)
        self._thr.start()

    def stop(self, timeout: float | None = 10.0) -> None:
        if self._thr is None:
            return
        self._requests.put(None)
        self._thr.join(timeout)
        self._thr = None

    def _loop(self) -> None:
        log.info("Reconciler started")
        while True:
            req = self._requests.get()
            if req is None:
                log.info("Reconciler stopped")
                return
            try:
                if req.action is Action.UPDATE_ALL:
                    result: Any = self.do_update(req.filter)
                else:
                    result = self.publish_metrics(self.engine.list(req.filter))
            except Exception as e:
                log.warning("Request failed.", action=req.action.value, err=f"{type(e).__name__}: {e}")
                if req.result is not None:
                    req.result.set_exception(e)
                continue
            if req.result is not None:
                req.result.set_result(result)

    def _submit(self, action: Action, filter_spec: FilterSpec) -> Future:
        fut: Future = Future()
        self._requests.put(ActionRequest(action, filter_spec, fut))
        return fut

    def update(self, filter_spec: FilterSpec | None = None) -> ReconcileResult:
        """Run a reconciliation pass on the worker and wait for its result."""
        return self._submit(Action.UPDATE_ALL, filter_spec or FilterSpec()).result()

    def update_metrics(self, filter_spec: FilterSpec | None = None) -> int:
        return self._submit(Action.UPDATE_METRICS, filter_spec or FilterSpec()).result()

    def request_update(self, filter_spec: FilterSpec | None = None) -> None:
        """Queue a reconciliation pass without waiting for it."""
        self._requests.put(ActionRequest(Action.UPDATE_ALL, filter_spec or FilterSpec()))

    def on_health_check(self, name: str, filter_spec: FilterSpec | None = None) -> None:
        filter_spec = filter_spec or FilterSpec()
        if name != self.service_name:
            filter_spec = replace(filter_spec, names=(f"^{name}$",))
        self.request_update(filter_spec)

    # Reconciliation

    def do_update(self, filter_spec: FilterSpec) -> ReconcileResult:
        result = ReconcileResult()
        entities = self.registry.list_entities()
        stale = {tid for tid, e in entities.items() if e.get("type") in MANAGED_TYPES}
        log.info("Found entities.", total=len(entities), managed=len(stale))

        records = self.engine.list(filter_spec)
        log.info("Found containers.", total=len(records))

        for item in records:
            target = self.device.service(item.name)
            stale.discard(target.topic_id)
            if target.topic_id in entities:
                continue
            try:
                self.registry.register(target, item.name, item.service_type)
            except Exception as e:
                self._record_error(result, "Failed to register container.", target, e)
                continue
            entities[target.topic_id] = {"@topic-id": target.topic_id, "name": item.name, "type": item.service_type}
            result.registered.append(item.name)

        for item in records:
            target = self.device.service(item.name)
            try:
                self.registry.publish_health(target, item.health_payload())
                self.registry.update_twin(target, "container", item.twin_payload())
            except Exception as e:
                self._record_error(result, "Failed to update container status.", target, e)
                continue
            result.updated.append(item.name)

        if filter_spec.is_empty():
            self._remove_stale(sorted(stale), entities, result)
            if self.delete_from_cloud and self.delete_orphans:
                self._remove_orphans(entities, result)

        # log plugins list containers, so tedge-agent has to refresh its log types
        try:
            self.registry.sync_log_types()
        except Exception as e:
            log.warning("Failed to ask tedge-agent to update the log types.", err=str(e))
        return result

    def remove_legacy_service(self) -> None:
        """Remove the service entity left behind by the former tedge-container-monitor."""
        target = self.device.service(LEGACY_SERVICE)
        log.info("Removing legacy service.", topic=target.topic())
        try:
            self.registry.deregister(target)
        except Exception as e:
            log.warning("Failed to remove legacy service registration.", topic_id=target.topic_id, err=str(e))

        if not (self.delete_from_cloud and target.cloud_identity):
            return
        self.sleep(self.settle_delay)
        try:
            self.registry.delete_remote_object(target)
        except Exception as e:
            log.warning("Failed to delete legacy service from the cloud.", external_id=target.external_id, err=str(e))

    def _record_error(self, result: ReconcileResult, message: str, target: Target, err: Exception) -> None:
        log.error(message, topic=target.topic(), err=str(err))
        result.errors.append(f"{target.topic_id}: {err}")

    def _remove_stale(self, stale: Iterable[str], entities: dict[str, Any], result: ReconcileResult) -> None:
        removed: list[Target] = []
        for topic_id in stale:
            target = Target(root=self.device.root, topic_id=topic_id, cloud_identity=self.device.cloud_identity)
            log.info("Removing stale service.", topic_id=topic_id)
            try:
                self.registry.deregister(target)
            except Exception as e:
                self._record_error(result, "Failed to deregister entity.", target, e)
                continue
            entities.pop(topic_id, None)
            removed.append(target)
            result.deregistered.append(topic_id)
            self.journal.log_event("INFO", f"Removed stale service {topic_id}")

        if not removed or not self.delete_from_cloud:
            return
        # give the mapper time to process the deregistration first
        self.sleep(self.settle_delay)
        for target in removed:
            if not target.cloud_identity:
                continue
            try:
                self.registry.delete_remote_object(target)
            except Exception as e:
                self._record_error(result, "Failed to delete cloud object.", target, e)

    def _remove_orphans(self, entities: dict[str, Any], result: ReconcileResult) -> None:
        try:
            services = self.registry.list_cloud_services(self.device, MANAGED_TYPES)
        except Exception as e:
            self._record_error(result, "Could not list cloud services.", self.device, e)
            return
        for mo in services:
            target = self.device.service(mo.get("name", ""))
            if target.topic_id in entities:
                continue
            log.info("Deleting orphaned cloud service.", name=mo.get("name"), id=mo.get("id"))
            try:
                self.registry.delete_managed_object(str(mo["id"]))
            except Exception as e:
                self._record_error(result, "Could not delete orphaned cloud service.", target, e)

    # Metrics

    def _publish_metric(self, item: ContainerRecord) -> bool:
        target = self.device.service(item.name)
        if not self.registry.entity_exists(target):
            log.info("Entity is not registered yet, skipping its metrics.", topic_id=target.topic_id)
            return False
        self.registry.publish(target.topic("m", "resource_usage"), self.engine.stats(item.id))
        return True

    def publish_metrics(self, records: list[ContainerRecord]) -> int:
        """Publish resource usage of every record; failures are raised together at the end."""
        errors: list[Exception] = []
        published = 0
        with ThreadPoolExecutor(max_workers=METRICS_WORKERS) as pool:
            for fut in [pool.submit(self._publish_metric, r) for r in records]:
                try:
                    published += int(fut.result())
                except Exception as e:
                    log.warning("Failed to update metrics.", err=str(e))
                    errors.append(e)
        if errors:
            raise PartialMetricsFailure(errors)
        return published

    def run_metrics(self, stop: threading.Event, filter_spec: FilterSpec, interval: float) -> None:
        while not stop.wait(interval):
            try:
                self.update_metrics(filter_spec)
            except Exception as e:
                log.warning("Error updating metrics.", err=str(e))

    # Engine events

    def handle_event(self, event: dict[str, Any], filter_spec: FilterSpec) -> None:
        if event.get("Type", "container") != "container":
            return
        action = event.get("Action") or event.get("status") or ""
        actor = event.get("Actor") or {}
        attrs = actor.get("Attributes") or {}
        container_id = actor.get("ID") or event.get("id", "")

        if "execID" in attrs and action.startswith("exec_"):
            return

        if action in NARROW_UPDATE_ACTIONS:
            self._schedule(filter_spec.narrowed_to(container_id))
        elif action in FULL_UPDATE_ACTIONS:
            log.info("Container removed or stopped.", container=container_id, action=action)
            self._schedule(filter_spec)

        if self.events_enabled and action in EVENT_TEXT:
            try:
                self.registry.publish(self.service_target.topic("e", _topic_safe(action)), self._event_payload(action, container_id, attrs))
            except Exception as e:
                log.warning("Failed to publish container event.", err=str(e))

    def _schedule(self, filter_spec: FilterSpec) -> None:
        timer = self.timer_factory(self.debounce, self.request_update, args=(filter_spec,))
        timer.daemon = True
        timer.start()

    @staticmethod
    def _event_payload(action: str, container_id: str, attrs: dict[str, str]) -> dict[str, Any]:
        text = f"container {EVENT_TEXT[action]}"
        name, image, project = attrs.get("name"), attrs.get("image"), attrs.get("com.docker.compose.project")
        if name and image:
            if project:
                text = f"{text}. project={project}, name={name}, image={image}"
            else:
                text = f"{text}. name={name}, image={image}"
        return {"text": text, "containerID": container_id, "attributes": attrs}

    def monitor(self, stop: threading.Event, filter_spec: FilterSpec) -> None:
        """Follow engine events until `stop` is set or the stream ends.

        One full pass runs right after subscribing so nothing that happened
        before the subscription is missed.
        """
        stream = self.engine.events()
        done = threading.Event()

        def close_on_stop() -> None:
            while not done.is_set():
                if stop.wait(0.5):
                    stream.close()
                    return

        threading.Thread(target=close_on_stop, name="event-stream-closer", daemon=True).start()
        try:
            try:
                self.update(filter_spec)
            except Exception as e:
                log.warning("Error updating container state.", err=str(e))

            try:
                for event in stream:
                    if stop.is_set():
                        break
                    self.handle_event(event, filter_spec)
            except Exception:
                # closing the stream from another thread breaks the read
                if stop.is_set():
                    return
                raise
            log.info("No more engine events")
        finally:
            done.set()
            stream.close()

    def run_monitor(self, stop: threading.Event, filter_spec: FilterSpec) -> None:
        """Keep monitoring, resubscribing after a short backoff."""
        while not stop.is_set():
            try:
                self.monitor(stop, filter_spec)
            except Exception as e:
                log.warning("Engine monitor failed.", err=f"{type(e).__name__}: {e}")
            if stop.wait(self.backoff):
                break
        log.info("Stopping engine monitor")
