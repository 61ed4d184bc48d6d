from __future__ import annotations

import re

import pytest

from tcm.logging import setup_logging
from tcm.models import CONTAINER_TYPE, ContainerRecord, FilterSpec


@pytest.fixture(scope="session", autouse=True)
def _logging():
    setup_logging("debug")


def make_record(name: str, container_id: str | None = None, service_type: str = CONTAINER_TYPE, status: str = "up", **kw):
    return ContainerRecord(
        id=container_id or f"id-{name}",
        name=name,
        container_name=kw.pop("container_name", name),
        service_type=service_type,
        status=status,
        time=1700000000.0,
        **kw,
    )


class FakeEngine:
    """In-memory stand-in for EngineClient used by the reconciler."""

    def __init__(self, records=(), failing_stats=()):
        self.records = list(records)
        self.failing_stats = set(failing_stats)
        self.stream = None
        self.list_calls = []

    def list(self, filter_spec=None):
        filter_spec = filter_spec or FilterSpec()
        self.list_calls.append(filter_spec)
        out = []
        for r in self.records:
            if filter_spec.ids and r.id not in filter_spec.ids:
                continue
            if filter_spec.names and not any(re.search(n, r.container_name) for n in filter_spec.names):
                continue
            out.append(r)
        return filter_spec.apply(out)

    def stats(self, container_id):
        if container_id in self.failing_stats:
            raise RuntimeError(f"no stats for {container_id}")
        return {"container": {"cpu": 1.5, "memory": 2.5, "netio": 10}}

    def events(self):
        return self.stream


class FakeStream:
    def __init__(self, events):
        self._events = list(events)
        self.closed = False

    def __iter__(self):
        return iter(self._events)

    def close(self):
        self.closed = True


class FakeRegistry:
    """Records what the reconciler publishes instead of talking to thin-edge.io."""

    def __init__(self, entities=None, existing=None):
        self.entities = dict(entities or {})
        self.existing = existing
        self.registered = []
        self.deregistered = []
        self.health = {}
        self.twins = {}
        self.published = []
        self.deleted_remote = []
        self.deleted_objects = []
        self.cloud_services = []
        self.log_syncs = 0

    def add(self, target, name, service_type=CONTAINER_TYPE):
        self.entities[target.topic_id] = {"@topic-id": target.topic_id, "name": name, "type": service_type}

    def list_entities(self):
        return {k: dict(v) for k, v in self.entities.items()}

    def register(self, target, name, service_type):
        self.registered.append(target.topic_id)
        self.add(target, name, service_type)

    def publish_health(self, target, payload):
        self.health[target.topic_id] = payload

    def update_twin(self, target, name, data):
        self.twins[(target.topic_id, name)] = data

    def deregister(self, target):
        self.deregistered.append(target.topic_id)
        self.entities.pop(target.topic_id, None)

    def delete_remote_object(self, target):
        self.deleted_remote.append(target.external_id)
        return True

    def list_cloud_services(self, device, service_types):
        return list(self.cloud_services)

    def delete_managed_object(self, mo_id):
        self.deleted_objects.append(mo_id)

    def entity_exists(self, target):
        return self.existing is None or target.topic_id in self.existing

    def publish(self, topic, payload, retain=False, qos=1):
        self.published.append((topic, payload))

    def sync_log_types(self):
        self.log_syncs += 1


class FakeTimer:
    """threading.Timer replacement that only records what would run."""

    created: list = []

    def __init__(self, interval, function, args=()):
        self.interval = interval
        self.function = function
        self.args = args
        self.daemon = False
        self.started = False
        FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def fire(self):
        self.function(*self.args)


@pytest.fixture
def timers():
    FakeTimer.created = []
    yield FakeTimer
    FakeTimer.created = []
