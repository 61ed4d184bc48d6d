import json
from types import SimpleNamespace

import httpx
import pytest

from tcm.registry import PublishError, RegistryError, TedgeClient, Target


class FakeInfo:
    def __init__(self, rc=0, published=True):
        self.rc = rc
        self._published = published

    def wait_for_publish(self, timeout=None):
        pass

    def is_published(self):
        return self._published


class FakeMqtt:
    def __init__(self, rc=0):
        self.rc = rc
        self.messages = []

    def publish(self, topic, payload, qos=0, retain=False):
        self.messages.append((topic, payload, retain))
        return FakeInfo(rc=self.rc, published=self.rc == 0)


def _client(handler=None, c8y_handler=None, mqtt_client=None):
    http = httpx.Client(base_url="http://tedge", transport=httpx.MockTransport(handler or (lambda r: httpx.Response(404))))
    c8y = None
    if c8y_handler is not None:
        c8y = httpx.Client(base_url="http://tedge/c8y", transport=httpx.MockTransport(c8y_handler))
    return TedgeClient(Target(cloud_identity="dev01"), "tedge-container-plugin", http, c8y, mqtt_client)


def test_target_topics():
    device = Target()
    svc = device.service("app")

    assert svc.topic_id == "device/main/service/app"
    assert svc.topic() == "te/device/main/service/app"
    assert svc.health_topic == "te/device/main/service/app/status/health"
    assert svc.topic("m", "resource_usage") == "te/device/main/service/app/m/resource_usage"


def test_target_external_id():
    device = Target(cloud_identity="dev01")
    assert device.external_id == "dev01"
    assert device.service("app").external_id == "dev01:device:main:service:app"
    assert Target.from_topic("te/device/child1///cmd/health/check").service("x").topic_id == "device/child1/service/x"


def test_target_from_invalid_topic():
    with pytest.raises(ValueError):
        Target.from_topic("te/device")


def test_list_entities_takes_type_from_twin():
    def handler(request):
        path = request.url.path
        if path == "/te/v1/entities":
            return httpx.Response(
                200,
                json=[
                    {"@topic-id": "device/main/service/app", "@type": "service", "type": "service"},
                    {"@topic-id": "device/main/service/gone", "@type": "service"},
                ],
            )
        if path == "/te/v1/entities/device/main/service/app/twin":
            return httpx.Response(200, json={"type": "container", "name": "app"})
        return httpx.Response(404)

    entities = _client(handler).list_entities()

    assert list(entities) == ["device/main/service/app"]
    assert entities["device/main/service/app"]["type"] == "container"


def test_register_accepts_existing_entity():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(409)

    client = _client(handler)
    client.register(client.device.service("app"), "app", "container")

    assert seen == [
        {
            "@topic-id": "device/main/service/app",
            "@type": "service",
            "@parent": "device/main//",
            "name": "app",
            "type": "container",
        }
    ]


def test_register_failure_raises():
    client = _client(lambda r: httpx.Response(500))
    with pytest.raises(httpx.HTTPStatusError):
        client.register(client.device.service("app"), "app", "container")


def test_update_twin_and_entity_exists():
    calls = []

    def handler(request):
        calls.append((request.method, request.url.path))
        if request.method == "GET":
            return httpx.Response(404)
        return httpx.Response(200, json={})

    client = _client(handler)
    target = client.device.service("app")
    client.update_twin(target, "container", {"image": "nginx"})

    assert calls == [("PUT", "/te/v1/entities/device/main/service/app/twin/container")]
    assert client.entity_exists(target) is False


def test_deregister_clears_retained_messages_then_deletes():
    mqtt = FakeMqtt()
    deleted = []

    def handler(request):
        deleted.append((request.method, request.url.path))
        return httpx.Response(404)

    client = _client(handler, mqtt_client=mqtt)
    client.deregister(client.device.service("old"))

    assert mqtt.messages == [
        ("te/device/main/service/old/status/health", "", True),
        ("te/device/main/service/old", "", True),
    ]
    assert deleted == [("DELETE", "/te/v1/entities/device/main/service/old")]


def test_publish_serializes_dicts():
    mqtt = FakeMqtt()
    client = _client(mqtt_client=mqtt)

    client.publish_health(client.device.service("app"), {"status": "up", "time": 1})

    topic, payload, retain = mqtt.messages[0]
    assert topic == "te/device/main/service/app/status/health"
    assert json.loads(payload) == {"status": "up", "time": 1}
    assert retain is True


def test_publish_failure():
    client = _client(mqtt_client=FakeMqtt(rc=4))
    with pytest.raises(PublishError):
        client.publish("te/x", "y")


def test_publish_without_mqtt():
    with pytest.raises(PublishError):
        _client().publish("te/x", "y")


def test_delete_remote_object():
    calls = []

    def c8y(request):
        calls.append((request.method, request.url.path))
        if request.method == "GET":
            if request.url.path.endswith("dev01:device:main:service:app"):
                return httpx.Response(200, json={"managedObject": {"id": "12345"}})
            return httpx.Response(404)
        return httpx.Response(204)

    client = _client(c8y_handler=c8y)

    assert client.delete_remote_object(client.device.service("app")) is True
    assert ("DELETE", "/c8y/inventory/managedObjects/12345") in calls
    assert client.delete_remote_object(client.device.service("unknown")) is False


def test_resolve_cloud_identity():
    client = _client(c8y_handler=lambda r: httpx.Response(200, json={"userName": "device_dev01"}))
    assert client.resolve_cloud_identity() == "dev01"


def test_cloud_calls_need_proxy():
    with pytest.raises(RegistryError):
        _client().resolve_cloud_identity()


def test_list_cloud_services():
    def c8y(request):
        if request.url.path.startswith("/c8y/identity/"):
            return httpx.Response(200, json={"managedObject": {"id": "1"}})
        assert request.url.params["query"] == "type eq 'c8y_Service' and (serviceType eq 'container' or serviceType eq 'container-group')"
        return httpx.Response(200, json={"references": [{"managedObject": {"id": "7", "name": "app"}}]})

    client = _client(c8y_handler=c8y)
    services = client.list_cloud_services(client.device, ("container", "container-group"))

    assert services == [{"id": "7", "name": "app"}]


def test_health_check_messages_are_routed_to_handler():
    client = _client()
    received = []
    client.on_health_check(received.append)

    client._on_health_check(None, None, SimpleNamespace(topic="te/device/main/service/app/cmd/health/check"))

    assert received == ["app"]


def test_on_connect_announces_service():
    client = _client()
    mqtt = FakeMqtt()
    mqtt.subscribe = lambda topic, qos=0: mqtt.messages.append(("subscribe", topic, None))

    client._on_connect(mqtt, None, None, SimpleNamespace(is_failure=False), None)

    assert mqtt.messages[0] == ("subscribe", "te/device/main/service/+/cmd/health/check", None)
    topic, payload, retain = mqtt.messages[1]
    assert topic == "te/device/main/service/tedge-container-plugin/status/health"
    assert json.loads(payload)["status"] == "up"
    assert retain is True
    assert client._connected.is_set()


def test_sync_log_types_signals_the_agent():
    mqtt = FakeMqtt()
    client = _client(mqtt_client=mqtt)

    client.sync_log_types()

    assert mqtt.messages == [("te/device/main/service/tedge-agent/signal/sync_log_upload", "{}", False)]
