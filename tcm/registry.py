"""Client for the thin-edge.io entity store, MQTT broker and Cumulocity proxy.

Entities and twin data go through the local HTTP API, health, events and
measurements through MQTT, and deletions of cloud objects through the
Cumulocity proxy exposed by tedge.
"""
from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable

import httpx
import paho.mqtt.client as mqtt

from .logging import get_logger
from .settings import Settings

log = get_logger(__name__)


ENTITY_TYPE_SERVICE = "service"
MAIN_DEVICE = "device/main//"
AGENT_SERVICE = "tedge-agent"
LEGACY_SERVICE = "tedge-container-monitor"


class RegistryError(Exception):
    pass


class PublishError(RegistryError):
    pass


@dataclass(frozen=True)
class Target:
    root: str = "te"
    topic_id: str = MAIN_DEVICE
    cloud_identity: str = ""

    @classmethod
    def from_topic(cls, topic: str) -> "Target":
        parts = topic.split("/")
        if len(parts) < 5:
            raise ValueError(f"Invalid topic: {topic}")
        return cls(root=parts[0], topic_id="/".join(parts[1:5]))

    def service(self, name: str) -> "Target":
        device = "/".join(self.topic_id.split("/")[0:2])
        return replace(self, topic_id=f"{device}/service/{name}")

    def topic(self, *subpath: str) -> str:
        if not subpath:
            return f"{self.root}/{self.topic_id}"
        return f"{self.root}/{self.topic_id}/{'/'.join(subpath)}"

    @property
    def health_topic(self) -> str:
        return self.topic("status", "health")

    @property
    def external_id(self) -> str:
        if self.topic_id == MAIN_DEVICE:
            return self.cloud_identity
        return f"{self.cloud_identity}:{self.topic_id.replace('/', ':')}".rstrip(":")


def health_payload(status: str) -> dict[str, Any]:
    return {"status": status, "time": int(time.time())}


class TedgeClient:
    def __init__(
        self,
        device: Target,
        service_name: str,
        http: httpx.Client,
        c8y: httpx.Client | None = None,
        mqtt_client: Any = None,
        publish_timeout: float = 5.0,
    ):
        self.device = device
        self.service_name = service_name
        self.target = device.service(service_name)
        self.http = http
        self.c8y = c8y
        self.mqtt = mqtt_client
        self.publish_timeout = publish_timeout
        self._health_check_handler: Callable[[str], None] | None = None
        self._connected = threading.Event()

    @classmethod
    def from_settings(cls, settings: Settings) -> "TedgeClient":
        device = Target(root=settings.topic_root, topic_id=settings.topic_id, cloud_identity=settings.device_id)
        use_certs = settings.use_certs()
        scheme = "https" if use_certs else "http"
        tls: dict[str, Any] = {}
        if use_certs:
            tls = {"cert": (settings.cert_file, settings.key_file), "verify": settings.ca_file or True}
        http = httpx.Client(base_url=f"{scheme}://{settings.http_host}:{settings.http_port}", timeout=10.0, **tls)
        c8y = httpx.Client(base_url=f"{scheme}://{settings.c8y_host}:{settings.c8y_port}/c8y", timeout=10.0, **tls)

        client = cls(device, settings.service_name, http, c8y)
        client.mqtt = client._new_mqtt_client(settings, use_certs)
        return client

    # MQTT

    def _new_mqtt_client(self, settings: Settings, use_certs: bool) -> mqtt.Client:
        port = settings.resolved_mqtt_port()
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"{self.service_name}#{self.target.topic()}",
            clean_session=True,
        )
        client.will_set(self.target.health_topic, json.dumps({"status": "down"}), qos=1, retain=True)
        if use_certs and port != 1883:
            log.info("Using client certificates to connect to thin-edge.io services.")
            client.tls_set(ca_certs=settings.ca_file or None, certfile=settings.cert_file, keyfile=settings.key_file)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.message_callback_add(self.device.service("+").topic("cmd", "health", "check"), self._on_health_check)
        client.connect_async(settings.mqtt_host, port, keepalive=60)
        return client

    def connect(self, timeout: float = 10.0) -> bool:
        """Start the network loop and wait for the broker connection."""
        if self.mqtt is None:
            return False
        self.mqtt.loop_start()
        if not self._connected.wait(timeout):
            log.warning("MQTT broker not connected yet, continuing in the background.", timeout=timeout)
            return False
        return True

    def close(self) -> None:
        if self.mqtt is not None:
            self.mqtt.disconnect()
            self.mqtt.loop_stop()
        self.http.close()
        if self.c8y is not None:
            self.c8y.close()

    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any) -> None:
        if reason_code.is_failure:
            log.warning("MQTT connection refused.", reason=str(reason_code))
            return
        log.info("MQTT client is connected.", reason=str(reason_code))
        client.subscribe(self.device.service("+").topic("cmd", "health", "check"), qos=1)
        client.publish(self.target.health_topic, json.dumps(health_payload("up")), qos=1, retain=True)
        self._connected.set()

    def _on_disconnect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any) -> None:
        self._connected.clear()
        log.info("MQTT client is disconnected.", reason=str(reason_code))

    def on_health_check(self, handler: Callable[[str], None]) -> None:
        """`handler(service_name)` is called for health check commands; it must not block."""
        self._health_check_handler = handler

    def _on_health_check(self, client: mqtt.Client, userdata: Any, message: mqtt.MQTTMessage) -> None:
        parts = message.topic.split("/")
        if len(parts) > 5 and self._health_check_handler is not None:
            log.info("Received request to update service data.", service=parts[4])
            self._health_check_handler(parts[4])

    def publish(self, topic: str, payload: Any, retain: bool = False, qos: int = 1) -> None:
        if self.mqtt is None:
            raise PublishError("MQTT client is not configured")
        if isinstance(payload, (dict, list)):
            payload = json.dumps(payload)
        log.debug("Publishing MQTT message.", topic=topic, retain=retain)
        info = self.mqtt.publish(topic, payload, qos=qos, retain=retain)
        try:
            info.wait_for_publish(timeout=self.publish_timeout)
        except (RuntimeError, ValueError) as e:
            raise PublishError(f"Could not publish to {topic}: {e}") from e
        if info.rc != mqtt.MQTT_ERR_SUCCESS or not info.is_published():
            raise PublishError(f"Could not publish to {topic}: rc={info.rc}")

    def publish_health(self, target: Target, payload: dict[str, Any]) -> None:
        self.publish(target.health_topic, payload, retain=True)

    def sync_log_types(self) -> None:
        """Ask tedge-agent to re-read the log types offered by the log plugins."""
        topic = self.device.service(AGENT_SERVICE).topic("signal", "sync_log_upload")
        self.publish(topic, {})

    # Entity store (HTTP API)

    def list_entities(self) -> dict[str, dict[str, Any]]:
        """Registered entities by topic id, with `type` taken from each entity's twin."""
        resp = self.http.get("/te/v1/entities", headers={"Accept": "application/json"})
        resp.raise_for_status()
        entities: dict[str, dict[str, Any]] = {}
        for entity in resp.json():
            topic_id = entity.get("@topic-id", "")
            twin = self.http.get(f"/te/v1/entities/{topic_id}/twin")
            if twin.status_code != 200:
                continue
            entity = dict(entity)
            twin_type = (twin.json() or {}).get("type")
            if twin_type:
                entity["type"] = twin_type
            entities[topic_id] = entity
        return entities

    def register(self, target: Target, name: str, service_type: str) -> None:
        body = {
            "@topic-id": target.topic_id,
            "@type": ENTITY_TYPE_SERVICE,
            "@parent": self.device.topic_id,
            "name": name,
            "type": service_type,
        }
        resp = self.http.post("/te/v1/entities", json=body)
        # 409: already registered
        if resp.status_code not in (200, 201, 409):
            resp.raise_for_status()
        log.info("Registered entity.", topic=target.topic(), status_code=resp.status_code)

    def update_twin(self, target: Target, name: str, data: dict[str, Any]) -> None:
        resp = self.http.put(f"/te/v1/entities/{target.topic_id}/twin/{name}", json=data)
        resp.raise_for_status()

    def entity_exists(self, target: Target) -> bool:
        resp = self.http.get(f"/te/v1/entities/{target.topic_id}")
        if resp.status_code == 404:
            return False
        resp.raise_for_status()
        return True

    def deregister(self, target: Target) -> None:
        """Clear retained health and registration messages, then delete the entity."""
        for topic in (target.health_topic, target.topic()):
            try:
                self.publish(topic, "", retain=True)
            except PublishError as e:
                log.warning("Failed to clear retained message.", topic=topic, err=str(e))
        resp = self.http.delete(f"/te/v1/entities/{target.topic_id}")
        if resp.status_code not in (200, 204, 404):
            resp.raise_for_status()

    # Cumulocity proxy

    def _c8y(self) -> httpx.Client:
        if self.c8y is None:
            raise RegistryError("Cumulocity proxy is not configured")
        return self.c8y

    def resolve_cloud_identity(self) -> str:
        resp = self._c8y().get("/user/currentUser")
        resp.raise_for_status()
        username = resp.json().get("userName") or resp.json().get("username") or ""
        return username.removeprefix("device_")

    def managed_object_id(self, external_id: str) -> str | None:
        resp = self._c8y().get(f"/identity/externalIds/c8y_Serial/{external_id}")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return str(resp.json()["managedObject"]["id"])

    def delete_managed_object(self, mo_id: str) -> None:
        resp = self._c8y().delete(f"/inventory/managedObjects/{mo_id}")
        if resp.status_code != 404:
            resp.raise_for_status()

    def delete_remote_object(self, target: Target) -> bool:
        """Delete the cloud twin of `target`; False when the cloud does not know it."""
        log.info("Deleting service by external id.", external_id=target.external_id)
        mo_id = self.managed_object_id(target.external_id)
        if mo_id is None:
            return False
        self.delete_managed_object(mo_id)
        return True

    def list_cloud_services(self, device: Target, service_types: tuple[str, ...]) -> list[dict[str, Any]]:
        """Cloud service objects below `device` with one of `service_types`."""
        mo_id = self.managed_object_id(device.external_id)
        if mo_id is None:
            return []
        types = " or ".join(f"serviceType eq '{t}'" for t in service_types)
        resp = self._c8y().get(
            f"/inventory/managedObjects/{mo_id}/childAdditions",
            params={"query": f"type eq 'c8y_Service' and ({types})", "pageSize": 100},
        )
        resp.raise_for_status()
        return [ref["managedObject"] for ref in resp.json().get("references", [])]
