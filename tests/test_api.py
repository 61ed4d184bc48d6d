from unittest.mock import create_autospec

import pytest
from docker.errors import DockerException
from fastapi.testclient import TestClient

from tcm.api import create_app
from tcm.db import Journal
from tcm.docker_ops import EngineClient
from tcm.models import FilterSpec
from tcm.reconciler import ReconcileResult, Reconciler
from conftest import make_record


@pytest.fixture
def parts(tmp_path):
    reconciler = create_autospec(Reconciler, instance=True)
    engine = create_autospec(EngineClient, instance=True)
    journal = Journal(str(tmp_path / "tcm.db"))
    journal.init()
    base = FilterSpec(exclude_with_label=("tedge.ignore",))
    client = TestClient(create_app(reconciler, engine, journal, base))
    return client, reconciler, engine, journal


def test_health(parts):
    client, _, engine, _ = parts
    engine.available.return_value = True
    assert client.get("/health").json() == {"status": "up", "engine": True}

    engine.available.return_value = False
    assert client.get("/health").json() == {"status": "degraded", "engine": False}


def test_containers(parts):
    client, _, engine, _ = parts
    engine.list.return_value = [make_record("web", image="nginx:1.25"), make_record("shop@db", project_name="shop")]

    r = client.get("/containers")

    assert r.status_code == 200
    assert [c["name"] for c in r.json()] == ["web", "shop@db"]
    assert r.json()[1]["project"] == "shop"
    engine.list.assert_called_once_with(FilterSpec(exclude_with_label=("tedge.ignore",)))


def test_containers_engine_down(parts):
    client, _, engine, _ = parts
    engine.list.side_effect = DockerException("socket not found")
    assert client.get("/containers").status_code == 503


def test_refresh_with_names(parts):
    client, reconciler, _, _ = parts
    reconciler.update.return_value = ReconcileResult(registered=["web"], updated=["web"])

    r = client.post("/refresh", json={"names": ["^web$"]})

    assert r.status_code == 200
    assert r.json() == {"registered": ["web"], "updated": ["web"], "deregistered": [], "errors": []}
    spec = reconciler.update.call_args.args[0]
    assert spec.names == ("^web$",)
    assert spec.exclude_with_label == ("tedge.ignore",)


def test_refresh_without_body_is_a_full_pass(parts):
    client, reconciler, _, _ = parts
    reconciler.update.return_value = ReconcileResult()

    assert client.post("/refresh").status_code == 200
    assert reconciler.update.call_args.args[0].is_empty()


def test_refresh_failure(parts):
    client, reconciler, _, _ = parts
    reconciler.update.side_effect = RuntimeError("entity store down")

    r = client.post("/refresh")

    assert r.status_code == 502
    assert "entity store down" in r.json()["detail"]


def test_events(parts):
    client, _, _, journal = parts
    journal.log_event("INFO", "Installed nginx:1.25", container="web")
    journal.log_event("ERROR", "Update failed", container="web")

    r = client.get("/events", params={"limit": 1})

    assert r.status_code == 200
    assert [e["message"] for e in r.json()] == ["Update failed"]
    assert client.get("/events", params={"limit": 0}).status_code == 422
