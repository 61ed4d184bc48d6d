import json
from unittest.mock import MagicMock

import pytest
from docker.errors import DockerException

from tcm import cli
from tcm.db import Journal
from tcm.docker_ops import EngineClient
from tcm.orchestrator import Orchestrator, UpdateOutcome


@pytest.fixture
def config(tmp_path, monkeypatch):
    monkeypatch.setattr(cli, "setup_logging", lambda *args, **kwargs: None)
    path = tmp_path / "config.toml"
    path.write_text(
        f"""
data_dir = ["{tmp_path / 'data'}"]

[journal]
path = "{tmp_path / 'tcm.db'}"
""",
        encoding="utf-8",
    )
    return str(path)


def _no_engine(monkeypatch):
    def from_env(host=""):
        raise DockerException("Error while fetching server API version")

    monkeypatch.setattr(cli.EngineClient, "from_env", staticmethod(from_env))


def _engine(monkeypatch, containers=()):
    client = MagicMock()
    client.api.containers.return_value = list(containers)
    engine = EngineClient(client)
    monkeypatch.setattr(cli.EngineClient, "from_env", staticmethod(lambda host="": engine))
    return engine


def _tedge_block(out):
    start = out.index(":::begin-tedge:::\n") + len(":::begin-tedge:::\n")
    end = out.index("\n:::end-tedge:::")
    return json.loads(out[start:end])


def test_plugin_name_is_prefixed():
    assert cli._plugin_argv(["list"], "container") == ["container", "list"]
    assert cli._plugin_argv(["list"], "self") == ["self", "list"]
    assert cli._plugin_argv(["run"], "tedge-container") == ["run"]


def test_container_list(config, monkeypatch, capsys):
    _engine(
        monkeypatch,
        [
            {"Id": "1", "Names": ["/web"], "Image": "docker.io/nginx:1.25", "State": "running", "Labels": {}},
            {
                "Id": "2",
                "Names": ["/shop-db-1"],
                "Image": "postgres:16",
                "State": "running",
                "Labels": {"com.docker.compose.project": "shop", "com.docker.compose.service": "db"},
            },
        ],
    )

    assert cli.main(["--config", config, "list"], prog="container") == 0
    assert capsys.readouterr().out == "web\tdocker.io/library/nginx:1.25\n"


def test_update_list_is_not_supported(config):
    assert cli.main(["--config", config, "container", "update-list"]) == 1
    assert cli.main(["--config", config, "container-group", "update-list"]) == 1


def test_container_install_needs_a_version(config, monkeypatch):
    _engine(monkeypatch)
    assert cli.main(["--config", config, "container", "install", "web"]) == 1


def test_engine_errors_exit_with_1(config, monkeypatch):
    _no_engine(monkeypatch)
    assert cli.main(["--config", config, "container", "list"]) == 1


def test_self_list_without_engine(config, monkeypatch):
    _no_engine(monkeypatch)
    assert cli.main(["--config", config, "list"], prog="self") == 2


def test_self_remove_is_not_supported(config):
    assert cli.main(["--config", config, "self", "remove", "tedge"]) == 2


def test_self_check_finds_update(config, monkeypatch, capsys):
    _no_engine(monkeypatch)
    update_list = [
        {
            "type": "container",
            "modules": [
                {"name": "tedge", "version": "ghcr.io/thin-edge/tedge:1.1", "action": "install"},
                {"name": "nginx", "version": "nginx:1.25", "action": "install"},
            ],
        }
    ]

    code = cli.main(["--config", config, "self", "check", json.dumps(update_list), "--container", "tedge"])

    assert code == 0
    payload = _tedge_block(capsys.readouterr().out)
    assert payload["containerName"] == "tedge"
    assert payload["image"] == "ghcr.io/thin-edge/tedge:1.1"
    assert [m["name"] for m in payload["updateList"][0]["modules"]] == ["nginx"]


def test_self_check_without_update(config, monkeypatch, capsys):
    _no_engine(monkeypatch)
    update_list = [{"type": "container", "modules": [{"name": "nginx", "version": "nginx:1.25", "action": "install"}]}]

    assert cli.main(["--config", config, "self", "check", json.dumps(update_list), "--container", "tedge"]) == 1
    assert capsys.readouterr().out == ""


def test_self_check_errors(config, monkeypatch):
    _no_engine(monkeypatch)
    removal = [{"type": "container", "modules": [{"name": "tedge", "action": "remove"}]}]

    assert cli.main(["--config", config, "self", "check", "not json"]) == 2
    assert cli.main(["--config", config, "self", "check", json.dumps(removal), "--container", "tedge"]) == 2


def test_container_clone_without_update_exits_silently_with_2(config, monkeypatch):
    _engine(monkeypatch)
    requests = []

    def update(self, req):
        requests.append(req)
        return UpdateOutcome.NO_UPDATE_NEEDED

    monkeypatch.setattr(Orchestrator, "update", update)

    code = cli.main(
        [
            "--config",
            config,
            "tools",
            "container-clone",
            "--container",
            "web",
            "--image",
            "nginx:1.26",
            "--check",
            "--duration",
            "1m",
            "--label",
            "team=edge",
            "-e",
            "A=1",
        ]
    )

    assert code == 2
    (req,) = requests
    assert req.container == "web"
    assert req.image == "nginx:1.26"
    assert req.check_only is True
    assert req.clone.healthy_after == 60.0
    assert req.clone.labels == {"team": "edge"}
    assert req.clone.env == ("A=1",)


def test_container_clone_success(config, monkeypatch):
    _engine(monkeypatch)
    monkeypatch.setattr(Orchestrator, "update", lambda self, req: UpdateOutcome.UPDATED)
    assert cli.main(["--config", config, "tools", "container-clone", "--image", "nginx:1.26"]) == 0


def test_invalid_duration_is_a_usage_error(config):
    with pytest.raises(SystemExit) as exc:
        cli.main(["--config", config, "tools", "container-clone", "--duration", "soon"])
    assert exc.value.code == 2


def test_events_prints_journal(config, tmp_path, capsys):
    journal = Journal(str(tmp_path / "tcm.db"))
    journal.init()
    journal.log_event("INFO", "Installed nginx:1.25", container="web")

    assert cli.main(["--config", config, "events", "--limit", "5"]) == 0
    events = json.loads(capsys.readouterr().out)
    assert events[0]["message"] == "Installed nginx:1.25"
    assert events[0]["container"] == "web"


def test_refresh_needs_api(config):
    assert cli.main(["--config", config, "refresh"]) == 1


def test_missing_config_file(tmp_path):
    assert cli.main(["--config", str(tmp_path / "missing.toml"), "events"]) == 1


def test_container_image_is_disabled_by_default(config, monkeypatch):
    _no_engine(monkeypatch)
    assert cli.main(["--config", config, "list"], prog="container-image") == 1


def test_container_image_list(config, monkeypatch, capsys):
    engine = _engine(monkeypatch)
    engine.api.images.return_value = [{"Id": "sha256:1", "RepoTags": ["nginx:1.25", "<none>:<none>"]}]
    monkeypatch.setenv("CONTAINER_CONTAINER_IMAGE_ENABLED", "true")

    assert cli.main(["--config", config, "container-image", "list"]) == 0
    assert capsys.readouterr().out == "nginx\t1.25\n"
    assert cli.main(["--config", config, "container-image", "update-list"]) == 1


def test_container_image_remove(config, monkeypatch):
    engine = _engine(monkeypatch)
    monkeypatch.setenv("CONTAINER_CONTAINER_IMAGE_ENABLED", "true")

    assert cli.main(["--config", config, "container-image", "remove", "nginx", "--module-version", "1.25"]) == 0
    engine.api.remove_image.assert_called_once_with("nginx:1.25")


def test_log_plugin_list(config, monkeypatch, capsys):
    _engine(
        monkeypatch,
        [
            {"Id": "1", "Names": ["/web"], "Image": "nginx:1.25", "State": "running", "Labels": {}},
            {
                "Id": "2",
                "Names": ["/shop-db-1"],
                "Image": "postgres:16",
                "State": "running",
                "Labels": {"com.docker.compose.project": "shop", "com.docker.compose.service": "db"},
            },
        ],
    )

    assert cli.main(["--config", config, "log-plugins", "container", "list"]) == 0
    assert capsys.readouterr().out == "web\n"
    assert cli.main(["--config", config, "log-plugins", "container-group", "list"]) == 0
    assert capsys.readouterr().out == "shop@db\n"


def test_log_plugin_get(config, monkeypatch, capsys):
    engine = _engine(monkeypatch)
    engine.api.logs.return_value = b"hello\n"

    assert cli.main(["--config", config, "log-plugins", "container", "get", "web", "--since", "10m"]) == 0
    assert capsys.readouterr().out == "hello\n"
    assert engine.api.logs.call_args.args == ("web",)
    assert engine.api.logs.call_args.kwargs["tail"] == "100000"


def test_log_plugin_get_with_bad_group_name(config, monkeypatch):
    _engine(monkeypatch)
    assert cli.main(["--config", config, "log-plugins", "container-group", "get", "shop"]) == 1


def test_container_restart(config, monkeypatch):
    engine = _engine(monkeypatch)

    assert cli.main(["--config", config, "tools", "container-restart", "web", "db"]) == 0
    assert [c.args for c in engine.api.restart.call_args_list] == [("web",), ("db",)]


def test_container_restart_defaults_to_current_container(config, monkeypatch):
    engine = _engine(monkeypatch)
    engine.api.inspect_container.return_value = {"Id": "self1", "Config": {}}

    assert cli.main(["--config", config, "tools", "container-restart"]) == 0
    engine.api.restart.assert_called_once_with("self1")
