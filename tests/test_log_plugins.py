from datetime import datetime, timezone
from unittest.mock import create_autospec

import pytest
from docker.errors import NotFound

from tcm.docker_ops import EngineClient
from tcm.log_plugins import LOG_TAIL, ContainerLogs, LogPluginError, parse_log_time
from tcm.models import FilterSpec
from conftest import make_record


def _engine(records=()):
    engine = create_autospec(EngineClient, instance=True)
    engine.list.return_value = list(records)
    engine.logs.return_value = "line 1\nline 2\n"
    return engine


RECORDS = [
    make_record("web"),
    make_record("shop@db", service_type="container-group", project_name="shop", service_name="db"),
    make_record("shop@web", service_type="container-group", project_name="shop", service_name="web"),
    make_record("api"),
]


def test_parse_log_time():
    assert parse_log_time("") is None
    assert parse_log_time("42m", now=10000.0) == 10000.0 - 42 * 60
    assert parse_log_time("2024-03-01T10:00:00Z") == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
    with pytest.raises(LogPluginError):
        parse_log_time("yesterday")


def test_list_only_reports_its_type():
    engine = _engine(RECORDS)
    spec = FilterSpec(exclude_names=("^tmp",))

    assert ContainerLogs(engine, spec).list() == ["api", "web"]
    assert ContainerLogs(engine, spec, "container-group").list() == ["shop@db", "shop@web"]
    engine.list.assert_called_with(spec)


def test_unknown_type_is_rejected():
    with pytest.raises(ValueError):
        ContainerLogs(_engine(), FilterSpec(), "apt")


def test_container_logs():
    engine = _engine()

    out = ContainerLogs(engine, FilterSpec()).get("web", since="1h")

    assert out == "line 1\nline 2\n"
    (container_id,), kwargs = engine.logs.call_args
    assert container_id == "web"
    assert kwargs["tail"] == LOG_TAIL
    assert isinstance(kwargs["since"], float)
    assert kwargs["until"] is None


def test_container_group_logs_are_found_by_project_and_service():
    engine = _engine([RECORDS[1], RECORDS[2]])

    ContainerLogs(engine, FilterSpec(), "container-group").get("shop@web", until="2024-03-01T10:00:00+00:00")

    engine.list.assert_called_once_with(FilterSpec(labels=("com.docker.compose.project=shop",)))
    assert engine.logs.call_args.args == ("id-shop@web",)
    assert engine.logs.call_args.kwargs["until"] == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)


def test_container_group_name_needs_project_and_service():
    with pytest.raises(LogPluginError):
        ContainerLogs(_engine(), FilterSpec(), "container-group").get("shop")


def test_missing_container_prints_nothing():
    engine = _engine()
    assert ContainerLogs(engine, FilterSpec(), "container-group").get("shop@cache") == ""
    engine.logs.assert_not_called()

    engine.logs.side_effect = NotFound("no such container")
    assert ContainerLogs(engine, FilterSpec()).get("gone") == ""
