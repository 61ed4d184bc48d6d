from __future__ import annotations

import argparse
import json
import os
import signal
import sys
import threading
from dataclasses import replace

import httpx
import requests
from docker.errors import DockerException
from pydantic import TypeAdapter, ValidationError

from . import __version__
from .api import create_app, serve
from .api_models import SoftwareModule
from .compose import ComposeRunner
from .credentials import make_auth_func
from .db import Journal
from .docker_ops import ContainerNotFound, EngineClient, PullFailure
from .log_plugins import ContainerLogs, LogPluginError
from .logging import get_logger, setup_logging
from .models import CloneSpec
from .orchestrator import CloneError, ForkError, Orchestrator, UpdateOutcome, UpdateRequest
from .packages import (
    ContainerGroupPackages,
    ContainerPackages,
    ImagePackages,
    PackageError,
    SelfPackages,
    check_self_update,
)
from .reconciler import Reconciler
from .registry import RegistryError, TedgeClient
from .runtime import BackendNotDetected, CommandFailed, detect_compose, detect_engine_cli
from .settings import Settings, SettingsError, parse_duration

log = get_logger(__name__)


PLUGIN_NAMES = ("container", "container-group", "container-image", "self")

# errors reported as a plain failure (exit code 1)
KNOWN_ERRORS = (
    BackendNotDetected,
    CloneError,
    CommandFailed,
    ContainerNotFound,
    DockerException,
    ForkError,
    LogPluginError,
    PackageError,
    PullFailure,
    RegistryError,
    SettingsError,
    httpx.HTTPError,
    OSError,
)


class ExitCodeError(Exception):
    def __init__(self, code: int, message: str = "", silent: bool = False):
        super().__init__(message or f"exit code {code}")
        self.code = code
        self.silent = silent


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _duration(raw: str) -> float:
    try:
        return parse_duration(raw)
    except SettingsError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _label(raw: str) -> tuple[str, str]:
    key, _, value = raw.partition("=")
    if not key:
        raise argparse.ArgumentTypeError(f"Invalid label: {raw!r} (expected key=value)")
    return key, value


def _plugin_parser(sub, name: str, help: str):
    p = sub.add_parser(name, help=help)
    actions = p.add_subparsers(dest="action", required=True)
    actions.add_parser("prepare", help="Prepare a sequence of install/remove commands")
    s_in = actions.add_parser("install", help="Install a module")
    s_in.add_argument("module")
    s_in.add_argument("--module-version", default="")
    s_in.add_argument("--file", default=None)
    s_rm = actions.add_parser("remove", help="Remove a module")
    s_rm.add_argument("module")
    s_rm.add_argument("--module-version", default="")
    actions.add_parser("list", help="List installed modules")
    actions.add_parser("finalize", help="Finalize a sequence of install/remove commands")
    actions.add_parser("update-list", help="Install/remove a list of modules (not supported)")
    return actions


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="tedge-container", description="thin-edge.io container management agent")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    p.add_argument("--config", default=None, help="TOML config file")
    p.add_argument("--log-level", default=None, help="debug|info|warning|error")
    sub = p.add_subparsers(dest="cmd", required=True)

    _plugin_parser(sub, "container", "Software management plugin for containers")
    _plugin_parser(sub, "container-group", "Software management plugin for compose projects")
    _plugin_parser(sub, "container-image", "Software management plugin for container images")
    s_self = _plugin_parser(sub, "self", "Software management plugin for the agent's own container")
    s_check = s_self.add_parser("check", help="Check if an update list contains a self update")
    s_check.add_argument("update_list", help="Software update list (JSON)")
    s_check.add_argument("--container", default="", help="Name of the current container")

    s_tools = sub.add_parser("tools", help="Container tools")
    tools = s_tools.add_subparsers(dest="tool", required=True)

    s_clone = tools.add_parser("container-clone", help="Replace a container by a copy using a new image")
    s_clone.add_argument("--container", default="", help="Container id or name (default: current container)")
    s_clone.add_argument("--image", default="", help="New image (default: current image)")
    s_clone.add_argument("--duration", type=_duration, default=10.0, help="Time to wait for the new container to be healthy")
    s_clone.add_argument("--stop-timeout", type=_duration, default=120.0, help="Time to wait for the container to exit")
    s_clone.add_argument("--stop-after", type=_duration, default=0.0, help="Delay before stopping the container")
    s_clone.add_argument("--wait-for-exit", action="store_true", help="Wait for the container to stop by itself")
    s_clone.add_argument("--rm", action="store_true", help="Remove the new container when it exits")
    s_clone.add_argument("--add-host", action="append", default=[], help="Extra host mapping (host:ip)")
    s_clone.add_argument("-e", "--env", action="append", default=[], help="Extra environment variable (KEY=VALUE)")
    s_clone.add_argument("--label", action="append", type=_label, default=[], help="Extra label (key=value)")
    s_clone.add_argument("--force", action="store_true", help="Update even if the image did not change")
    s_clone.add_argument("--check", action="store_true", help="Only check if an update is required")
    s_clone.add_argument("--fork", action="store_true", help="Run the update from a helper container")
    s_clone.add_argument("--fork-name", default="", help="Name of the helper container")
    s_clone.add_argument("--ignore-ports", action="store_true", help="Drop port bindings (avoids conflicts)")
    s_clone.add_argument("--skip-network", action="store_true", help="Do not attach any network")

    s_crm = tools.add_parser("container-remove", help="Stop and remove a container")
    s_crm.add_argument("container")

    s_restart = tools.add_parser("container-restart", help="Restart containers")
    s_restart.add_argument("containers", nargs="*", help="Container ids or names (default: current container)")

    s_logs = tools.add_parser("container-logs", help="Print the logs of a container")
    s_logs.add_argument("container")
    s_logs.add_argument("--tail", default="100")

    tools.add_parser("runtime", help="Show the detected engine and compose commands")

    s_lp = sub.add_parser("log-plugins", help="tedge-agent log plugins")
    log_types = s_lp.add_subparsers(dest="log_type", required=True)
    for name in ("container", "container-group"):
        s_type = log_types.add_parser(name, help=f"Logs of {name} services")
        lp_actions = s_type.add_subparsers(dest="action", required=True)
        lp_actions.add_parser("list", help="List the available log types")
        s_get = lp_actions.add_parser("get", help="Print the logs of one log type")
        s_get.add_argument("log_name")
        s_get.add_argument("--since", default="", help="Timestamp or duration (e.g. 42m)")
        s_get.add_argument("--until", default="", help="Timestamp or duration (e.g. 42m)")

    s_run = sub.add_parser("run", help="Run the reconciliation agent")
    s_run.add_argument("--once", action="store_true", help="Run one reconciliation pass and exit")

    s_ref = sub.add_parser("refresh", help="Ask a running agent for a reconciliation pass")
    s_ref.add_argument("--api", default="", help="API base URL (default: from config)")
    s_ref.add_argument("--name", action="append", default=[], help="Container name pattern")

    s_ev = sub.add_parser("events", help="Show journal events")
    s_ev.add_argument("--limit", type=int, default=20)
    return p


def _plugin_argv(argv: list[str], prog: str) -> list[str]:
    """thin-edge.io calls plugins through links named after the module type."""
    if prog in PLUGIN_NAMES:
        return [prog, *argv]
    return argv


def _orchestrator(settings: Settings, engine: EngineClient, journal: Journal) -> Orchestrator:
    return Orchestrator(
        engine,
        always_pull=settings.always_pull,
        auth_factory=lambda image: make_auth_func(settings.credentials_path, image),
        journal=journal,
    )


def _container(args, settings: Settings, journal: Journal) -> int:
    if args.action == "prepare":
        return 0
    if args.action == "update-list":
        log.info("update-list is not supported")
        return 1

    engine = EngineClient.from_env(settings.container_host)
    pkgs = ContainerPackages(engine, _orchestrator(settings, engine, journal), settings, journal)
    if args.action == "list":
        for name, image in pkgs.list():
            print(f"{name}\t{image}")
    elif args.action == "install":
        if not (args.module_version or args.file):
            raise ExitCodeError(1, "Either --module-version or --file is required")
        pkgs.install(args.module, args.module_version, args.file)
    elif args.action == "remove":
        pkgs.remove(args.module)
    elif args.action == "finalize":
        pkgs.finalize()
    return 0


def _container_group(args, settings: Settings, journal: Journal) -> int:
    if args.action in ("prepare", "finalize"):
        return 0
    if args.action == "update-list":
        log.info("update-list is not supported")
        return 1

    engine = EngineClient.from_env(settings.container_host)
    pkgs = ContainerGroupPackages(engine, ComposeRunner(engine), _orchestrator(settings, engine, journal), settings, journal)
    if args.action == "list":
        for name, version in pkgs.list():
            print(f"{name}\t{version}")
    elif args.action == "install":
        if not args.file:
            raise ExitCodeError(1, "A compose file (--file) is required")
        pkgs.install(args.module, args.module_version or "latest", args.file)
    elif args.action == "remove":
        pkgs.remove(args.module)
    return 0


def _container_image(args, settings: Settings, journal: Journal) -> int:
    if not settings.image_plugin_enabled:
        # tedge-agent skips plugins that fail to list
        log.info("The container-image plugin is disabled (container_image.enabled).")
        raise ExitCodeError(1, "disabled", silent=True)
    if args.action in ("prepare", "finalize"):
        return 0
    if args.action == "update-list":
        log.info("update-list is not supported")
        return 1

    engine = EngineClient.from_env(settings.container_host)
    pkgs = ImagePackages(engine, _orchestrator(settings, engine, journal), journal)
    if args.action == "list":
        for name, version in pkgs.list():
            print(f"{name}\t{version}")
    elif args.action == "install":
        pkgs.install(args.module, args.module_version, args.file)
    elif args.action == "remove":
        pkgs.remove(args.module, args.module_version)
    return 0


def _log_plugins(args, settings: Settings) -> int:
    engine = EngineClient.from_env(settings.container_host)
    logs = ContainerLogs(engine, settings.filter_spec(), args.log_type)
    if args.action == "list":
        for name in logs.list():
            print(name)
        return 0
    sys.stdout.write(logs.get(args.log_name, since=args.since, until=args.until))
    return 0


def _self(args, settings: Settings) -> int:
    if args.action in ("prepare", "finalize"):
        return 0
    if args.action == "update-list":
        log.info("update-list is not supported")
        return 1
    if args.action == "install":
        # the update itself runs through `tools container-clone`
        log.info("Nothing to do, self updates are applied by a workflow.", module=args.module)
        return 0
    if args.action == "remove":
        log.warning("Removing the agent's own container is not supported")
        raise ExitCodeError(2, "not supported")

    if args.action == "list":
        try:
            name, image = SelfPackages(EngineClient.from_env(settings.container_host)).current()
        except (ContainerNotFound, DockerException) as e:
            raise ExitCodeError(2, f"Could not find the current container: {e}") from e
        print(f"{name}\t{image}")
        return 0

    # check
    try:
        update_list = TypeAdapter(list[SoftwareModule]).validate_json(args.update_list)
    except ValidationError as e:
        raise ExitCodeError(2, f"Invalid update list: {e}") from e

    try:
        try:
            engine = EngineClient.from_env(settings.container_host)
        except DockerException as e:
            log.info("Container engine not available, using the given container name.", err=str(e))
            info = check_self_update(update_list, args.container)
        else:
            info = SelfPackages(engine).check(update_list, args.container)
    except PackageError as e:
        raise ExitCodeError(2, str(e)) from e

    if info is None:
        raise ExitCodeError(1, "no self-update detected", silent=True)
    log.info("Update included a self update", container=info.container_name, image=info.image)
    print(f":::begin-tedge:::\n{info.model_dump_json(by_alias=True)}\n:::end-tedge:::")
    return 0


def _container_clone(args, settings: Settings, journal: Journal) -> int:
    engine = EngineClient.from_env(settings.container_host)
    spec = CloneSpec(
        env=tuple(args.env),
        extra_hosts=tuple(args.add_host),
        labels=dict(args.label),
        auto_remove=args.rm,
        healthy_after=args.duration,
        stop_timeout=args.stop_timeout,
        stop_after=args.stop_after,
        wait_for_exit=args.wait_for_exit,
        ignore_port_conflicts=args.ignore_ports,
        skip_network=args.skip_network,
        fork_name=args.fork_name,
    )
    req = UpdateRequest(
        container=args.container,
        image=args.image,
        check_only=args.check,
        force=args.force,
        fork=args.fork,
        clone=spec,
    )
    outcome = _orchestrator(settings, engine, journal).update(req)
    if outcome is UpdateOutcome.NO_UPDATE_NEEDED:
        raise ExitCodeError(2, "No update required", silent=True)
    log.info("Container update finished.", outcome=outcome.value)
    return 0


def _tools(args, settings: Settings, journal: Journal) -> int:
    if args.tool == "container-clone":
        return _container_clone(args, settings, journal)

    if args.tool == "runtime":
        info: dict[str, str | None] = {"engine": None, "compose": None, "composeVersion": None}
        try:
            info["engine"] = " ".join(detect_engine_cli())
        except BackendNotDetected as e:
            log.warning("No container engine CLI found.", err=str(e))
        try:
            command = detect_compose()
            info["compose"], info["composeVersion"] = command.name, str(command.version)
        except BackendNotDetected as e:
            log.warning("No compose command found.", err=str(e))
        _print(info)
        return 0 if info["compose"] else 1

    engine = EngineClient.from_env(settings.container_host)
    if args.tool == "container-remove":
        engine.stop_remove(args.container)
        journal.log_event("INFO", "Removed", container=args.container)
        return 0
    if args.tool == "container-restart":
        containers = args.containers or [engine.get_self()["Id"]]
        for container in containers:
            engine.restart(container)
            journal.log_event("INFO", "Restarted", container=container)
        return 0
    if args.tool == "container-logs":
        sys.stdout.write(engine.logs(args.container, tail=args.tail))
        return 0
    return 2


def _run(settings: Settings, journal: Journal, once: bool = False) -> int:
    engine = EngineClient.from_env(settings.container_host)
    client = TedgeClient.from_settings(settings)
    device = client.device
    if not device.cloud_identity:
        try:
            device = replace(device, cloud_identity=client.resolve_cloud_identity())
            log.info("Resolved cloud identity.", identity=device.cloud_identity)
        except (httpx.HTTPError, RegistryError) as e:
            log.warning("Could not resolve the cloud identity, cloud objects will not be deleted.", err=str(e))
        client.device = device

    reconciler = Reconciler(
        engine,
        client,
        device,
        settings.service_name,
        delete_from_cloud=settings.delete_from_cloud,
        delete_orphans=settings.delete_orphans,
        events_enabled=settings.events_enabled,
        journal=journal,
    )
    filter_spec = settings.filter_spec()

    client.connect()
    try:
        client.register(client.target, settings.service_name, "service")
    except httpx.HTTPError as e:
        log.warning("Could not register the agent service.", err=str(e))
    reconciler.start()
    if settings.delete_legacy:
        threading.Thread(target=reconciler.remove_legacy_service, name="legacy-cleanup", daemon=True).start()

    if once:
        try:
            result = reconciler.update(filter_spec)
        finally:
            reconciler.stop()
            client.close()
        _print(result.__dict__)
        return 1 if result.errors else 0

    stop = threading.Event()

    def _on_signal(signum, frame) -> None:
        log.info("Received signal, stopping.", signal=signum)
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    client.on_health_check(lambda name: reconciler.on_health_check(name, filter_spec))
    if settings.metrics_enabled:
        threading.Thread(
            target=reconciler.run_metrics,
            args=(stop, filter_spec, settings.metrics_interval),
            name="metrics",
            daemon=True,
        ).start()
    if settings.api_port > 0:
        log.info("Starting control API.", host=settings.api_host, port=settings.api_port)
        serve(create_app(reconciler, engine, journal, filter_spec), settings.api_host, settings.api_port)

    try:
        reconciler.run_monitor(stop, filter_spec)
    finally:
        reconciler.stop()
        client.close()
    return 0


def main(argv: list[str] | None = None, prog: str | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    prog = os.path.basename(sys.argv[0]) if prog is None else prog
    args = build_parser().parse_args(_plugin_argv(argv, prog))

    try:
        settings = Settings.load(args.config)
    except SettingsError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    setup_logging(args.log_level or settings.log_level, settings.log_format)

    journal = Journal(settings.journal_location())
    journal.init()

    try:
        if args.cmd == "container":
            return _container(args, settings, journal)
        if args.cmd == "container-group":
            return _container_group(args, settings, journal)
        if args.cmd == "container-image":
            return _container_image(args, settings, journal)
        if args.cmd == "log-plugins":
            return _log_plugins(args, settings)
        if args.cmd == "self":
            return _self(args, settings)
        if args.cmd == "tools":
            return _tools(args, settings, journal)
        if args.cmd == "run":
            return _run(settings, journal, once=args.once)

        if args.cmd == "refresh":
            base = (args.api or f"http://{settings.api_host}:{settings.api_port}").rstrip("/")
            if not args.api and not settings.api_port:
                raise ExitCodeError(1, "The control API is disabled (api.port), use --api")
            r = requests.post(f"{base}/refresh", json={"names": args.name}, timeout=120)
            _print(r.json())
            return 0 if r.ok else 1

        if args.cmd == "events":
            _print(journal.latest_dicts(args.limit))
            return 0
    except ExitCodeError as e:
        if not e.silent:
            log.error("Command error", err=str(e), exit_code=e.code)
        return e.code
    except requests.RequestException as e:
        log.error("Could not reach the agent API.", err=str(e))
        return 1
    except KNOWN_ERRORS as e:
        log.error("Command error", err=f"{type(e).__name__}: {e}")
        return 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
