from __future__ import annotations

import os
import shutil
import subprocess
import sys
from typing import Callable, Sequence, TextIO

import yaml

from .docker_ops import EngineClient
from .logging import get_logger
from .models import LABEL_COMPOSE_PROJECT, LABEL_COMPOSE_WORKING_DIR, FilterSpec
from .runtime import (
    COMPOSE_RULES,
    CommandFailed,
    FlagRule,
    RuntimeCommand,
    build_command,
    detect_compose,
    exit_code_from_output,
)

log = get_logger(__name__)


COMPOSE_FILES = ("docker-compose.yaml", "docker-compose.yml", "compose.yaml", "compose.yml")
VERSION_FILE = "version"
DEFAULT_VERSION = "latest"

# (argv, working dir) -> (exit status, combined output)
DirRunner = Callable[[Sequence[str], str], tuple[int, str]]


def run_in_dir(args: Sequence[str], cwd: str) -> tuple[int, str]:
    proc = subprocess.run(list(args), cwd=cwd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True)
    return proc.returncode, proc.stdout or ""


def project_dir(base_dir: str, project: str) -> str:
    return os.path.join(base_dir, "compose", project)


def find_compose_file(working_dir: str) -> str | None:
    for name in COMPOSE_FILES:
        p = os.path.join(working_dir, name)
        if os.path.isfile(p):
            return p
    return None


def read_images(compose_file: str) -> list[str]:
    """Images declared by the services of a compose file (services that only build are skipped)."""
    with open(compose_file, encoding="utf-8") as fp:
        data = yaml.safe_load(fp) or {}
    images: list[str] = []
    for service in (data.get("services") or {}).values():
        image = (service or {}).get("image")
        if image and image not in images:
            images.append(str(image))
    return images


def write_version(working_dir: str, version: str) -> None:
    with open(os.path.join(working_dir, VERSION_FILE), "w", encoding="utf-8") as fp:
        fp.write(version)


def read_version(working_dir: str) -> str:
    try:
        with open(os.path.join(working_dir, VERSION_FILE), encoding="utf-8") as fp:
            first = fp.readline().strip()
    except OSError:
        return DEFAULT_VERSION
    return first or DEFAULT_VERSION


class ComposeRunner:
    """Runs compose commands for projects kept under a working directory.

    The backend is detected on first use and then reused.
    """

    def __init__(
        self,
        engine: EngineClient,
        command: RuntimeCommand | None = None,
        rules: Sequence[FlagRule] = COMPOSE_RULES,
        run: DirRunner = run_in_dir,
        detect: Callable[[], RuntimeCommand] = detect_compose,
        output: TextIO | None = None,
    ):
        self.engine = engine
        self._command = command
        self.rules = rules
        self._run = run
        self._detect = detect
        self.output = output or sys.stderr

    @property
    def command(self) -> RuntimeCommand:
        if self._command is None:
            self._command = self._detect()
        return self._command

    def run(self, args: Sequence[str], cwd: str) -> str:
        argv = build_command(self.command, args, self.rules)
        log.info("Running compose command.", command=" ".join(argv), dir=cwd)
        code, output = self._run(argv, cwd)
        self.output.write(output)

        if self.command.base[0] == "podman-compose":
            # podman-compose can exit 0 although a container failed
            marker = exit_code_from_output(output)
            if marker is not None:
                code = marker
        if code != 0:
            raise CommandFailed(f"{' '.join(argv)} failed with exit code {code}", exit_code=code, output=output)
        return output

    def up(self, project: str, working_dir: str, build: bool = False) -> None:
        log.info("Starting compose project.", project=project, dir=working_dir)
        args = ["up", "--detach", "--remove-orphans"]
        if build:
            args.append("--build")
        self.run(args, cwd=working_dir)

    def project_working_dir(self, project: str, default_dir: str) -> str:
        """Working dir recorded on the project's containers if it still exists, else `default_dir`."""
        for item in self.engine.list(FilterSpec(labels=(f"{LABEL_COMPOSE_PROJECT}={project}",))):
            path = item.labels.get(LABEL_COMPOSE_WORKING_DIR, "")
            if path and os.path.isdir(path):
                return path
        return default_dir

    def down(self, project: str, default_dir: str) -> None:
        working_dir = self.project_working_dir(project, default_dir)
        if not os.path.isdir(working_dir):
            raise CommandFailed(f"Compose project working directory does not exist: {working_dir}")

        log.info("Stopping compose project.", project=project, dir=working_dir)
        self.run(["down", "--remove-orphans", "--volumes"], cwd=working_dir)

        log.info("Removing project directory.", dir=working_dir)
        try:
            shutil.rmtree(working_dir)
        except OSError as e:
            log.warning("Failed to remove project directory.", dir=working_dir, err=str(e))

    def list_projects(self, default_base: str = "") -> list[tuple[str, str]]:
        """(project, version) of every compose project with containers, sorted by name."""
        projects: dict[str, str] = {}
        for item in self.engine.list(FilterSpec(labels=(LABEL_COMPOSE_PROJECT,))):
            if item.project_name:
                projects.setdefault(item.project_name, item.labels.get(LABEL_COMPOSE_WORKING_DIR, ""))

        out: list[tuple[str, str]] = []
        for name in sorted(projects):
            working_dir = projects[name]
            if not working_dir and default_base:
                working_dir = project_dir(default_base, name)
            out.append((name, read_version(working_dir) if working_dir else DEFAULT_VERSION))
        return out
