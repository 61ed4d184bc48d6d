"""Detect the container tooling installed on the host and build its command lines.

Compose is available in several flavours (`docker compose`, `docker-compose`,
`podman-compose`) with different flag support. The first backend that answers
its `version` probe is used, and flag rules adapt argument lists to the
detected backend and version.
"""
from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from typing import Callable, Sequence

from packaging.specifiers import SpecifierSet
from packaging.version import InvalidVersion, Version

from .logging import get_logger

log = get_logger(__name__)

# (exit status, combined stdout+stderr)
Runner = Callable[[Sequence[str]], tuple[int, str]]

EXIT_CODE_RE = re.compile(r"exit code: (-?\d+)")


class BackendNotDetected(Exception):
    pass


class BackendVersionError(BackendNotDetected):
    pass


class CommandFailed(Exception):
    def __init__(self, message: str, exit_code: int = 1, output: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


def run_probe(args: Sequence[str]) -> tuple[int, str]:
    try:
        proc = subprocess.run(list(args), capture_output=True, text=True, timeout=30)
    except (OSError, subprocess.TimeoutExpired) as e:
        return 127, str(e)
    return proc.returncode, (proc.stdout or "") + (proc.stderr or "")


@dataclass(frozen=True)
class Backend:
    base: tuple[str, ...]
    version_prefixes: tuple[str, ...]


# the standalone docker-compose v2 binary prints the same banner as the plugin
DOCKER_COMPOSE_PREFIXES = ("Docker Compose version ", "docker-compose version ")

COMPOSE_BACKENDS: tuple[Backend, ...] = (
    Backend(("docker", "compose"), DOCKER_COMPOSE_PREFIXES),
    Backend(("docker-compose",), DOCKER_COMPOSE_PREFIXES),
    Backend(("podman-compose",), ("podman-compose version ",)),
)

ENGINE_CLIS: tuple[tuple[str, ...], ...] = (("docker",), ("podman",))

VERSION_CORE_RE = re.compile(r"^v?(\d+\.\d+(?:\.\d+)?)(\S*)$")


@dataclass(frozen=True)
class RuntimeCommand:
    base: tuple[str, ...]
    version: Version

    @property
    def name(self) -> str:
        return " ".join(self.base)


def to_version(raw: str) -> Version:
    """Version from a semver-ish token (`v2.27.1-desktop.1`, `1.1.0rc2`).

    Suffixes that are not valid PEP 440 (build metadata, vendor tags) are dropped.
    """
    m = VERSION_CORE_RE.match(raw)
    if not m:
        raise BackendVersionError(f"Could not parse version {raw!r}")
    core, suffix = m.groups()
    try:
        return Version(core + suffix)
    except InvalidVersion:
        return Version(core)


def parse_version(output: str, prefixes: str | Sequence[str]) -> Version:
    """Version from the first output line starting with one of `prefixes`.

    Anything after the first comma is ignored (`1.29.2, build 5becea4c`).
    """
    if isinstance(prefixes, str):
        prefixes = (prefixes,)
    for line in output.splitlines():
        line = line.strip()
        prefix = next((p for p in prefixes if line.startswith(p)), None)
        if prefix is None:
            continue
        return to_version(line[len(prefix):].split(",", 1)[0].strip())
    names = " or ".join(repr(p.strip()) for p in prefixes)
    raise BackendVersionError(f"No version line starting with {names} in output")


def detect_compose(run: Runner = run_probe, candidates: Sequence[Backend] = COMPOSE_BACKENDS) -> RuntimeCommand:
    for backend in candidates:
        code, output = run([*backend.base, "version"])
        if code != 0:
            log.debug("Compose backend not available.", backend=" ".join(backend.base), exit_code=code)
            continue
        command = RuntimeCommand(base=tuple(backend.base), version=parse_version(output, backend.version_prefixes))
        log.info("Detected compose backend.", backend=command.name, version=str(command.version))
        return command
    raise BackendNotDetected("None of docker compose, docker-compose or podman-compose is installed")


def detect_engine_cli(run: Runner = run_probe, candidates: Sequence[tuple[str, ...]] = ENGINE_CLIS) -> tuple[str, ...]:
    for base in candidates:
        code, _ = run([*base, "ps"])
        if code == 0:
            return tuple(base)
    raise BackendNotDetected("Neither docker nor podman is usable")


@dataclass(frozen=True)
class FlagRule:
    kind: str  # append|prepend|remove
    command: str
    subcommand: str
    flag: str
    constraint: SpecifierSet | None = None

    def applies(self, command: RuntimeCommand, subcommand: str) -> bool:
        if command.name != self.command or subcommand != self.subcommand:
            return False
        return self.constraint is None or self.constraint.contains(command.version, prereleases=True)

    def apply(self, args: list[str]) -> list[str]:
        if self.kind == "append":
            return [*args, self.flag]
        if self.kind == "prepend":
            return [self.flag, *args]
        return [a for a in args if a != self.flag]


def _constraint(raw: str | None) -> SpecifierSet | None:
    return SpecifierSet(raw) if raw else None


def append_flag(command: str, subcommand: str, flag: str, constraint: str | None = None) -> FlagRule:
    return FlagRule("append", command, subcommand, flag, _constraint(constraint))


def prepend_flag(command: str, subcommand: str, flag: str, constraint: str | None = None) -> FlagRule:
    return FlagRule("prepend", command, subcommand, flag, _constraint(constraint))


def remove_flag(command: str, subcommand: str, flag: str, constraint: str | None = None) -> FlagRule:
    return FlagRule("remove", command, subcommand, flag, _constraint(constraint))


COMPOSE_RULES: tuple[FlagRule, ...] = (
    remove_flag("podman-compose", "down", "--remove-orphans"),
    prepend_flag("podman-compose", "up", "--verbose", ">=1.1.0"),
)


def build_command(command: RuntimeCommand, args: Sequence[str], rules: Sequence[FlagRule] = COMPOSE_RULES) -> list[str]:
    """Full argv: backend base followed by `args` adjusted by the matching rules.

    The subcommand is the first element of `args`. Rules run in order.
    """
    out = list(args)
    subcommand = out[0] if out else ""
    for rule in rules:
        if rule.applies(command, subcommand):
            out = rule.apply(out)
    return [*command.base, *out]


def exit_code_from_output(output: str) -> int | None:
    """Exit code of the last `exit code: <N>` marker, None if there is none."""
    codes = EXIT_CODE_RE.findall(output)
    return int(codes[-1]) if codes else None


def check_exit_code_marker(output: str) -> None:
    """podman-compose reports failures of sub-commands only in its output."""
    code = exit_code_from_output(output)
    if code:
        raise CommandFailed(f"Command failed with exit code {code}", exit_code=code, output=output)
