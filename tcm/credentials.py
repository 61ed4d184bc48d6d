from __future__ import annotations

import json
import os
import shutil
import subprocess
import tomllib
from dataclasses import dataclass
from typing import Mapping

from .docker_ops import AuthFunc
from .logging import get_logger

log = get_logger(__name__)


CREDENTIALS_SCRIPT = "registry-credentials"
MAX_REGISTRIES = 4


@dataclass(frozen=True)
class RegistryAuth:
    username: str = ""
    password: str = ""
    url: str = ""

    def is_set(self) -> bool:
        return bool(self.username and self.password)

    def auth_config(self) -> dict[str, str]:
        return {"username": self.username, "password": self.password}


def image_domain(image: str) -> str:
    """Registry host of an image reference, docker.io for short names."""
    first, sep, _ = image.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        return first
    return "docker.io"


def lookup_registry_auth(path: str, image: str, env: Mapping[str, str] | None = None) -> RegistryAuth:
    """Match the image's registry against the registry1..registry4 entries.

    Entries come from the TOML credentials file and may be overridden by
    CONTAINER_REGISTRY<N>_REPO/_USERNAME/_PASSWORD.
    """
    env = os.environ if env is None else env
    data: dict = {}
    if path and os.path.isfile(path):
        try:
            with open(path, "rb") as fp:
                data = tomllib.load(fp)
        except (OSError, tomllib.TOMLDecodeError) as e:
            log.warning("Could not read credentials file. Continuing anyway.", path=path, err=str(e))

    domain = image_domain(image)
    for i in range(1, MAX_REGISTRIES + 1):
        key = f"registry{i}"
        entry = data.get(key) or {}

        def value(name: str) -> str:
            return env.get(f"CONTAINER_{key.upper()}_{name.upper()}", str(entry.get(name, "")))

        repo, username = value("repo"), value("username")
        if username and repo.lower() == domain.lower():
            log.info("Found container registry credentials.", url=repo, username=username)
            return RegistryAuth(username=username, password=value("password"), url=repo)
    return RegistryAuth()


def credentials_from_script(image: str, refresh: bool = False, script: str = CREDENTIALS_SCRIPT) -> RegistryAuth:
    args = [script, "get", image]
    if refresh:
        args.append("--refresh")
    log.info("Executing credentials helper.", args=args)
    proc = subprocess.run(args, capture_output=True, text=True, timeout=60, check=True)
    data = json.loads(proc.stdout or "{}")
    return RegistryAuth(username=data.get("username", ""), password=data.get("password", ""))


def make_auth_func(credentials_path: str, image: str, script: str = CREDENTIALS_SCRIPT) -> AuthFunc:
    """Auth callback for pulls: static credentials, optionally replaced by the helper script.

    From the second attempt on the helper is asked to refresh cached credentials.
    """

    def auth(attempt: int) -> dict[str, str] | None:
        creds = lookup_registry_auth(credentials_path, image)
        if shutil.which(script):
            try:
                custom = credentials_from_script(image, refresh=attempt > 1, script=script)
            except (OSError, subprocess.SubprocessError, ValueError) as e:
                log.warning("Failed to get registry credentials from helper.", script=script, err=str(e))
            else:
                if custom.is_set():
                    log.info("Using registry credentials returned by a helper.", script=script, username=custom.username)
                    creds = custom
        if creds.is_set():
            log.info("Pulling image from private registry.", ref=image, username=creds.username)
            return creds.auth_config()
        return None

    return auth
