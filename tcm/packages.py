"""Software management plugin operations.

thin-edge.io installs "software modules" through plugins. Four are provided:
`container` (one container per module, the version is the image),
`container-group` (a compose project per module, the payload is a compose file
or an archive containing one), `container-image` (images without a
container, disabled by default) and `self` (updating the container the agent
runs in).
"""
from __future__ import annotations

import os
import shutil
import tarfile
import zipfile
from typing import Any

from docker.errors import DockerException

from .api_models import SoftwareModule, UpdateInfo
from .compose import ComposeRunner, find_compose_file, project_dir, read_images, write_version
from .db import Journal
from .docker_ops import ContainerNotFound, EngineClient, PullFailure
from .logging import get_logger
from .models import CONTAINER_TYPE, normalize_image_ref, short_image_name
from .orchestrator import Orchestrator, container_name
from .settings import Settings, SettingsError

log = get_logger(__name__)


SM_TYPE_SELF = "self"
SM_TYPE_CONTAINER = "container"
ACTION_INSTALL = "install"
ACTION_REMOVE = "remove"


class PackageError(Exception):
    pass


class ContainerPackages:
    def __init__(self, engine: EngineClient, orchestrator: Orchestrator, settings: Settings, journal: Journal | None = None):
        self.engine = engine
        self.orchestrator = orchestrator
        self.settings = settings
        self.journal = journal or Journal("")

    def install(self, name: str, version: str, file: str | None = None) -> str:
        """(Re)create container `name` from image `version`; returns the container id.

        With `file` the image is loaded from an archive instead of pulled. If
        the archive does not contain `version`, its first image is used.
        """
        image = version
        if file:
            log.info("Loading image from file.", file=file)
            refs = self.engine.load_image(file)
            if version not in refs:
                if not refs:
                    raise PackageError(f"No image found in file {file} (name={name}, version={version})")
                if len(refs) > 1:
                    log.warning("More than 1 image found in file, using the first one.", file=file, images=refs)
                image = refs[0]
                log.info("Module version not found in file, using the loaded image.", image=image, version=version)

        network = self.settings.network
        self.engine.ensure_network(network)
        if not file:
            self.orchestrator.pull(image)

        self.engine.stop_remove(name)
        config: dict[str, Any] = {
            "Image": image,
            "Labels": {},
            "HostConfig": {
                "PublishAllPorts": True,
                "RestartPolicy": {"Name": "always"},
                "NetworkMode": network,
            },
            "NetworkingConfig": {"EndpointsConfig": {network: {}}},
        }
        container_id = self.engine.create_from_config(config, name)
        self.engine.start(container_id)
        self.journal.log_event("INFO", f"Installed {image}", container=name)
        return container_id

    def remove(self, name: str) -> None:
        self.engine.stop_remove(name)
        self.journal.log_event("INFO", "Removed", container=name)

    def list(self) -> list[tuple[str, str]]:
        return [
            (item.name, normalize_image_ref(item.image))
            for item in self.engine.list(self.settings.filter_spec())
            if item.service_type == CONTAINER_TYPE
        ]

    def finalize(self) -> None:
        if not self.settings.prune_images:
            return
        report = self.engine.prune_unused_images()
        log.info("Pruned unused images.", deleted=len(report.get("ImagesDeleted") or []), reclaimed=report.get("SpaceReclaimed"))


def unpack_module(file: str, working_dir: str) -> bool:
    """Extract an archive into `working_dir`, or copy a plain compose file there.

    Returns True for archives (they may contain a build context).
    """
    if tarfile.is_tarfile(file):
        with tarfile.open(file) as tar:
            tar.extractall(working_dir, filter="data")
        return True
    if zipfile.is_zipfile(file):
        with zipfile.ZipFile(file) as zf:
            zf.extractall(working_dir)
        return True
    target = os.path.join(working_dir, "docker-compose.yaml")
    log.info("Copying file.", src=file, dst=target)
    shutil.copyfile(file, target)
    return False


class ContainerGroupPackages:
    def __init__(
        self,
        engine: EngineClient,
        compose: ComposeRunner,
        orchestrator: Orchestrator,
        settings: Settings,
        journal: Journal | None = None,
    ):
        self.engine = engine
        self.compose = compose
        self.orchestrator = orchestrator
        self.settings = settings
        self.journal = journal or Journal("")

    def install(self, project: str, version: str, file: str) -> None:
        working_dir = project_dir(self.settings.persistent_dir(), project)
        log.info("Creating project directory.", path=working_dir)
        os.makedirs(working_dir, exist_ok=True)

        build = unpack_module(file, working_dir)
        compose_file = find_compose_file(working_dir)
        if compose_file is None:
            raise PackageError(f"No compose file found in {working_dir}")

        for image in read_images(compose_file):
            try:
                self.orchestrator.pull(image)
            except PullFailure as e:
                # compose may still be able to pull or build it
                log.warning("Error whilst pulling images. Trying to proceed anyway.", image=image, err=str(e))

        self.engine.ensure_network(self.settings.network)
        self.compose.up(project, working_dir, build=build)

        log.info("Writing version file.", dir=working_dir, version=version)
        write_version(working_dir, version)
        self.journal.log_event("INFO", f"Installed version {version}", project=project)

    def remove(self, project: str) -> None:
        self.compose.down(project, project_dir(self.settings.persistent_dir(), project))
        self.journal.log_event("INFO", "Removed", project=project)

    def list(self) -> list[tuple[str, str]]:
        try:
            base = self.settings.persistent_dir()
        except SettingsError:
            base = ""
        return self.compose.list_projects(base)


def split_image_tag(tag: str) -> tuple[str, str]:
    """`registry:5000/app:1.0` -> (`registry:5000/app`, `1.0`); the version may be empty."""
    name, sep, version = tag.rpartition(":")
    if not sep or "/" in version:
        return tag, ""
    return name, version


class ImagePackages:
    """Images as software modules: the name is the repository, the version the tag."""

    def __init__(self, engine: EngineClient, orchestrator: Orchestrator, journal: Journal | None = None):
        self.engine = engine
        self.orchestrator = orchestrator
        self.journal = journal or Journal("")

    @staticmethod
    def reference(name: str, version: str = "") -> str:
        return f"{name}:{version}" if version else name

    def install(self, name: str, version: str = "", file: str | None = None) -> None:
        if file:
            log.info("Loading image from file.", file=file)
            refs = self.engine.load_image(file)
            if not refs:
                raise PackageError(f"No image found in file {file} (name={name}, version={version})")
            self.journal.log_event("INFO", f"Loaded {', '.join(refs)}")
            return
        self.orchestrator.pull(self.reference(name, version))

    def remove(self, name: str, version: str = "") -> None:
        ref = self.reference(name, version)
        if self.engine.remove_image(ref):
            self.journal.log_event("INFO", f"Removed image {ref}")

    def list(self) -> list[tuple[str, str]]:
        modules: list[tuple[str, str]] = []
        for image in self.engine.list_images():
            for tag in image.get("RepoTags") or []:
                if tag == "<none>:<none>":
                    continue
                modules.append(split_image_tag(tag))
        return modules


def check_self_update(update_list: list[SoftwareModule], self_name: str) -> UpdateInfo | None:
    """Pick a self update out of an update list.

    The self container may be updated either through the `self` type or a
    `container` module with the same name; the latter is removed from the
    returned list. Removing the self container is refused.
    """
    match: UpdateInfo | None = None
    remaining: list[SoftwareModule] = []
    for module in update_list:
        if module.type == SM_TYPE_SELF:
            for item in module.modules:
                if item.action == ACTION_INSTALL and match is None:
                    match = UpdateInfo(container_name=item.name, image=item.version)
            continue
        if module.type == SM_TYPE_CONTAINER:
            others = []
            for item in module.modules:
                if self_name and item.name == self_name:
                    if item.action == ACTION_REMOVE:
                        raise PackageError(f"The agent's own container cannot be removed (name={item.name})")
                    if item.action == ACTION_INSTALL and match is None:
                        match = UpdateInfo(container_name=item.name, image=item.version)
                else:
                    others.append(item)
            if others:
                remaining.append(SoftwareModule(type=module.type, modules=others))
            continue
        remaining.append(module)

    if match is None:
        return None
    return match.model_copy(update={"update_list": remaining})


class SelfPackages:
    def __init__(self, engine: EngineClient):
        self.engine = engine

    def current(self) -> tuple[str, str]:
        info = self.engine.get_self()
        return container_name(info), short_image_name((info.get("Config") or {}).get("Image", ""))

    def check(self, update_list: list[SoftwareModule], container_name_hint: str = "") -> UpdateInfo | None:
        name = container_name_hint
        try:
            name = self.current()[0]
        except (ContainerNotFound, DockerException) as e:
            log.info("Could not find the current container.", err=str(e))
        return check_self_update(update_list, name)
