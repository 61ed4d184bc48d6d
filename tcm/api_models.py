from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


# thin-edge.io software update list (self plugin `check`)


class SoftwareItem(BaseModel):
    name: str = ""
    version: str = ""
    url: str = ""
    action: str = Field("", description="install|remove")


class SoftwareModule(BaseModel):
    type: str = ""
    modules: list[SoftwareItem] = Field(default_factory=list)


class UpdateInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    container_name: str = Field("", alias="containerName")
    image: str = ""
    update_list: list[SoftwareModule] = Field(default_factory=list, alias="updateList")


# Control API


class RefreshRequest(BaseModel):
    names: list[str] = Field(default_factory=list, description="Container name patterns; empty = full pass")
    labels: list[str] = Field(default_factory=list)


class RefreshResponse(BaseModel):
    registered: list[str]
    updated: list[str]
    deregistered: list[str]
    errors: list[str]


class ContainerOut(BaseModel):
    id: str
    name: str
    service_type: str
    status: str
    image: str
    project: str = ""


class EventOut(BaseModel):
    id: int
    ts: str
    level: str
    container: str | None = None
    project: str | None = None
    message: str


class HealthOut(BaseModel):
    status: str
    engine: bool
