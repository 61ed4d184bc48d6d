from __future__ import annotations

import threading

from docker.errors import DockerException
from fastapi import FastAPI, HTTPException, Query
import uvicorn

from .api_models import ContainerOut, EventOut, HealthOut, RefreshRequest, RefreshResponse
from .db import Journal
from .docker_ops import EngineClient
from .models import FilterSpec
from .reconciler import Reconciler


def create_app(reconciler: Reconciler, engine: EngineClient, journal: Journal, base_filter: FilterSpec | None = None) -> FastAPI:
    """Local control API of the agent (status, container list, manual refresh)."""
    base_filter = base_filter or FilterSpec()
    app = FastAPI(title="tedge container manager", docs_url=None, redoc_url=None)

    @app.get("/health", response_model=HealthOut)
    def health() -> HealthOut:
        engine_ok = engine.available()
        return HealthOut(status="up" if engine_ok else "degraded", engine=engine_ok)

    @app.get("/containers", response_model=list[ContainerOut])
    def containers() -> list[ContainerOut]:
        try:
            items = engine.list(base_filter)
        except DockerException as e:
            raise HTTPException(status_code=503, detail=f"Container engine unavailable: {e}")
        return [
            ContainerOut(
                id=i.id,
                name=i.name,
                service_type=i.service_type,
                status=i.status,
                image=i.image,
                project=i.project_name,
            )
            for i in items
        ]

    @app.post("/refresh", response_model=RefreshResponse)
    def refresh(req: RefreshRequest | None = None) -> RefreshResponse:
        req = req or RefreshRequest()
        spec = FilterSpec(
            names=tuple(req.names) or base_filter.names,
            labels=tuple(req.labels) or base_filter.labels,
            types=base_filter.types,
            exclude_names=base_filter.exclude_names,
            exclude_with_label=base_filter.exclude_with_label,
        )
        try:
            result = reconciler.update(spec)
        except Exception as e:
            raise HTTPException(status_code=502, detail=f"{type(e).__name__}: {e}")
        return RefreshResponse(**result.__dict__)

    @app.get("/events", response_model=list[EventOut])
    def events(limit: int = Query(50, ge=1, le=1000)) -> list[EventOut]:
        return [EventOut(**row) for row in journal.latest_dicts(limit)]

    return app


def serve(app: FastAPI, host: str, port: int) -> threading.Thread:
    """Run the API with uvicorn on a daemon thread."""
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning"))
    thr = threading.Thread(target=server.run, name="api", daemon=True)
    thr.start()
    return thr
