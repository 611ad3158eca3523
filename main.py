from __future__ import annotations

import secrets
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from acp import __version__
from acp.api_models import (
    AbortRequest,
    DeployRequest,
    HealthReportRequest,
    InboundPacketRequest,
    OpenSessionRequest,
    PublishRequest,
    RollbackRequest,
    RouteEntryRequest,
    RouteQuery,
    VerificationRequest,
    WorkloadRequest,
)
from acp.errors import OK, CapacityExceeded, ConflictingRollout, ControlPlaneError, InvalidArtifactRef, NoBackendAvailable
from acp.external import CachedCredentials, DockerImagePublisher, EnvCredentialProvider, ImagePublisher
from acp.models import Request as RoutedRequest, SessionHandle
from acp.plane import ControlPlane


security = HTTPBasic(auto_error=False)


def _http_status(err: ControlPlaneError) -> int:
    if isinstance(err, ConflictingRollout):
        return status.HTTP_409_CONFLICT
    if isinstance(err, NoBackendAvailable):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(err, CapacityExceeded):
        return status.HTTP_429_TOO_MANY_REQUESTS
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(plane: ControlPlane | None = None, publisher: ImagePublisher | None = None) -> FastAPI:
    """Build the operator API. Without ``plane`` one is created from settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.plane is None:
            app.state.plane = ControlPlane()
        if app.state.plane.background:
            app.state.plane.start()
        yield
        app.state.plane.stop()

    app = FastAPI(title="Availability Control Plane", version=__version__, lifespan=lifespan)
    app.state.plane = plane
    app.state.publisher = publisher

    def get_plane(request: Request) -> ControlPlane:
        return request.app.state.plane

    def require_operator(
        request: Request, credentials: HTTPBasicCredentials | None = Depends(security)
    ) -> str | None:
        cfg = request.app.state.plane.cfg
        if not (cfg.admin_user and cfg.admin_password):
            return None
        if credentials is None or not (
            secrets.compare_digest(credentials.username, cfg.admin_user)
            and secrets.compare_digest(credentials.password, cfg.admin_password)
        ):
            raise HTTPException(status_code=401, detail="Invalid credentials", headers={"WWW-Authenticate": "Basic"})
        return credentials.username

    @app.exception_handler(ControlPlaneError)
    async def control_plane_error(request: Request, exc: ControlPlaneError) -> JSONResponse:
        headers = {"Retry-After": "1"} if exc.retryable else None
        return JSONResponse(
            status_code=_http_status(exc),
            content={"code": exc.code, "error": type(exc).__name__, "detail": str(exc), "retryable": exc.retryable},
            headers=headers,
        )

    @app.exception_handler(KeyError)
    async def not_found(request: Request, exc: KeyError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"code": None, "error": type(exc).__name__, "detail": str(exc.args[0] if exc.args else exc)})

    @app.exception_handler(InvalidArtifactRef)
    async def invalid_ref(request: Request, exc: InvalidArtifactRef) -> JSONResponse:
        return JSONResponse(status_code=422, content={"code": None, "error": "InvalidArtifactRef", "detail": str(exc)})

    @app.exception_handler(ValueError)
    async def invalid_value(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"code": None, "error": type(exc).__name__, "detail": str(exc)})

    @app.get("/health")
    def health() -> dict:
        return {"status": "healthy"}

    @app.get("/status")
    def plane_status(plane: ControlPlane = Depends(get_plane)) -> dict:
        return {"code": OK, **plane.status()}

    # -- workloads / rollouts ---------------------------------------------

    @app.post("/workloads")
    def add_workload(body: WorkloadRequest, plane: ControlPlane = Depends(get_plane), _: str | None = Depends(require_operator)) -> dict:
        orch = plane.add_workload(body.name, route=body.route)
        return {"code": OK, "status": orch.status().to_dict()}

    @app.get("/workloads")
    def list_workloads(plane: ControlPlane = Depends(get_plane)) -> dict:
        return {"code": OK, "workloads": [o.status().to_dict() for o in plane.workloads()]}

    @app.post("/workloads/{name}/deploy")
    def deploy(name: str, body: DeployRequest, plane: ControlPlane = Depends(get_plane), _: str | None = Depends(require_operator)) -> dict:
        st = plane.workload(name).deploy_artifact(body.artifact_ref, body.desired_count, body.revision_id)
        return {"code": OK, "status": st.to_dict()}

    @app.post("/workloads/{name}/abort")
    def abort(name: str, body: AbortRequest | None = None, plane: ControlPlane = Depends(get_plane), _: str | None = Depends(require_operator)) -> dict:
        st = plane.workload(name).abort((body or AbortRequest()).reason)
        return {"code": OK, "status": st.to_dict()}

    @app.get("/workloads/{name}/status")
    def workload_status(name: str, plane: ControlPlane = Depends(get_plane)) -> dict:
        return {"code": OK, "status": plane.workload(name).status().to_dict()}

    @app.post("/workloads/{name}/rollback")
    def rollback(name: str, body: RollbackRequest, plane: ControlPlane = Depends(get_plane), _: str | None = Depends(require_operator)) -> dict:
        st = plane.workload(name).rollback(body.to_revision)
        return {"code": OK, "status": st.to_dict()}

    @app.post("/workloads/{name}/verification")
    def verification(name: str, body: VerificationRequest, plane: ControlPlane = Depends(get_plane), _: str | None = Depends(require_operator)) -> dict:
        st = plane.workload(name).report_verification(body.passed, body.reason)
        return {"code": OK, "status": st.to_dict()}

    @app.get("/workloads/{name}/revisions")
    def revisions(name: str, plane: ControlPlane = Depends(get_plane)) -> dict:
        return {"code": OK, "revisions": [r.to_dict() for r in plane.workload(name).revisions()]}

    # -- zones / routing ---------------------------------------------------

    @app.get("/zones")
    def zones(plane: ControlPlane = Depends(get_plane)) -> dict:
        return {"code": OK, "zones": [{"id": z.id, "status": z.status.value, "egress_address": z.egress_address} for z in plane.zones.zones()]}

    @app.post("/zones/{zone_id}/restore")
    def restore_zone(zone_id: str, plane: ControlPlane = Depends(get_plane), _: str | None = Depends(require_operator)) -> dict:
        z = plane.zones.restore(zone_id)
        return {"code": OK, "zone": {"id": z.id, "status": z.status.value}}

    @app.get("/routes")
    def routes(plane: ControlPlane = Depends(get_plane)) -> dict:
        return {"code": OK, "routes": [{"pattern": e.pattern, "tier": e.target_tier} for e in plane.routes.entries()]}

    @app.post("/routes")
    def add_route(body: RouteEntryRequest, plane: ControlPlane = Depends(get_plane), _: str | None = Depends(require_operator)) -> dict:
        e = plane.routes.add(body.pattern, body.tier)
        return {"code": OK, "route": {"pattern": e.pattern, "tier": e.target_tier}}

    @app.post("/route")
    def route(body: RouteQuery, plane: ControlPlane = Depends(get_plane)) -> dict:
        b = plane.router.route(RoutedRequest(host=body.host, path=body.path))
        return {"code": OK, "backend": b.to_dict(), "in_flight": plane.router.in_flight(b.id)}

    @app.post("/route/{backend_id}/release")
    def release(backend_id: str, plane: ControlPlane = Depends(get_plane)) -> dict:
        return {"code": OK, "in_flight": plane.router.release(backend_id)}

    # -- backends / health -------------------------------------------------

    @app.get("/backends")
    def backends(plane: ControlPlane = Depends(get_plane)) -> dict:
        return {"code": OK, "backends": [b.to_dict() for b in plane.inventory.backends()]}

    @app.post("/backends/{backend_id}/health")
    def report_health(backend_id: str, body: HealthReportRequest, plane: ControlPlane = Depends(get_plane)) -> dict:
        h = plane.registry.report(backend_id, body.result, detail=body.detail)
        return {"code": OK, "backend_id": backend_id, "health": h.value}

    # -- NAT ---------------------------------------------------------------

    @app.post("/nat/sessions")
    def open_session(body: OpenSessionRequest, plane: ControlPlane = Depends(get_plane)) -> dict:
        h = plane.tracker.open(body.backend_id, (body.host, body.port))
        return {"code": OK, "session": {"id": h.id, "zone_id": h.zone_id, "egress_port": h.egress_port}}

    @app.get("/nat/sessions")
    def list_sessions(zone_id: str | None = None, plane: ControlPlane = Depends(get_plane)) -> dict:
        return {"code": OK, "sessions": [s.to_dict() for s in plane.tracker.sessions(zone_id)], "stats": plane.tracker.stats()}

    @app.delete("/nat/sessions/{zone_id}/{session_id}")
    def close_session(zone_id: str, session_id: str, plane: ControlPlane = Depends(get_plane)) -> dict:
        closed = plane.tracker.close(SessionHandle(id=session_id, zone_id=zone_id, egress_port=0))
        return {"code": OK, "closed": closed}

    @app.post("/nat/inbound")
    def inbound(body: InboundPacketRequest, plane: ControlPlane = Depends(get_plane)) -> dict:
        backend_id = plane.tracker.deliver_inbound(body.zone_id, body.egress_port, (body.source_host, body.source_port))
        return {"code": OK, "delivered": backend_id is not None, "backend_id": backend_id}

    # -- artifacts / events ------------------------------------------------

    @app.post("/publish")
    def publish(body: PublishRequest, request: Request, _: str | None = Depends(require_operator)) -> dict:
        pub = request.app.state.publisher
        if pub is None:
            cfg = request.app.state.plane.cfg
            creds = CachedCredentials(EnvCredentialProvider(cfg)) if cfg.registry_user else None
            pub = request.app.state.publisher = DockerImagePublisher(creds)
        return {"code": OK, "artifact_ref": pub.publish(body.source_ref)}

    @app.get("/events")
    def events(limit: int = 100, entity_id: str | None = None, plane: ControlPlane = Depends(get_plane)) -> dict:
        limit = max(1, min(1000, int(limit)))
        return {"code": OK, "events": plane.events.latest(limit, entity_id=entity_id)}

    return app


app = create_app()
