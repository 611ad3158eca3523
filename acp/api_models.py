from __future__ import annotations

from pydantic import BaseModel, Field

from .models import CheckResult


class WorkloadRequest(BaseModel):
    name: str = Field(..., description="Workload (tier) name, dns-safe")
    route: str | None = Field(None, description="Optional route pattern, e.g. api.example.com/v1 or /static")


class DeployRequest(BaseModel):
    artifact_ref: str = Field(..., description="Digest-pinned image, e.g. registry/app@sha256:<digest>")
    desired_count: int = Field(1, ge=1, le=100)
    revision_id: str | None = Field(None, description="Explicit revision id; generated when omitted")


class AbortRequest(BaseModel):
    reason: str = "operator abort"


class RollbackRequest(BaseModel):
    to_revision: str


class VerificationRequest(BaseModel):
    passed: bool
    reason: str = ""


class RouteEntryRequest(BaseModel):
    pattern: str
    tier: str


class RouteQuery(BaseModel):
    host: str = ""
    path: str = "/"


class HealthReportRequest(BaseModel):
    result: CheckResult
    detail: str = ""


class OpenSessionRequest(BaseModel):
    backend_id: str
    host: str
    port: int = Field(..., ge=1, le=65535)


class InboundPacketRequest(BaseModel):
    zone_id: str
    egress_port: int = Field(..., ge=1, le=65535)
    source_host: str
    source_port: int = Field(..., ge=1, le=65535)


class PublishRequest(BaseModel):
    source_ref: str = Field(..., description="Image reference to resolve, e.g. registry/app:1.4")
