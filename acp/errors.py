from __future__ import annotations


OK = 0


class ControlPlaneError(Exception):
    """Base class for errors surfaced to operators and callers."""

    code: int | None = None
    retryable: bool = False


class ConflictingRollout(ControlPlaneError):
    code = 1


class NoBackendAvailable(ControlPlaneError):
    code = 2
    retryable = True


class ServiceUnavailable(NoBackendAvailable):
    """Every zone is Unreachable. Retrying will not help until a zone recovers."""

    retryable = False


class CapacityExceeded(ControlPlaneError):
    code = 3
    retryable = True


class TransientPlacementFailure(ControlPlaneError):
    retryable = True


class ZoneUnreachable(TransientPlacementFailure):
    pass


class HealthCheckTimeout(ControlPlaneError):
    pass


class InvalidArtifactRef(ValueError):
    pass


class UnknownBackend(KeyError):
    pass


class UnknownRevision(KeyError):
    pass


class UnknownWorkload(KeyError):
    pass
