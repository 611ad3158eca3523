from __future__ import annotations

import re
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Protocol

import docker
from docker.errors import DockerException

from .errors import InvalidArtifactRef, TransientPlacementFailure
from .settings import Settings, settings as default_settings


# name[:tag]@sha256:<64 hex>. A tag alone is mutable and never deployable.
IMMUTABLE_REF_RE = re.compile(r"^[a-z0-9][a-z0-9._/:\-]*@sha256:[0-9a-f]{64}$")


def is_immutable_ref(ref: str) -> bool:
    return bool(IMMUTABLE_REF_RE.match(ref or ""))


def require_immutable_ref(ref: str) -> str:
    if not is_immutable_ref(ref):
        raise InvalidArtifactRef(f"'{ref}' is not a digest-pinned artifact reference (expected name@sha256:<digest>).")
    return ref


@dataclass(frozen=True)
class Credentials:
    username: str
    secret: str
    expires_at: float

    def expired(self, now: float, skew_s: float = 0.0) -> bool:
        return now + skew_s >= self.expires_at


class CredentialProvider(Protocol):
    def acquire(self) -> Credentials: ...


class EnvCredentialProvider:
    """Registry credentials from ACP_REGISTRY_USER / ACP_REGISTRY_PASSWORD."""

    def __init__(self, cfg: Settings | None = None, clock: Callable[[], float] = time.time) -> None:
        self.cfg = cfg or default_settings
        self.clock = clock

    def acquire(self) -> Credentials:
        if not (self.cfg.registry_user and self.cfg.registry_password):
            raise LookupError("ACP_REGISTRY_USER / ACP_REGISTRY_PASSWORD are not set.")
        return Credentials(
            username=self.cfg.registry_user,
            secret=self.cfg.registry_password,
            expires_at=self.clock() + self.cfg.credential_ttl_s,
        )


class CachedCredentials:
    """Hands out credentials, re-acquiring before (never after) they expire."""

    def __init__(self, provider: CredentialProvider, skew_s: float = 30.0, clock: Callable[[], float] = time.time) -> None:
        self.provider = provider
        self.skew_s = skew_s
        self.clock = clock
        self._lock = Lock()
        self._current: Credentials | None = None

    def get(self) -> Credentials:
        with self._lock:
            if self._current is None or self._current.expired(self.clock(), self.skew_s):
                creds = self.provider.acquire()
                if creds.expired(self.clock()):
                    raise LookupError("Credential provider returned already expired credentials.")
                self._current = creds
            return self._current


class ImagePublisher(Protocol):
    def publish(self, source_ref: str) -> str:
        """Return an immutable artifact_ref for ``source_ref``."""


class DockerImagePublisher:
    """Resolve a source image reference to its registry digest.

    Pulls ``source_ref`` (authenticated when credentials are configured) and
    returns the ``repo@sha256:...`` form, so a rollout always reproduces the
    same bits even if the tag moves later.
    """

    def __init__(self, credentials: CachedCredentials | None = None, client: docker.DockerClient | None = None) -> None:
        self.credentials = credentials
        self._client = client

    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def publish(self, source_ref: str) -> str:
        if is_immutable_ref(source_ref):
            return source_ref
        auth = None
        if self.credentials is not None:
            creds = self.credentials.get()
            auth = {"username": creds.username, "password": creds.secret}
        try:
            image = self.client().images.pull(source_ref, auth_config=auth)
        except DockerException as e:
            raise TransientPlacementFailure(f"Could not pull '{source_ref}': {e}") from e

        repo = source_ref.rsplit("@", 1)[0]
        if ":" in repo.rsplit("/", 1)[-1]:
            repo = repo.rsplit(":", 1)[0]
        for digest_ref in image.attrs.get("RepoDigests") or []:
            if digest_ref.split("@", 1)[0] == repo:
                return require_immutable_ref(digest_ref)
        raise InvalidArtifactRef(f"Registry returned no digest for '{source_ref}'.")
