from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_opt_bool(name: str) -> bool | None:
    raw = os.getenv(name)
    if raw is None:
        return None
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    items = tuple(x.strip() for x in raw.split(",") if x.strip())
    return items or default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("ACP_DB_PATH", "acp.db")
    zones: tuple[str, ...] = _env_list("ACP_ZONES", ("zone-a", "zone-b", "zone-c"))
    poll_interval_s: float = _env_float("ACP_POLL_INTERVAL_S", 5.0)

    # Health
    ready_passes: int = _env_int("ACP_READY_PASSES", 3)
    unready_fails: int = _env_int("ACP_UNREADY_FAILS", 2)
    pass_window_s: float = _env_float("ACP_PASS_WINDOW_S", 60.0)
    health_timeout_s: float = _env_float("ACP_HEALTH_TIMEOUT_S", 2.0)
    health_path: str = os.getenv("ACP_HEALTH_PATH", "/health")
    # Unset means "probe when backends are real containers".
    probe_enabled: bool | None = _env_opt_bool("ACP_PROBE_ENABLED")

    # Failure domains
    degraded_threshold: float = _env_float("ACP_DEGRADED_THRESHOLD", 0.5)
    unreachable_grace_s: float = _env_float("ACP_UNREACHABLE_GRACE_S", 60.0)

    # NAT
    max_sessions_per_zone: int = _env_int("ACP_MAX_SESSIONS_PER_ZONE", 1024)
    nat_idle_timeout_s: float = _env_float("ACP_NAT_IDLE_TIMEOUT_S", 300.0)
    nat_sweep_interval_s: float = _env_float("ACP_NAT_SWEEP_INTERVAL_S", 30.0)
    nat_port_base: int = _env_int("ACP_NAT_PORT_BASE", 20000)

    # Rollouts
    step_percent: int = _env_int("ACP_STEP_PERCENT", 25)
    hold_interval_s: float = _env_float("ACP_HOLD_INTERVAL_S", 30.0)
    verify_threshold: float = _env_float("ACP_VERIFY_THRESHOLD", 1.0)
    rollout_timeout_s: float = _env_float("ACP_ROLLOUT_TIMEOUT_S", 600.0)
    placement_attempts: int = _env_int("ACP_PLACEMENT_ATTEMPTS", 5)
    placement_backoff_s: float = _env_float("ACP_PLACEMENT_BACKOFF_S", 0.5)
    drain_timeout_s: float = _env_float("ACP_DRAIN_TIMEOUT_S", 30.0)

    # Backends
    launcher: str = os.getenv("ACP_LAUNCHER", "memory")  # memory|docker
    docker_network: str = os.getenv("ACP_DOCKER_NETWORK", "acp")
    backend_port: int = _env_int("ACP_BACKEND_PORT", 8080)

    # Registry credentials (optional)
    registry_user: str | None = os.getenv("ACP_REGISTRY_USER")
    registry_password: str | None = os.getenv("ACP_REGISTRY_PASSWORD")
    registry_url: str | None = os.getenv("ACP_REGISTRY_URL")
    credential_ttl_s: float = _env_float("ACP_CREDENTIAL_TTL_S", 900.0)

    # Operator API basic auth (disabled unless both are set)
    admin_user: str | None = os.getenv("ACP_ADMIN_USER")
    admin_password: str | None = os.getenv("ACP_ADMIN_PASSWORD")

    # Email alerting (optional)
    enable_email: bool = _env_bool("ACP_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("ACP_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("ACP_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("ACP_SMTP_USER")
    smtp_password: str | None = os.getenv("ACP_SMTP_PASSWORD")
    email_from: str | None = os.getenv("ACP_EMAIL_FROM")
    email_to: str | None = os.getenv("ACP_EMAIL_TO")

    def __post_init__(self) -> None:
        if self.probe_enabled is None:
            object.__setattr__(self, "probe_enabled", self.launcher == "docker")


settings = Settings()
