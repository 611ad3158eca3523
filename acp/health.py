from __future__ import annotations

import time
from dataclasses import dataclass, field
from threading import Event, Lock, Thread
from typing import Callable

import httpx

from .db import EventLog
from .errors import HealthCheckTimeout
from .models import Backend, CheckResult, Health
from .runtime import Inventory
from .settings import Settings, settings as default_settings


Listener = Callable[[Backend, Health, Health, str], None]


def check_health(url: str, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    """Call a backend health endpoint.

    Expected JSON: {"status": "healthy"}.
    Returns (is_healthy, message, latency_ms). Raises HealthCheckTimeout when the
    backend does not answer within ``timeout_s``.
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
    except httpx.TimeoutException as e:
        raise HealthCheckTimeout(f"{url} did not answer within {timeout_s}s") from e
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms

    latency_ms = round((time.time() - start) * 1000.0, 2)
    if resp.status_code != 200:
        return False, f"HTTP {resp.status_code}", latency_ms
    try:
        data = resp.json()
    except ValueError:
        return False, "Invalid JSON", latency_ms
    if isinstance(data, dict) and data.get("status") == "healthy":
        return True, "Healthy", latency_ms
    return False, f"Unhealthy payload: {data!r}", latency_ms


@dataclass
class _Tracked:
    backend: Backend
    lock: Lock = field(default_factory=Lock)
    pass_streak: int = 0
    fail_streak: int = 0
    last_pass_at: float | None = None


class HealthRegistry:
    """Consecutive-threshold readiness state per backend.

    Starting/Unready -> Ready after ``ready_passes`` consecutive passes, each
    within ``pass_window_s`` of the previous one. Ready -> Unready after
    ``unready_fails`` consecutive fails. Any fail restarts the pass count.
    Terminating backends ignore further reports.

    Each backend has its own lock, so reports for unrelated backends never
    serialize on each other.
    """

    def __init__(
        self,
        events: EventLog,
        cfg: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        cfg = cfg or default_settings
        self.events = events
        self.ready_passes = max(1, cfg.ready_passes)
        self.unready_fails = max(1, cfg.unready_fails)
        self.pass_window_s = cfg.pass_window_s
        self.clock = clock
        self._lock = Lock()
        self._tracked: dict[str, _Tracked] = {}
        self._listeners: list[Listener] = []

    def subscribe(self, fn: Listener) -> None:
        self._listeners.append(fn)

    def _get(self, backend_id: str) -> _Tracked | None:
        with self._lock:
            return self._tracked.get(backend_id)

    def track(self, backend: Backend) -> None:
        t = _Tracked(backend=backend)
        with self._lock:
            self._tracked[backend.id] = t
        with t.lock:
            self._set(t, Health.STARTING, "launched")

    def forget(self, backend_id: str) -> None:
        with self._lock:
            self._tracked.pop(backend_id, None)

    def status(self, backend_id: str) -> Health:
        t = self._get(backend_id)
        return t.backend.health if t else Health.UNKNOWN

    def report(self, backend_id: str, result: CheckResult, at: float | None = None, detail: str = "") -> Health:
        t = self._get(backend_id)
        if t is None:
            return Health.UNKNOWN
        now = self.clock() if at is None else at
        result = CheckResult(result)

        with t.lock:
            old = t.backend.health
            if old in (Health.TERMINATING, Health.UNKNOWN):
                return old

            new = old
            if result is CheckResult.PASS:
                t.fail_streak = 0
                if t.last_pass_at is not None and self.pass_window_s > 0 and now - t.last_pass_at > self.pass_window_s:
                    t.pass_streak = 0
                t.pass_streak += 1
                t.last_pass_at = now
                if old in (Health.STARTING, Health.UNREADY) and t.pass_streak >= self.ready_passes:
                    new = Health.READY
            else:
                t.pass_streak = 0
                t.last_pass_at = None
                t.fail_streak += 1
                if old is Health.READY and t.fail_streak >= self.unready_fails:
                    new = Health.UNREADY

            if new is not old:
                streak = t.pass_streak if new is Health.READY else t.fail_streak
                reason = f"{streak} consecutive {result.value}"
                if detail:
                    reason = f"{reason} ({detail})"
                self._set(t, new, reason)
            return t.backend.health

    def mark_terminating(self, backend_id: str, reason: str = "terminating") -> None:
        t = self._get(backend_id)
        if t is None:
            return
        with t.lock:
            if t.backend.health is not Health.TERMINATING:
                self._set(t, Health.TERMINATING, reason)

    def snapshot(self, zone_id: str) -> set[str]:
        """Ready backend ids in a zone, read at call time."""
        with self._lock:
            tracked = list(self._tracked.values())
        return {t.backend.id for t in tracked if t.backend.zone_id == zone_id and t.backend.health is Health.READY}

    def ready_ids(self, revision_id: str | None = None, workload: str | None = None) -> set[str]:
        with self._lock:
            tracked = list(self._tracked.values())
        out: set[str] = set()
        for t in tracked:
            b = t.backend
            if b.health is not Health.READY:
                continue
            if revision_id is not None and b.revision_id != revision_id:
                continue
            if workload is not None and b.workload != workload:
                continue
            out.add(b.id)
        return out

    def _set(self, t: _Tracked, new: Health, reason: str) -> None:
        # Caller holds t.lock; listeners run under it so one backend's
        # transitions are observed in order.
        old = t.backend.health
        t.backend.health = new
        self.events.transition(t.backend.id, old.value, new.value, reason)
        for fn in list(self._listeners):
            fn(t.backend, old, new, reason)


class HealthProber:
    """Health-evaluation loop: probes every live backend and reports the result."""

    def __init__(
        self,
        inventory: Inventory,
        registry: HealthRegistry,
        events: EventLog,
        cfg: Settings | None = None,
        probe: Callable[[str, float], tuple[bool, str, float | None]] = check_health,
        after_tick: Callable[[], None] | None = None,
    ) -> None:
        self.inventory = inventory
        self.registry = registry
        self.events = events
        self.cfg = cfg or default_settings
        self.probe = probe
        self.after_tick = after_tick
        self._stop = Event()
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="acp-health", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def _loop(self) -> None:
        self.events.log("INFO", "Health prober started")
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as e:
                self.events.log("ERROR", f"Health tick failed: {type(e).__name__}: {e}")
            self._stop.wait(max(0.1, self.cfg.poll_interval_s))

    def tick(self) -> None:
        if self.cfg.probe_enabled:
            for b in self.inventory.backends():
                if b.health is Health.TERMINATING or not b.address:
                    continue
                self.registry.report(b.id, *self._check(b))
        if self.after_tick:
            self.after_tick()

    def _check(self, b: Backend) -> tuple[CheckResult, float | None, str]:
        url = f"http://{b.address}{self.cfg.health_path}"
        try:
            ok, msg, _latency = self.probe(url, self.cfg.health_timeout_s)
        except HealthCheckTimeout as e:
            return CheckResult.FAIL, None, str(e)
        return (CheckResult.PASS if ok else CheckResult.FAIL), None, msg
