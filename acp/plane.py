from __future__ import annotations

import time
from threading import Event, Lock, Thread
from typing import Callable

from .alerts import transition_alerter
from .db import EventLog
from .errors import UnknownWorkload
from .gateway import RouteTable, TrafficRouter
from .health import HealthProber, HealthRegistry
from .launcher import BackendLauncher, DockerLauncher, InMemoryLauncher, validate_workload_name
from .nat import ConnectionTracker, NatReaper
from .rollouts import ReleaseOrchestrator
from .runtime import Inventory
from .settings import Settings, settings as default_settings
from .zones import FailureDomainManager


class ControlPlane:
    """Wires every component together and runs the background loops.

    Loops: one health-evaluation loop (probe, then zone evaluation), one
    NAT-session reaper, one reconcile loop keeping Stable workloads at their
    desired size, plus one step loop per in-flight rollout.
    """

    def __init__(
        self,
        cfg: Settings | None = None,
        events: EventLog | None = None,
        launcher: BackendLauncher | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        background: bool = True,
    ) -> None:
        self.cfg = cfg or default_settings
        self.clock = clock
        self.sleep = sleep
        self.background = background
        self.events = events or EventLog(self.cfg.db_path)
        self.events.subscribe(transition_alerter(self.cfg))

        self.inventory = Inventory()
        self.registry = HealthRegistry(self.events, self.cfg, clock=clock)
        self.zones = FailureDomainManager(self.inventory, self.events, self.cfg, clock=clock)
        self.registry.subscribe(self.zones.health_listener)
        self.tracker = ConnectionTracker(self.inventory, self.events, self.cfg, clock=clock)
        self.routes = RouteTable()
        self.router = TrafficRouter(self.routes, self.inventory, self.registry, self.zones)

        if launcher is None:
            launcher = DockerLauncher(self.events, self.cfg) if self.cfg.launcher == "docker" else InMemoryLauncher(self.cfg.backend_port)
        self.launcher = launcher

        self.prober = HealthProber(self.inventory, self.registry, self.events, self.cfg, after_tick=self.zones.evaluate)
        self.reaper = NatReaper(self.tracker, self.events, self.cfg.nat_sweep_interval_s)

        self._lock = Lock()
        self._workloads: dict[str, ReleaseOrchestrator] = {}
        self._stop = Event()
        self._reconcile_thr: Thread | None = None

    # -- workloads ---------------------------------------------------------

    def add_workload(self, name: str, route: str | None = None) -> ReleaseOrchestrator:
        validate_workload_name(name)
        with self._lock:
            orch = self._workloads.get(name)
            if orch is None:
                orch = ReleaseOrchestrator(
                    name,
                    self.inventory,
                    self.registry,
                    self.zones,
                    self.router,
                    self.tracker,
                    self.launcher,
                    self.events,
                    self.cfg,
                    clock=self.clock,
                    sleep=self.sleep,
                    background=self.background,
                )
                self._workloads[name] = orch
                self.events.log("INFO", f"Registered workload '{name}'", orch.entity_id)
        if route:
            self.routes.add(route, name)
        return orch

    def workload(self, name: str) -> ReleaseOrchestrator:
        with self._lock:
            orch = self._workloads.get(name)
        if orch is None:
            raise UnknownWorkload(name)
        return orch

    def workloads(self) -> list[ReleaseOrchestrator]:
        with self._lock:
            return [self._workloads[k] for k in sorted(self._workloads)]

    def status(self) -> dict:
        return {
            "workloads": {o.workload: o.status().to_dict() for o in self.workloads()},
            "zones": [{"id": z.id, "status": z.status.value, "egress_address": z.egress_address} for z in self.zones.zones()],
            "nat": self.tracker.stats(),
        }

    # -- loops -------------------------------------------------------------

    def reconcile_once(self) -> None:
        self.zones.evaluate()
        for orch in self.workloads():
            orch.reconcile()

    def start(self) -> None:
        self._stop.clear()
        self.prober.start()
        self.reaper.start()
        if self._reconcile_thr and self._reconcile_thr.is_alive():
            return
        self._reconcile_thr = Thread(target=self._reconcile_loop, name="acp-reconcile", daemon=True)
        self._reconcile_thr.start()

    def stop(self) -> None:
        self._stop.set()
        self.prober.stop()
        self.reaper.stop()

    def _reconcile_loop(self) -> None:
        self.events.log("INFO", "Reconciler started")
        while not self._stop.wait(max(0.1, self.cfg.poll_interval_s)):
            try:
                self.reconcile_once()
            except Exception as e:
                self.events.log("ERROR", f"Reconciler tick failed: {type(e).__name__}: {e}")
