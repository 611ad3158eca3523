from __future__ import annotations

import secrets
import time
from dataclasses import replace
from threading import Event, RLock, Thread
from typing import Callable

from .db import EventLog
from .errors import ConflictingRollout, TransientPlacementFailure, UnknownRevision
from .external import require_immutable_ref
from .gateway import TrafficRouter
from .health import HealthRegistry
from .launcher import BackendLauncher
from .models import Backend, Health, Revision, RolloutPhase, RolloutState
from .nat import ConnectionTracker
from .runtime import Inventory
from .settings import Settings, settings as default_settings
from .zones import FailureDomainManager


class ReleaseOrchestrator:
    """Drives one workload's revision rollouts.

    Stable -> RollingOut -> Verifying -> Stable, with RollingBack -> Stable on
    any failure. All RolloutState changes happen under one lock; the step loop
    and operator calls (deploy/abort/rollback) serialize on it.

    ``advance`` performs one evaluation of the state machine and never sleeps,
    so it can be driven by the background step loop or called directly.
    """

    def __init__(
        self,
        workload: str,
        inventory: Inventory,
        registry: HealthRegistry,
        zones: FailureDomainManager,
        router: TrafficRouter,
        tracker: ConnectionTracker,
        launcher: BackendLauncher,
        events: EventLog,
        cfg: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        background: bool = True,
    ) -> None:
        self.workload = workload
        self.inventory = inventory
        self.registry = registry
        self.zones = zones
        self.router = router
        self.tracker = tracker
        self.launcher = launcher
        self.events = events
        self.cfg = cfg or default_settings
        self.clock = clock
        self.sleep = sleep
        self.background = background

        self.step_percent = max(1, min(100, int(self.cfg.step_percent)))

        self._lock = RLock()
        self._state = RolloutState(workload=workload)
        self._revisions: dict[str, Revision] = {}
        self._history: list[str] = []
        self._terminating: dict[str, float] = {}  # backend_id -> since
        self._last_shift_at: float | None = None
        self._seq = 0
        self._wake = Event()
        self._thr: Thread | None = None

        registry.subscribe(self._on_health)

    @property
    def entity_id(self) -> str:
        return f"rollout/{self.workload}"

    # -- revisions ---------------------------------------------------------

    def new_revision(self, artifact_ref: str, desired_count: int, revision_id: str | None = None) -> Revision:
        require_immutable_ref(artifact_ref)
        if int(desired_count) < 1:
            raise ValueError("desired_count must be at least 1.")
        with self._lock:
            if revision_id is None:
                while True:
                    self._seq += 1
                    revision_id = f"r{self._seq}"
                    if revision_id not in self._revisions:
                        break
            return Revision(id=revision_id, workload=self.workload, artifact_ref=artifact_ref, desired_count=int(desired_count))

    def revisions(self) -> list[Revision]:
        with self._lock:
            return [self._revisions[rid] for rid in self._history]

    def get_revision(self, revision_id: str) -> Revision:
        with self._lock:
            rev = self._revisions.get(revision_id)
        if rev is None:
            raise UnknownRevision(revision_id)
        return rev

    def _register(self, revision: Revision) -> None:
        existing = self._revisions.get(revision.id)
        if existing is None:
            self._revisions[revision.id] = revision
            self._history.append(revision.id)
            return
        if (existing.artifact_ref, existing.desired_count) != (revision.artifact_ref, revision.desired_count):
            raise ValueError(f"Revision '{revision.id}' already exists with different content; revisions are immutable.")

    # -- operator commands -------------------------------------------------

    def status(self) -> RolloutState:
        with self._lock:
            st = self._state
            if st.target_revision:
                st.healthy_target_count = self._healthy_count(st.target_revision)
            return replace(st)

    def deploy(self, revision: Revision) -> RolloutState:
        require_immutable_ref(revision.artifact_ref)
        if revision.workload != self.workload:
            raise ValueError(f"Revision '{revision.id}' belongs to workload '{revision.workload}'.")

        with self._lock:
            st = self._state
            if st.phase is not RolloutPhase.STABLE:
                raise ConflictingRollout(
                    f"Workload '{self.workload}' is {st.phase.value} towards {st.target_revision}."
                )
            current = self._revisions.get(st.current_revision) if st.current_revision else None
            if current is not None and current.artifact_ref == revision.artifact_ref:
                self.events.log("INFO", f"Deploy of {revision.artifact_ref} is a no-op; already current", self.entity_id)
                return replace(st)

            self._register(revision)
            self._last_shift_at = None
            st.target_revision = revision.id
            st.started_at = self.clock()
            st.target_weight = 0
            st.healthy_target_count = 0
            self._apply_weights()
            self._transition(RolloutPhase.ROLLING_OUT, f"deploy {revision.id} ({revision.artifact_ref}) x{revision.desired_count}")

        try:
            self._place_all(revision)
        except TransientPlacementFailure as e:
            with self._lock:
                if self._is_rolling_out(revision.id):
                    self._begin_rollback(f"placement failed: {e}")

        self._start_loop()
        return self.status()

    def deploy_artifact(self, artifact_ref: str, desired_count: int, revision_id: str | None = None) -> RolloutState:
        return self.deploy(self.new_revision(artifact_ref, desired_count, revision_id))

    def abort(self, reason: str = "operator abort") -> RolloutState:
        with self._lock:
            if self._state.phase in (RolloutPhase.ROLLING_OUT, RolloutPhase.VERIFYING):
                self._begin_rollback(reason)
        return self.status()

    def report_verification(self, passed: bool, reason: str = "") -> RolloutState:
        """External verification signal for the in-flight rollout."""
        with self._lock:
            if not passed and self._state.phase in (RolloutPhase.ROLLING_OUT, RolloutPhase.VERIFYING):
                self._begin_rollback(f"verification failed: {reason or 'external check'}")
        return self.status()

    def rollback(self, to_revision: str) -> RolloutState:
        with self._lock:
            st = self._state
            if to_revision not in self._revisions:
                raise UnknownRevision(to_revision)
            if st.phase is not RolloutPhase.STABLE:
                if to_revision == st.current_revision:
                    if st.phase is not RolloutPhase.ROLLING_BACK:
                        self._begin_rollback(f"rollback to {to_revision}")
                    return self.status()
                raise ConflictingRollout(
                    f"Workload '{self.workload}' is {st.phase.value}; only a rollback to {st.current_revision} is allowed."
                )
            if to_revision == st.current_revision:
                return replace(st)
            revision = self._revisions[to_revision]
        return self.deploy(revision)

    # -- state machine -----------------------------------------------------

    def advance(self, now: float | None = None) -> RolloutPhase:
        now = self.clock() if now is None else now
        with self._lock:
            gone = self._reap_terminating(now)
            st = self._state

            if st.phase is RolloutPhase.ROLLING_OUT:
                target = self._revisions[st.target_revision]
                st.healthy_target_count = self._healthy_count(target.id)
                if st.healthy_target_count >= target.desired_count:
                    st.target_weight = min(100, self.step_percent)
                    self._last_shift_at = now
                    self._apply_weights()
                    self._transition(
                        RolloutPhase.VERIFYING,
                        f"{st.healthy_target_count}/{target.desired_count} Ready; weight {st.target_weight}%",
                    )
                    if st.target_weight >= 100:
                        self._promote()
                elif now - (st.started_at or now) > self.cfg.rollout_timeout_s:
                    self._begin_rollback(
                        f"only {st.healthy_target_count}/{target.desired_count} Ready after {self.cfg.rollout_timeout_s:.0f}s"
                    )

            elif st.phase is RolloutPhase.VERIFYING:
                target = self._revisions[st.target_revision]
                st.healthy_target_count = self._healthy_count(target.id)
                fraction = st.healthy_target_count / target.desired_count
                if fraction < self.cfg.verify_threshold:
                    self._begin_rollback(
                        f"target healthy fraction {fraction:.2f} below {self.cfg.verify_threshold:.2f}"
                    )
                elif self._last_shift_at is None or now - self._last_shift_at >= self.cfg.hold_interval_s:
                    st.target_weight = min(100, st.target_weight + self.step_percent)
                    self._last_shift_at = now
                    self._apply_weights()
                    self.events.log("INFO", f"Shifted {st.target_weight}% of traffic to {target.id}", self.entity_id)
                    if st.target_weight >= 100:
                        self._promote()

            elif st.phase is RolloutPhase.ROLLING_BACK:
                left = self.inventory.backends(workload=self.workload, revision_id=st.target_revision)
                if not left:
                    aborted = st.target_revision
                    st.target_revision = None
                    st.target_weight = 0
                    st.healthy_target_count = 0
                    self._transition(RolloutPhase.STABLE, f"rolled back from {aborted}; {st.current_revision} unchanged")

            phase = st.phase
        self._destroy(gone)
        return phase

    def reconcile(self, now: float | None = None) -> None:
        """While Stable, keep desired_count backends of the current revision in Healthy zones.

        Replacements go to Healthy zones. Surplus (for example after a zone
        recovers) is scaled down newest first.
        """
        now = self.clock() if now is None else now
        with self._lock:
            gone = self._reap_terminating(now)
            st = self._state
            if st.phase is not RolloutPhase.STABLE or st.current_revision is None:
                revision = None
            else:
                revision = self._revisions[st.current_revision]
                healthy = set(self.zones.healthy_zones())
                live = [
                    b
                    for b in self.inventory.backends(workload=self.workload, revision_id=revision.id)
                    if b.health is not Health.TERMINATING
                ]
                serving = [b for b in live if b.zone_id in healthy]
                missing = revision.desired_count - len(serving)
                if missing < 0:
                    newest_first = sorted(serving, key=lambda b: (b.created_at, b.id), reverse=True)
                    for b in newest_first[: -missing]:
                        self._terminate(b, "scale down")
        self._destroy(gone)
        if revision is None or missing <= 0:
            return

        load: dict[str, int] = {}
        for b in serving:
            load[b.zone_id] = load.get(b.zone_id, 0) + 1

        def still_current() -> bool:
            return self._state.phase is RolloutPhase.STABLE and self._state.current_revision == revision.id

        for _ in range(missing):
            try:
                b = self._place_one(revision, load, still_current)
            except TransientPlacementFailure as e:
                self.events.log("WARN", f"Replacement for {revision.id} not placed: {e}", self.entity_id)
                break
            if b is None:
                break
            load[b.zone_id] = load.get(b.zone_id, 0) + 1
            self.events.log("INFO", f"Placed replacement {b.id} in {b.zone_id}", self.entity_id)

    # -- internals ---------------------------------------------------------

    def _transition(self, phase: RolloutPhase, reason: str) -> None:
        # Caller holds self._lock.
        st = self._state
        old = st.phase
        st.phase = phase
        st.reason = reason
        level = "WARN" if phase is RolloutPhase.ROLLING_BACK else "INFO"
        self.events.transition(self.entity_id, old.value, phase.value, reason, level=level)
        self._wake.set()

    def _is_rolling_out(self, revision_id: str) -> bool:
        with self._lock:
            return self._state.phase is RolloutPhase.ROLLING_OUT and self._state.target_revision == revision_id

    def _healthy_count(self, revision_id: str) -> int:
        return len(self.registry.ready_ids(revision_id=revision_id, workload=self.workload))

    def _apply_weights(self) -> None:
        st = self._state
        weights: dict[str, int] = {}
        if st.current_revision:
            weights[st.current_revision] = 100 - st.target_weight
        if st.target_revision and st.target_weight > 0:
            weights[st.target_revision] = st.target_weight
        self.router.set_weights(self.workload, weights)

    def _place_all(self, revision: Revision) -> None:
        """Create desired_count backends, retrying each placement with backoff.

        Runs without holding the lock across launches or sleeps; stops early
        when the rollout is aborted in the meantime.
        """
        load: dict[str, int] = {}
        attempts = max(1, self.cfg.placement_attempts)
        for _ in range(revision.desired_count):
            last: TransientPlacementFailure | None = None
            for attempt in range(attempts):
                try:
                    b = self._place_one(revision, load, lambda: self._is_rolling_out(revision.id))
                    if b is None:
                        return
                    load[b.zone_id] = load.get(b.zone_id, 0) + 1
                    last = None
                    break
                except TransientPlacementFailure as e:
                    last = e
                    self.events.log("WARN", f"Placement attempt {attempt + 1}/{attempts} failed: {e}", self.entity_id)
                    if attempt + 1 < attempts:
                        self.sleep(self.cfg.placement_backoff_s * (2**attempt))
            if last is not None:
                raise TransientPlacementFailure(f"gave up after {attempts} attempts: {last}")

    def _place_one(self, revision: Revision, load: dict[str, int], wanted: Callable[[], bool]) -> Backend | None:
        """Pick a zone and launch one backend there.

        The launch runs outside the lock. ``wanted`` is checked before the
        zone is picked and again before the backend joins the inventory; a
        backend launched for a rollout that has since moved on is torn down
        and None is returned.
        """
        with self._lock:
            if not wanted():
                return None
            zone_id = self.zones.pick_zone(load)
            self.zones.admit(zone_id)
        backend = Backend(
            id=f"{self.workload}-{revision.id}-{secrets.token_hex(3)}",
            workload=self.workload,
            zone_id=zone_id,
            revision_id=revision.id,
        )
        backend.address = self.launcher.launch(backend, revision)
        with self._lock:
            if wanted():
                self.inventory.add_backend(backend)
                self.registry.track(backend)
                return backend
        self.launcher.terminate(backend)
        self.events.log("INFO", f"Discarded {backend.id}; {revision.id} is no longer wanted", self.entity_id)
        return None

    def _begin_rollback(self, reason: str) -> None:
        # Caller holds self._lock.
        st = self._state
        st.target_weight = 0
        self._apply_weights()
        for b in self.inventory.backends(workload=self.workload, revision_id=st.target_revision):
            self._terminate(b, f"rollback: {reason}")
        self._transition(RolloutPhase.ROLLING_BACK, reason)

    def _promote(self) -> None:
        # Caller holds self._lock.
        st = self._state
        old = st.current_revision
        if old:
            for b in self.inventory.backends(workload=self.workload, revision_id=old):
                self._terminate(b, f"superseded by {st.target_revision}")
        st.current_revision = st.target_revision
        st.target_revision = None
        st.target_weight = 0
        self.inventory.set_active(self.workload, st.current_revision)
        self._apply_weights()
        self._transition(RolloutPhase.STABLE, f"promoted {st.current_revision} (was {old})")

    def _terminate(self, b: Backend, reason: str) -> None:
        if b.id in self._terminating:
            return
        self.registry.mark_terminating(b.id, reason)
        b.health = Health.TERMINATING
        self._terminating[b.id] = self.clock()

    def _reap_terminating(self, now: float) -> list[tuple[Backend, str]]:
        """Drop drained Terminating backends (or those past the drain timeout) from the inventory.

        Caller holds self._lock and passes the result to ``_destroy`` once it is released.
        """
        gone: list[tuple[Backend, str]] = []
        for bid, since in list(self._terminating.items()):
            if self.inventory.in_flight(bid) > 0 and now - since < self.cfg.drain_timeout_s:
                continue
            self._terminating.pop(bid, None)
            b = self.inventory.remove_backend(bid)
            if b is None:
                continue
            self.tracker.close_backend(bid)
            self.registry.forget(bid)
            gone.append((b, f"drained after {now - since:.1f}s"))
        return gone

    def _destroy(self, gone: list[tuple[Backend, str]]) -> None:
        for b, reason in gone:
            self.launcher.terminate(b)
            self.events.transition(b.id, Health.TERMINATING.value, "Destroyed", reason)

    def _on_health(self, backend: Backend, old: Health, new: Health, reason: str) -> None:
        if backend.workload == self.workload:
            self._wake.set()

    # -- step loop ---------------------------------------------------------

    def _start_loop(self) -> None:
        if not self.background:
            return
        with self._lock:
            if self._thr is not None:
                self._wake.set()
                return
            self._thr = Thread(target=self._run, name=f"acp-rollout-{self.workload}", daemon=True)
            self._thr.start()

    def _run(self) -> None:
        while True:
            self._wake.clear()
            try:
                phase = self.advance()
            except Exception as e:
                self.events.log("ERROR", f"Rollout step failed: {type(e).__name__}: {e}", self.entity_id)
                phase = self.status().phase
            with self._lock:
                if phase is RolloutPhase.STABLE and not self._terminating and self._state.phase is RolloutPhase.STABLE:
                    # Cleared under the lock so a concurrent deploy starts a fresh loop.
                    self._thr = None
                    return
                wait = self._next_wait()
            self._wake.wait(wait)

    def _next_wait(self) -> float:
        poll = max(0.05, self.cfg.poll_interval_s)
        if self._state.phase is RolloutPhase.VERIFYING and self._last_shift_at is not None:
            remaining = self.cfg.hold_interval_s - (self.clock() - self._last_shift_at)
            return max(0.05, min(poll, remaining))
        return poll
