"""Reconciler: the level-triggered control loop.

Each pass over an identity:
1. reads the freshest desired record (store) and observed record (cache)
2. computes a plan with the diff/plan engine
3. executes the first batch of the plan against the backend
4. waits until the cache reflects its own writes
5. writes status back to the store and requeues while work remains

Nothing replays the event that caused the enqueue; the plan is re-derived
from current state every time, so a missed or coalesced event never leaves
permanent drift. Failed passes requeue with exponential backoff; after
``max_failures`` consecutive failures the record gets a Degraded condition
and retries continue at the capped interval.
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from konverge.core.backoff import RateLimiter
from konverge.core.cache import ObservedStateCache, WatchConsumer
from konverge.core.config import ControllerConfig
from konverge.core.errors import ActionExecutionError, NotFound
from konverge.core.planner import IMMUTABLE_VIOLATION, find_orphans, plan
from konverge.core.schema.action import Action, ActionPlan
from konverge.core.schema.backend import Backend
from konverge.core.schema.event import EventType
from konverge.core.schema.identity import ResourceIdentity
from konverge.core.schema.record import ResourceRecord
from konverge.core.store import STATUS, DesiredStateStore
from konverge.core.workqueue import ShutDown, WorkQueue
from konverge.k8s.constants import CONDITION_DEGRADED, RETAIN_ANNOTATION, WATCHED_KINDS
from konverge.k8s.status import compute_status, condition, with_condition
from konverge.k8s.utils import is_managed

logger = logging.getLogger(__name__)

# Outcomes of a reconciliation pass
SYNCED = "Synced"
PROGRESSING = "Progressing"
REJECTED = "Rejected"
SKIPPED = "Skipped"


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation pass.

    Attributes:
        identity: Reconciled identity
        outcome: Synced, Progressing, Rejected or Skipped
        actions: Actions executed in this pass
        plan: Plan computed at the start of the pass
    """
    identity: ResourceIdentity
    outcome: str
    actions: List[Action] = field(default_factory=list)
    plan: Optional[ActionPlan] = None


class Reconciler:
    """Drives observed state toward desired state, one identity at a time.

    Example:
        >>> reconciler = Reconciler(store, cache, backend)
        >>> _ = store.apply(ResourceIdentity("ConfigMap", "default", "settings"), {"data": {"a": "1"}})
        >>> reconciler.drain()
        2
        >>> backend.get(ResourceIdentity("ConfigMap", "default", "settings")) is not None
        True
    """

    def __init__(
        self,
        store: DesiredStateStore,
        cache: ObservedStateCache,
        backend: Backend,
        queue: Optional[WorkQueue] = None,
        config: Optional[ControllerConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.store = store
        self.cache = cache
        self.backend = backend
        self.queue = queue or WorkQueue()
        self.config = config or ControllerConfig()
        self.rate_limiter = rate_limiter or RateLimiter(
            base=self.config.backoff_base_seconds,
            cap=self.config.backoff_max_seconds,
            jitter=self.config.backoff_jitter,
        )
        self.kinds: Tuple[str, ...] = tuple(self.config.kinds or WATCHED_KINDS)
        self.passes = 0
        self._degraded: Dict[ResourceIdentity, Dict[str, str]] = {}
        self._consumers: Dict[str, WatchConsumer] = {}
        self._threads: List[threading.Thread] = []
        self._stop_event = threading.Event()
        self._lock = threading.Lock()

        store.subscribe(self._on_desired_change)
        cache.subscribe(self._on_observed_change)

    # -- triggers --------------------------------------------------------------

    def _on_desired_change(self, identity: ResourceIdentity, reason: str) -> None:
        # Status writes come from this reconciler; they carry no new intent
        if reason != STATUS:
            self.queue.add(identity)

    def _on_observed_change(self, event_type: EventType, record: ResourceRecord) -> None:
        live_owners = [o for o in record.owner_references if self._exists(o)]
        for owner in live_owners:
            self.queue.add(owner)
        if not live_owners:
            self.queue.add(record.identity)
        if record.kind == "Node":
            for daemonset in self.store.list("DaemonSet"):
                self.queue.add(daemonset.identity)

    def _exists(self, identity: ResourceIdentity) -> bool:
        return self.store.find(identity) is not None or self.cache.get(identity) is not None

    # -- one pass ----------------------------------------------------------------

    def reconcile(self, identity: ResourceIdentity) -> ReconcileResult:
        """Run one reconciliation pass for an identity.

        Raises:
            ActionExecutionError: If a backend call fails; the caller requeues
        """
        desired = self.store.find(identity)
        observed = self.cache.get(identity)

        if desired is None and observed is not None and not self._should_collect(observed):
            return ReconcileResult(identity, SKIPPED)

        children, nodes, claims = self._related(identity)
        action_plan = plan(desired, observed, children, nodes, claims)

        rejected = action_plan.rejected
        if rejected is not None:
            logger.warning(f"{identity}: change rejected ({rejected.reason})")
            self._write_status(identity, degraded={
                "reason": IMMUTABLE_VIOLATION,
                "message": "spec of an immutable resource cannot change",
            })
            return ReconcileResult(identity, REJECTED, plan=action_plan)

        executed: List[Tuple[Action, Optional[str]]] = []
        if not action_plan.is_empty:
            batch = action_plan.steps[0]
            logger.info(f"{identity}: executing batch 1/{len(action_plan.steps)} ({len(batch)} actions)")
            executed = self._execute(batch)
            self._sync(executed)

        # Re-plan from the state our writes produced
        children, nodes, claims = self._related(identity)
        observed = self.cache.get(identity)
        remaining = plan(desired, observed, children, nodes, claims)
        progressing = not remaining.is_empty

        if desired is not None and desired.is_deleting:
            if observed is None and not children:
                logger.info(f"{identity}: cleanup complete, removing finalizer")
                self.store.remove_finalizer(identity, self.config.finalizer)
        elif desired is not None:
            self._write_status(identity, children=children, nodes=nodes, progressing=progressing)

        if progressing:
            self.queue.add_after(identity, self.config.rollout_step_seconds)
        outcome = PROGRESSING if progressing else SYNCED
        return ReconcileResult(identity, outcome, [a for a, _ in executed], action_plan)

    def _should_collect(self, observed: ResourceRecord) -> bool:
        """Whether a live record without desired state should be deleted.

        Only records the controller wrote are collected: owned records once
        every owner is gone, and ownerless leftovers of purged desired
        records. Retained records (volume claims) are kept.
        """
        if not is_managed(observed) or observed.annotations.get(RETAIN_ANNOTATION):
            return False
        return not any(self._exists(owner) for owner in observed.owner_references)

    def _related(
        self, identity: ResourceIdentity
    ) -> Tuple[List[ResourceRecord], Sequence[ResourceRecord], Sequence[ResourceRecord]]:
        children = self.cache.descendants(identity)
        nodes: Sequence[ResourceRecord] = ()
        claims: Sequence[ResourceRecord] = ()
        if identity.kind == "DaemonSet":
            nodes = self.cache.list("Node")
        elif identity.kind == "StatefulSet":
            claims = self.cache.list("PersistentVolumeClaim", identity.namespace)
        return children, nodes, claims

    def _execute(self, batch: List[Action]) -> List[Tuple[Action, Optional[str]]]:
        """Run a batch in order; returns (action, new version) pairs.

        Deleting something already gone counts as success.
        """
        executed: List[Tuple[Action, Optional[str]]] = []
        for action in batch:
            version: Optional[str] = None
            try:
                if action.op == "Create":
                    version = self.backend.write(action.identity, action.record, None)
                elif action.op == "Update":
                    version = self.backend.write(
                        action.identity, action.record, action.record.resource_version or None
                    )
                elif action.op == "Delete":
                    expected = action.record.resource_version if action.record else None
                    self.backend.delete(action.identity, expected or None)
                else:
                    raise ValueError(f"Unexpected action in batch: {action!r}")
            except NotFound:
                if action.op != "Delete":
                    raise ActionExecutionError(f"{action!r} failed: target vanished", action)
                logger.debug(f"{action!r}: already gone")
            except Exception as e:
                raise ActionExecutionError(f"{action!r} failed: {e}", action, e) from e
            logger.info(f"{action!r}" + (f" -> version {version}" if version else ""))
            executed.append((action, version))
        return executed

    def _sync(self, executed: List[Tuple[Action, Optional[str]]]) -> None:
        """Make the cache reflect this pass's writes before reading it again.

        Kinds fed by a running watch consumer are awaited; other kinds are
        relisted synchronously.
        """
        final: "OrderedDict[ResourceIdentity, Optional[str]]" = OrderedDict()
        for action, version in executed:
            final[action.identity] = None if action.op == "Delete" else version

        relist = set()
        for identity, version in final.items():
            consumer = self._consumers.get(identity.kind)
            if consumer is None or not consumer.is_alive():
                relist.add(identity.kind)
            elif not self.cache.wait_for(identity, version, self.config.cache_sync_timeout):
                logger.warning(f"Cache did not observe {identity} at version {version} "
                               f"within {self.config.cache_sync_timeout}s")
        if relist:
            self.relist(sorted(relist))

    def _write_status(
        self,
        identity: ResourceIdentity,
        children: Sequence[ResourceRecord] = (),
        nodes: Sequence[ResourceRecord] = (),
        progressing: bool = False,
        degraded: Optional[Dict[str, str]] = None,
    ) -> None:
        desired = self.store.find(identity)
        if desired is None or desired.is_deleting:
            return
        status = compute_status(
            desired, self.cache.get(identity), children, nodes,
            progressing=progressing, degraded=degraded,
        )
        try:
            self.store.update_status(identity, status)
        except NotFound:
            logger.debug(f"{identity} was purged before its status could be written")

    def _mark_degraded(self, identity: ResourceIdentity, message: str) -> None:
        desired = self.store.find(identity)
        if desired is None or desired.is_deleting:
            return
        entry = condition(CONDITION_DEGRADED, True, "ReconcileFailed", message)
        try:
            self.store.update_status(identity, with_condition(desired.status, entry))
        except NotFound:
            pass

    # -- work queue driving --------------------------------------------------------

    def process_next_item(self, timeout: Optional[float] = None) -> bool:
        """Take one identity off the queue and reconcile it.

        Failures never escape: they requeue the identity with backoff and,
        past ``max_failures``, mark it Degraded.

        Returns:
            True if an item was processed, False if the timeout expired

        Raises:
            ShutDown: If the queue has been shut down
        """
        identity = self.queue.get(timeout=timeout)
        if identity is None:
            return False
        with self._lock:
            self.passes += 1
        try:
            self.reconcile(identity)
        except Exception as e:
            delay = self.rate_limiter.when(identity)
            failures = self.rate_limiter.failures(identity)
            if isinstance(e, ActionExecutionError):
                logger.warning(f"{identity}: {e} (failure {failures}, retry in {delay:.2f}s)")
            else:
                logger.exception(f"{identity}: reconciliation crashed (failure {failures}, retry in {delay:.2f}s)")
            if failures >= self.config.max_failures:
                logger.error(f"{identity}: {failures} consecutive failures, marking Degraded")
                self._degraded[identity] = {"reason": "ReconcileFailed", "message": str(e)}
                self._mark_degraded(identity, str(e))
            self.queue.add_after(identity, delay)
        else:
            self.rate_limiter.forget(identity)
            self._degraded.pop(identity, None)
        finally:
            self.queue.done(identity)
        return True

    def drain(self, limit: int = 10000) -> int:
        """Process queued items in the calling thread until none is ready.

        Returns:
            Number of items processed
        """
        processed = 0
        while processed < limit and self.process_next_item(timeout=0):
            processed += 1
        return processed

    def state(self, identity: ResourceIdentity) -> str:
        """Idle, Queued or Running."""
        return self.queue.state(identity)

    def is_degraded(self, identity: ResourceIdentity) -> bool:
        return identity in self._degraded

    def failures(self, identity: ResourceIdentity) -> int:
        return self.rate_limiter.failures(identity)

    # -- resync and relist ----------------------------------------------------------

    def relist(self, kinds: Optional[Sequence[str]] = None) -> int:
        """Refresh the cache from full backend lists; returns changed identities."""
        changed = 0
        for kind in kinds or self.kinds:
            changed += self.cache.replace(kind, self.backend.list(kind))
        return changed

    def resync(self) -> int:
        """Enqueue every desired identity and every orphaned live record.

        Returns:
            Number of identities enqueued
        """
        identities = {r.identity for r in self.store.list()}
        identities.update(r.identity for r in find_orphans(self.cache.all(), self._exists))
        identities.update(
            r.identity for r in self.cache.all()
            if not r.owner_references and self.store.find(r.identity) is None and self._should_collect(r)
        )
        for identity in sorted(identities):
            self.queue.add(identity)
        logger.debug(f"Resync enqueued {len(identities)} identities")
        return len(identities)

    # -- threads ------------------------------------------------------------------------

    def start(self, workers: Optional[int] = None) -> None:
        """Start watch consumers, the worker pool and the periodic resync."""
        workers = workers or self.config.workers
        if self.queue.shutting_down:
            # Restart after stop(): resync below refills the fresh queue
            self.queue = WorkQueue(self.queue.clock)
        self._stop_event.clear()
        for kind in self.kinds:
            consumer = WatchConsumer(self.backend, kind, self.cache)
            self._consumers[kind] = consumer
            consumer.start()
        for consumer in self._consumers.values():
            if not consumer.wait_synced(self.config.cache_sync_timeout):
                logger.warning(f"Watch consumer for {consumer.kind} did not sync in time")

        self.resync()
        for index in range(workers):
            thread = threading.Thread(target=self._work, name=f"reconciler-{index}", daemon=True)
            thread.start()
            self._threads.append(thread)
        resync = threading.Thread(target=self._resync_loop, name="resync", daemon=True)
        resync.start()
        self._threads.append(resync)
        logger.info(f"Reconciler started with {workers} workers watching {len(self.kinds)} kinds")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop every thread; in-flight passes finish their current backend call."""
        self._stop_event.set()
        self.queue.shut_down()
        for consumer in self._consumers.values():
            consumer.stop()
        deadline = time.monotonic() + timeout
        for thread in self._threads + list(self._consumers.values()):
            thread.join(max(0.0, deadline - time.monotonic()))
        self._threads = []
        self._consumers = {}
        logger.info("Reconciler stopped")

    def wait_idle(self, timeout: float = 10.0, settle: float = 0.05) -> bool:
        """Wait until the queue stays idle for ``settle`` seconds.

        Returns:
            True if the controller went idle before the timeout
        """
        deadline = time.monotonic() + timeout
        idle_since: Optional[float] = None
        while time.monotonic() < deadline:
            now = time.monotonic()
            if self.queue.is_idle():
                if idle_since is None:
                    idle_since = now
                elif now - idle_since >= settle:
                    return True
            else:
                idle_since = None
            time.sleep(0.01)
        return False

    def _work(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.process_next_item(timeout=0.1)
            except ShutDown:
                break

    def _resync_loop(self) -> None:
        while not self._stop_event.wait(self.config.resync_seconds):
            self.resync()
