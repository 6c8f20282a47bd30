#!/usr/bin/env python3
"""
Cluster Reconcile Driver

Loads a cluster on every trigger and routes it:
- deletion requested -> TeardownController, then persists the finalizer change
- otherwise -> registers the finalizer and hands over to the creation handler

Implements:
- Single-cluster reconcile returning a requeue decision
- Polling loop over all clusters with a thread pool
- At most one reconcile in flight per cluster
- Exponential backoff after retryable platform errors
- Stuck-teardown signal
"""

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set

from metrics import METRICS
from api import shared_api_logic as services
from api.diagnostic_logger import diagnostic_logger
from api.models import SessionLocal

from . import naming
from .kube_client import KubernetesPlatformClient
from .platform_client import PlatformClient, SQLPlatformClient
from .resources import (
    Cluster,
    ClusterKey,
    NotFoundError,
    TeardownPhase,
    TransientPlatformError,
)
from .teardown import TeardownController

logger = logging.getLogger(__name__)

PLATFORM_BACKEND = os.getenv("PLATFORM_BACKEND", "sql")
WATCH_NAMESPACE = os.getenv("WATCH_NAMESPACE") or None
RECONCILE_INTERVAL_SECONDS = float(os.getenv("RECONCILE_INTERVAL_SECONDS", "1"))
RECONCILE_MAX_BACKOFF_SECONDS = float(os.getenv("RECONCILE_MAX_BACKOFF_SECONDS", "60"))
RECONCILE_WORKERS = int(os.getenv("RECONCILE_WORKERS", "4"))
RESYNC_SECONDS = float(os.getenv("RESYNC_SECONDS", "10"))
STUCK_TEARDOWN_SECONDS = float(os.getenv("STUCK_TEARDOWN_SECONDS", "300"))

# Called for clusters without a deletion timestamp; returns True to requeue
CreationHandler = Callable[[Cluster], bool]


@dataclass
class ReconcileResult:
    """Result of reconciling one cluster."""

    requeue: bool = False
    requeue_after: float = 0
    phase: Optional[TeardownPhase] = None
    actions_taken: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    duration_ms: float = 0


def backoff_delay(failures: int, base: float, cap: float) -> float:
    """Delay before retrying after the given number of consecutive failures."""
    if failures <= 0:
        return base
    return min(base * (2 ** (failures - 1)), cap)


class SimulatedCreation:
    """
    Creation handler for the simulated platform: brings up missing instances.

    Real creation and scale-up logic is a separate concern; this only gives
    the simulator something to tear down.
    """

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    def __call__(self, cluster: Cluster) -> bool:
        db = self.session_factory()
        try:
            services.ensure_instances_logic(db, cluster.key.namespace, cluster.key.name)
        finally:
            db.close()
        return False


class ReconcileDriver:
    """
    Main reconcile driver.

    reconcile() is a pure function of what the platform reports; run() keeps
    calling it for every cluster until each one settles.
    """

    def __init__(
        self,
        client: PlatformClient,
        creation_handler: Optional[CreationHandler] = None,
        interval_seconds: float = RECONCILE_INTERVAL_SECONDS,
        max_backoff_seconds: float = RECONCILE_MAX_BACKOFF_SECONDS,
        resync_seconds: float = RESYNC_SECONDS,
        workers: int = RECONCILE_WORKERS,
        stuck_after_seconds: float = STUCK_TEARDOWN_SECONDS,
    ):
        self.client = client
        self.teardown = TeardownController(client)
        self.creation_handler = creation_handler
        self.interval = interval_seconds
        self.max_backoff = max_backoff_seconds
        self.resync = resync_seconds
        self.workers = workers
        self.stuck_after = stuck_after_seconds
        self.running = False

        # Scheduling bookkeeping only; reconcile() never reads it
        self._lock = threading.Lock()
        self._due: Dict[ClusterKey, float] = {}
        self._failures: Dict[ClusterKey, int] = {}
        self._in_flight: Set[ClusterKey] = set()
        self._stuck: Set[ClusterKey] = set()

        self.metrics = {
            "cycles": 0,
            "actions_taken": 0,
            "errors": 0,
            "last_cycle_duration_ms": 0,
        }

    # ------------------------------------------------------------------
    # Single reconcile
    # ------------------------------------------------------------------

    def reconcile(self, key: ClusterKey) -> ReconcileResult:
        """Perform one reconciliation of one cluster."""
        start_time = time.time()
        result = ReconcileResult()

        try:
            cluster = self.client.get_cluster(key)
        except NotFoundError:
            self._clear_stuck(key)
            result.phase = TeardownPhase.GONE
            return result
        except TransientPlatformError as e:
            result.errors.append(f"get {key}: {e}")
            result.requeue = True
            return result

        if cluster.deleting:
            self._reconcile_delete(cluster, result)
        else:
            self._reconcile_active(cluster, result)

        result.duration_ms = (time.time() - start_time) * 1000

        if METRICS:
            METRICS["reconciliation_latency"].observe(result.duration_ms)
            for action in result.actions_taken:
                METRICS["reconciliation_actions"].labels(action_type=action.split(":", 1)[0]).inc()
        return result

    def _reconcile_active(self, cluster: Cluster, result: ReconcileResult):
        result.phase = TeardownPhase.ACTIVE
        if naming.FINALIZER not in cluster.finalizers:
            try:
                updated = self.client.patch_finalizers(cluster, cluster.finalizers + [naming.FINALIZER])
            except NotFoundError:
                return
            except TransientPlatformError as e:
                result.errors.append(f"add finalizer to {cluster.key}: {e}")
                result.requeue = True
                return
            result.actions_taken.append(f"add_finalizer:{cluster.key}")
            if updated is None:
                return
            cluster = updated

        if self.creation_handler is not None:
            try:
                result.requeue = bool(self.creation_handler(cluster))
            except TransientPlatformError as e:
                result.errors.append(f"create {cluster.key}: {e}")
                result.requeue = True
            if result.requeue and not result.errors:
                result.requeue_after = self.interval

    def _reconcile_delete(self, cluster: Cluster, result: ReconcileResult):
        outcome = self.teardown.handle_delete(cluster)
        result.phase = outcome.phase
        if outcome.plan is not None:
            result.actions_taken.extend(f"{outcome.plan.action}:{name}" for name in outcome.deleted)

        if outcome.interrupted:
            result.errors.append(outcome.error)
            result.requeue = True
            if METRICS:
                METRICS["teardown_transient_errors"].inc()
        elif outcome.finalizers is not None:
            removed = True
            try:
                self.client.patch_finalizers(cluster, outcome.finalizers)
            except NotFoundError:
                pass
            except TransientPlatformError as e:
                result.errors.append(f"remove finalizer from {cluster.key}: {e}")
                result.requeue = True
                removed = False
            if removed:
                result.actions_taken.append(f"{outcome.plan.action}:{cluster.key}")
                result.phase = TeardownPhase.GONE
                logger.info("Teardown of %s complete", cluster.key)
        elif not outcome.complete:
            result.requeue = True
            result.requeue_after = self.interval

        if result.phase is TeardownPhase.GONE:
            self._clear_stuck(cluster.key)
        else:
            self._check_stuck(cluster)

    def _check_stuck(self, cluster: Cluster):
        pending = (datetime.now(timezone.utc) - cluster.deletion_timestamp).total_seconds()
        if pending < self.stuck_after:
            return
        with self._lock:
            newly_stuck = cluster.key not in self._stuck
            self._stuck.add(cluster.key)
            count = len(self._stuck)
        if METRICS:
            METRICS["teardowns_stuck"].set(count)
        if newly_stuck:
            diagnostic_logger.log_warning(
                f"Teardown of {cluster.key} pending for {int(pending)}s",
                {"cluster": str(cluster.key), "deletion_timestamp": cluster.deletion_timestamp.isoformat()},
            )

    def _clear_stuck(self, key: ClusterKey):
        with self._lock:
            self._stuck.discard(key)
            count = len(self._stuck)
        if METRICS:
            METRICS["teardowns_stuck"].set(count)

    # ------------------------------------------------------------------
    # Polling loop
    # ------------------------------------------------------------------

    def enqueue(self, key: ClusterKey):
        """Make a cluster due for reconciliation on the next tick."""
        with self._lock:
            self._due[key] = 0

    def _schedule(self, key: ClusterKey, result: ReconcileResult):
        now = time.monotonic()
        with self._lock:
            self._in_flight.discard(key)
            if result.errors:
                failures = self._failures.get(key, 0) + 1
                self._failures[key] = failures
                self._due[key] = now + backoff_delay(failures, self.interval, self.max_backoff)
            else:
                self._failures.pop(key, None)
                if result.requeue:
                    self._due[key] = now + (result.requeue_after or self.interval)
                else:
                    self._due[key] = now + self.resync

    def _work(self, key: ClusterKey) -> ReconcileResult:
        try:
            result = self.reconcile(key)
        except Exception as e:
            logger.exception("Reconcile of %s failed unexpectedly", key)
            result = ReconcileResult(requeue=True, errors=[str(e)])
        self._schedule(key, result)

        with self._lock:
            self.metrics["actions_taken"] += len(result.actions_taken)
            self.metrics["errors"] += len(result.errors)
            self.metrics["last_cycle_duration_ms"] = result.duration_ms
        if result.actions_taken:
            logger.info("Reconcile %s: %s", key, ", ".join(result.actions_taken))
        for error in result.errors:
            logger.warning("Reconcile %s error: %s", key, error)
        return result

    def reconcile_now(self, key: ClusterKey) -> Optional[ReconcileResult]:
        """
        Reconcile one cluster on the calling thread.

        Returns None without doing anything if a reconcile of the same
        cluster is already running.
        """
        with self._lock:
            if key in self._in_flight:
                return None
            self._in_flight.add(key)
        return self._work(key)

    def run_once(self, pool: ThreadPoolExecutor) -> List[ClusterKey]:
        """Submit every cluster that is due and not already in flight."""
        keys = self.client.list_cluster_keys()
        now = time.monotonic()
        submitted = []
        with self._lock:
            live = set(keys)
            tracked = set(self._due) | self._stuck
            for stale in [k for k in tracked if k not in live and k not in self._in_flight]:
                self._due.pop(stale, None)
                self._failures.pop(stale, None)
                self._stuck.discard(stale)
            stuck_count = len(self._stuck)
            for key in keys:
                if key in self._in_flight or self._due.get(key, 0) > now:
                    continue
                self._in_flight.add(key)
                submitted.append(key)
        if METRICS:
            METRICS["teardowns_stuck"].set(stuck_count)
        for key in submitted:
            pool.submit(self._work, key)
        with self._lock:
            self.metrics["cycles"] += 1
        return submitted

    def run(self, tick_seconds: float = 0.2):
        """Main reconcile loop."""
        self.running = True
        logger.info("Reconcile Driver: Starting main loop")
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="reconcile") as pool:
            while self.running:
                try:
                    self.run_once(pool)
                except TransientPlatformError as e:
                    logger.warning("Reconcile Driver: could not list clusters: %s", e)
                except Exception:
                    logger.exception("Reconcile Driver: Unexpected error")
                time.sleep(tick_seconds)

    def stop(self):
        """Stop the reconcile loop."""
        self.running = False


def build_platform_client(backend: Optional[str] = None) -> PlatformClient:
    backend = (backend or PLATFORM_BACKEND).lower()
    if backend == "sql":
        return SQLPlatformClient()
    if backend == "kubernetes":
        return KubernetesPlatformClient.from_environment(namespace=WATCH_NAMESPACE)
    raise ValueError(f"Unknown platform backend: {backend}")


# Singleton for use across the application
_driver: Optional[ReconcileDriver] = None


def get_reconciler() -> ReconcileDriver:
    global _driver
    if _driver is None:
        client = build_platform_client()
        creation = SimulatedCreation() if isinstance(client, SQLPlatformClient) else None
        _driver = ReconcileDriver(client, creation_handler=creation)
    return _driver
