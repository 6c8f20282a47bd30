"""
Teardown of a cluster whose deletion has been requested.

Each invocation starts from what the platform reports right now and takes
at most one kind of removal action:

1. Delete every instance that is not the primary (replicas first).
2. Delete the primary once it is the only instance left.
3. Delete the consensus records created at or before the deletion timestamp,
   once no instance is left. The HA agent may recreate its lease while it is
   still running; those newer records belong to the platform's collector.
4. Remove the finalizer, after which the platform deletes the cluster.

Nothing is remembered between invocations, so the same call can be repeated
any number of times and a superseded one can simply be dropped.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from . import naming
from .consensus import ConsensusRecordSet, created_at_or_before
from .instances import InstanceSet, non_primaries, primaries
from .platform_client import PlatformClient
from .resources import (
    Cluster,
    ConsensusRecord,
    Instance,
    TeardownPhase,
    TransientPlatformError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TeardownPlan:
    """The single step to take for one observation of a deleting cluster."""

    phase: TeardownPhase
    instances: Tuple[Instance, ...] = ()
    records: Tuple[ConsensusRecord, ...] = ()
    remove_finalizer: bool = False

    @property
    def action(self) -> str:
        if self.phase is TeardownPhase.DRAINING_REPLICAS:
            return "delete_replicas"
        if self.phase is TeardownPhase.PRIMARY_ONLY:
            return "delete_primary"
        if self.phase is TeardownPhase.RECORDS_PENDING:
            return "delete_consensus_records"
        if self.phase is TeardownPhase.FINALIZING:
            return "remove_finalizer"
        return "none"


def _by_name(items):
    return tuple(sorted(items, key=lambda item: item.name))


def plan_teardown(
    cluster: Cluster,
    instances: Sequence[Instance],
    records: Sequence[ConsensusRecord],
) -> TeardownPlan:
    """Decide the next teardown step from observed state alone."""
    if not cluster.deleting:
        return TeardownPlan(TeardownPhase.ACTIVE)
    if naming.FINALIZER not in cluster.finalizers:
        return TeardownPlan(TeardownPhase.GONE)

    others = non_primaries(instances)
    if others:
        return TeardownPlan(TeardownPhase.DRAINING_REPLICAS, instances=_by_name(others))

    remaining = primaries(instances)
    if remaining:
        return TeardownPlan(TeardownPhase.PRIMARY_ONLY, instances=_by_name(remaining))

    eligible = created_at_or_before(records, cluster.deletion_timestamp)
    if eligible:
        return TeardownPlan(TeardownPhase.RECORDS_PENDING, records=_by_name(eligible))

    return TeardownPlan(TeardownPhase.FINALIZING, remove_finalizer=True)


@dataclass
class TeardownResult:
    phase: Optional[TeardownPhase]
    plan: Optional[TeardownPlan] = None
    # New finalizer list to persist, when the plan removes ours
    finalizers: Optional[List[str]] = None
    deleted: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def complete(self) -> bool:
        return self.phase is TeardownPhase.GONE

    @property
    def interrupted(self) -> bool:
        return self.error is not None


class TeardownController:
    def __init__(self, client: PlatformClient):
        self.instances = InstanceSet(client)
        self.records = ConsensusRecordSet(client)

    def observe(self, cluster: Cluster) -> TeardownPlan:
        instances = self.instances.list(cluster.key)
        records = self.records.list(cluster.key) if not instances else []
        return plan_teardown(cluster, instances, records)

    def handle_delete(self, cluster: Cluster) -> TeardownResult:
        """
        Take the next teardown step for a cluster with a deletion timestamp.

        A retryable platform failure ends the call early with the error
        recorded on the result; the caller re-invokes later.
        """
        plan = None
        try:
            plan = self.observe(cluster)
            result = TeardownResult(phase=plan.phase, plan=plan)

            if plan.phase is TeardownPhase.DRAINING_REPLICAS or plan.phase is TeardownPhase.PRIMARY_ONLY:
                result.deleted = self.instances.request_delete_all(plan.instances, cluster.propagation)
            elif plan.phase is TeardownPhase.RECORDS_PENDING:
                result.deleted = self.records.delete_records(plan.records, cluster.propagation)
            elif plan.phase is TeardownPhase.FINALIZING:
                result.finalizers = [f for f in cluster.finalizers if f != naming.FINALIZER]
        except TransientPlatformError as e:
            logger.warning("Teardown of %s interrupted: %s", cluster.key, e)
            return TeardownResult(phase=plan.phase if plan else None, plan=plan, error=str(e))

        if result.deleted:
            logger.info("Teardown of %s in phase %s: %s", cluster.key, plan.phase.value, ", ".join(result.deleted))
        return result
