# File: control-plane/api/shared_api_logic.py
"""
Platform object-store operations.

These behave like the orchestration platform the control plane runs on:
deletes are requests, pods terminate after a grace period, a cluster object
lingers while it carries finalizers, and a garbage collector removes what is
left once an owner is gone. The REST API, the SQL platform client and the
tests all go through these functions.
"""

import asyncio
import logging
import os
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .models import (
    Namespace as NamespaceModel,
    Cluster as ClusterModel,
    Instance as InstanceModel,
    ConsensusRecord as RecordModel,
    utcnow,
)
from metrics import METRICS
from reconciler import naming
from reconciler.resources import (
    ConflictError,
    NotFoundError,
    PropagationPolicy,
    RecordKind,
    Role,
    as_utc,
)

logger = logging.getLogger(__name__)

INSTANCE_GRACE_SECONDS = float(os.getenv("INSTANCE_GRACE_SECONDS", "1"))
PROVISION_DELAY_SECONDS = float(os.getenv("PROVISION_DELAY_SECONDS", "0.5"))
RESOLVABLE_REGISTRIES = [
    r.strip()
    for r in os.getenv(
        "RESOLVABLE_REGISTRIES",
        "docker.io,registry.developers.crunchydata.com,localhost",
    ).split(",")
    if r.strip()
]


def _refresh_gauges(db: Session):
    if METRICS:
        METRICS["clusters_total"].set(db.query(ClusterModel).count())
        METRICS["instances_total"].set(db.query(InstanceModel).count())
        METRICS["consensus_records_total"].set(db.query(RecordModel).count())


def _commit(db: Session):
    """Commit, turning a lost optimistic-concurrency race into ConflictError."""
    try:
        db.commit()
    except StaleDataError as e:
        db.rollback()
        raise ConflictError(str(e)) from e


def image_resolves(image: str) -> bool:
    """Whether the image's registry is one the simulated nodes can pull from."""
    first, _, rest = image.partition("/")
    if rest and ("." in first or ":" in first or first == "localhost"):
        registry = first.split(":", 1)[0]
    else:
        registry = "docker.io"
    return registry in RESOLVABLE_REGISTRIES


# Namespace Services
def ensure_namespace(db: Session, name: str) -> NamespaceModel:
    ns = db.query(NamespaceModel).filter(NamespaceModel.name == name).first()
    if ns is None:
        ns = NamespaceModel(name=name)
        db.add(ns)
        db.commit()
        db.refresh(ns)
    elif ns.deletion_timestamp is not None:
        raise ConflictError(f"Namespace {name} is being terminated")
    return ns


def request_namespace_delete_logic(db: Session, name: str) -> Optional[NamespaceModel]:
    """Mark a namespace terminating and request deletion of every cluster in it."""
    ns = db.query(NamespaceModel).filter(NamespaceModel.name == name).first()
    if ns is None:
        return None
    if ns.deletion_timestamp is None:
        ns.deletion_timestamp = utcnow()
        db.commit()
    for cluster in list_clusters_logic(db, namespace=name):
        request_cluster_delete_logic(db, name, cluster.name)
    return ns


# Cluster Services
def create_cluster_logic(
    db: Session,
    namespace: str,
    name: str,
    image: str,
    postgres_version: int,
    replicas: int = 1,
) -> ClusterModel:
    ensure_namespace(db, namespace)
    new_cluster = ClusterModel(
        namespace=namespace,
        name=name,
        image=image,
        postgres_version=postgres_version,
        replicas=replicas,
        finalizers=[],
        status={},
    )
    db.add(new_cluster)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ConflictError(f"Cluster {namespace}/{name} already exists") from e
    db.refresh(new_cluster)
    _refresh_gauges(db)
    return new_cluster


def get_cluster_logic(db: Session, namespace: str, name: str) -> Optional[ClusterModel]:
    return (
        db.query(ClusterModel)
        .filter(ClusterModel.namespace == namespace, ClusterModel.name == name)
        .first()
    )


def list_clusters_logic(db: Session, namespace: Optional[str] = None) -> List[ClusterModel]:
    query = db.query(ClusterModel)
    if namespace is not None:
        query = query.filter(ClusterModel.namespace == namespace)
    return query.order_by(ClusterModel.namespace, ClusterModel.name).all()


def _remove_cluster(db: Session, cluster: ClusterModel):
    """Drop the cluster object; its dependents become orphans for the collector."""
    logger.info("Removing cluster object %s/%s", cluster.namespace, cluster.name)
    db.delete(cluster)
    _commit(db)
    _refresh_gauges(db)


def request_cluster_delete_logic(
    db: Session,
    namespace: str,
    name: str,
    propagation: PropagationPolicy = PropagationPolicy.BACKGROUND,
) -> Optional[ClusterModel]:
    """
    Record the deletion intent on a cluster.

    The first request sets the deletion timestamp; later requests keep it.
    A cluster without finalizers is removed at once. Returns None when the
    cluster does not exist (or was removed by this call).
    """
    cluster = get_cluster_logic(db, namespace, name)
    if cluster is None:
        return None
    if cluster.deletion_timestamp is None:
        cluster.deletion_timestamp = utcnow()
        cluster.propagation = propagation.value
        _commit(db)
        logger.info(
            "Deletion requested for cluster %s/%s (propagation=%s)",
            namespace, name, propagation.value,
        )
    if not cluster.finalizers:
        _remove_cluster(db, cluster)
        return None
    return cluster


def patch_cluster_finalizers_logic(
    db: Session,
    namespace: str,
    name: str,
    finalizers: List[str],
    resource_version: int,
) -> Optional[ClusterModel]:
    """
    Replace the finalizer list, provided the caller saw the current version.

    Raises NotFoundError if the cluster is gone and ConflictError if
    resource_version is stale. A cluster with a deletion timestamp and no
    finalizers left is removed, in which case None is returned.
    """
    cluster = get_cluster_logic(db, namespace, name)
    if cluster is None:
        raise NotFoundError(f"Cluster {namespace}/{name} not found")
    if cluster.resource_version != int(resource_version):
        raise ConflictError(
            f"Cluster {namespace}/{name} changed: version {cluster.resource_version}, "
            f"write used {resource_version}"
        )
    cluster.finalizers = list(finalizers)
    _commit(db)
    if cluster.deletion_timestamp is not None and not cluster.finalizers:
        _remove_cluster(db, cluster)
        return None
    db.refresh(cluster)
    return cluster


# Instance Services
def _is_instance_of(instance: InstanceModel, cluster_name: str) -> bool:
    labels = instance.labels or {}
    return labels.get(naming.LABEL_CLUSTER) == cluster_name and naming.LABEL_INSTANCE in labels


def list_instances_logic(db: Session, namespace: str, cluster_name: str) -> List[InstanceModel]:
    rows = (
        db.query(InstanceModel)
        .filter(InstanceModel.namespace == namespace)
        .order_by(InstanceModel.name)
        .all()
    )
    return [row for row in rows if _is_instance_of(row, cluster_name)]


def request_instance_delete_logic(db: Session, namespace: str, name: str) -> InstanceModel:
    """Start terminating an instance. Removal happens later, in collect_garbage."""
    instance = (
        db.query(InstanceModel)
        .filter(InstanceModel.namespace == namespace, InstanceModel.name == name)
        .first()
    )
    if instance is None:
        raise NotFoundError(f"Instance {namespace}/{name} not found")
    if instance.deletion_timestamp is None:
        instance.deletion_timestamp = utcnow()
        instance.ready = False
        db.commit()
    return instance


def ensure_instances_logic(db: Session, namespace: str, cluster_name: str) -> List[InstanceModel]:
    """
    Create missing instances for a cluster that is not being deleted.

    Instances come up ready, labelled by the HA agent, and the agent writes its
    consensus records, only when the image can be pulled.
    """
    cluster = get_cluster_logic(db, namespace, cluster_name)
    if cluster is None or cluster.deletion_timestamp is not None:
        return []

    existing = list_instances_logic(db, namespace, cluster_name)
    healthy = image_resolves(cluster.image)
    has_primary = any(
        naming.role_from_label((i.labels or {}).get(naming.LABEL_ROLE)) is Role.PRIMARY
        for i in existing
    )
    taken = {i.name for i in existing}

    created = []
    ordinal = 0
    while len(existing) + len(created) < cluster.replicas:
        name = naming.instance_name(cluster_name, ordinal)
        ordinal += 1
        if name in taken:
            continue
        labels = {
            naming.LABEL_CLUSTER: cluster_name,
            naming.LABEL_INSTANCE: name,
        }
        if healthy:
            role = Role.REPLICA if has_primary else Role.PRIMARY
            has_primary = True
            labels[naming.LABEL_ROLE] = naming.role_to_label(role)
        instance = InstanceModel(
            namespace=namespace,
            name=name,
            cluster_uid=cluster.uid,
            labels=labels,
            workload=name,
            ready=healthy,
        )
        db.add(instance)
        created.append(instance)

    if healthy and existing + created:
        for kind in RecordKind:
            _ensure_record(db, cluster, kind)

    if created:
        ready = sum(1 for i in existing + created if i.ready)
        cluster.status = {"readyInstances": ready, "instances": len(existing) + len(created)}
        _commit(db)
        logger.info("Created %d instance(s) for %s/%s", len(created), namespace, cluster_name)
    else:
        db.commit()
    _refresh_gauges(db)
    return created


async def provision_cluster_task(db_factory, namespace: str, name: str, delay: float = None):
    await asyncio.sleep(PROVISION_DELAY_SECONDS if delay is None else delay)
    db = db_factory()
    try:
        ensure_instances_logic(db, namespace, name)
    finally:
        db.close()
    print(f"Cluster {namespace}/{name} provisioned")


# Consensus Record Services
def _record_query(db: Session, namespace: str, name: str):
    return db.query(RecordModel).filter(RecordModel.namespace == namespace, RecordModel.name == name)


def _ensure_record(db: Session, cluster: ClusterModel, kind: RecordKind) -> RecordModel:
    name = naming.consensus_record_name(cluster.name, kind)
    record = _record_query(db, cluster.namespace, name).first()
    if record is None:
        record = RecordModel(
            namespace=cluster.namespace,
            name=name,
            cluster_uid=cluster.uid,
            kind=kind.value,
            labels={naming.LABEL_CLUSTER: cluster.name, naming.LABEL_PATRONI: ""},
            annotations={},
        )
        db.add(record)
        db.flush()
    return record


def list_consensus_records_logic(db: Session, namespace: str, cluster_name: str) -> List[RecordModel]:
    rows = (
        db.query(RecordModel)
        .filter(RecordModel.namespace == namespace)
        .order_by(RecordModel.name)
        .all()
    )
    return [
        row for row in rows
        if (row.labels or {}).get(naming.LABEL_CLUSTER) == cluster_name
        and naming.LABEL_PATRONI in (row.labels or {})
    ]


def delete_consensus_record_logic(db: Session, namespace: str, name: str, uid: Optional[str] = None):
    """
    Delete a consensus record immediately.

    When uid is given it acts as a precondition: a record recreated under the
    same name since it was observed is left alone and ConflictError is raised.
    """
    record = _record_query(db, namespace, name).first()
    if record is None:
        raise NotFoundError(f"Consensus record {namespace}/{name} not found")
    if uid and record.uid != uid:
        raise ConflictError(
            f"Consensus record {namespace}/{name} has uid {record.uid}, expected {uid}"
        )
    db.delete(record)
    db.commit()
    _refresh_gauges(db)


def renew_leader_lease_logic(db: Session, namespace: str, cluster_name: str) -> Optional[RecordModel]:
    """
    What the HA agent does on every loop: keep the leader lease alive.

    The lease is recreated if it was deleted, even while the cluster itself is
    being torn down, as long as an instance is still running.
    """
    cluster = get_cluster_logic(db, namespace, cluster_name)
    if cluster is None:
        return None
    running = [
        i for i in list_instances_logic(db, namespace, cluster_name)
        if i.deletion_timestamp is None and i.ready
    ]
    if not running:
        return None
    record = _ensure_record(db, cluster, RecordKind.LEADER_LEASE)
    leader = next(
        (
            i.name for i in running
            if naming.role_from_label((i.labels or {}).get(naming.LABEL_ROLE)) is Role.PRIMARY
        ),
        None,
    )
    record.annotations = {"leader": leader, "renewTime": utcnow().isoformat()}
    db.commit()
    db.refresh(record)
    return record


def switchover_logic(
    db: Session, namespace: str, cluster_name: str, candidate: Optional[str] = None
) -> Dict[str, str]:
    """
    Hand the primary role to a replica, the way the HA agent does on failover.

    Returns the old and new primary names. Raises ValueError when there is no
    primary or no suitable candidate.
    """
    instances = [
        i for i in list_instances_logic(db, namespace, cluster_name)
        if i.deletion_timestamp is None
    ]
    primary = next(
        (i for i in instances if naming.role_from_label((i.labels or {}).get(naming.LABEL_ROLE)) is Role.PRIMARY),
        None,
    )
    replicas = [
        i for i in instances
        if naming.role_from_label((i.labels or {}).get(naming.LABEL_ROLE)) is Role.REPLICA and i.ready
    ]
    if primary is None:
        raise ValueError(f"Cluster {namespace}/{cluster_name} has no primary")
    if candidate is not None:
        replicas = [i for i in replicas if i.name == candidate]
    if not replicas:
        raise ValueError(f"Cluster {namespace}/{cluster_name} has no candidate replica")
    new_primary = replicas[0]

    # JSON columns are replaced, not mutated, so the change is detected
    primary.labels = {**primary.labels, naming.LABEL_ROLE: naming.role_to_label(Role.REPLICA)}
    new_primary.labels = {**new_primary.labels, naming.LABEL_ROLE: naming.role_to_label(Role.PRIMARY)}
    lease = _record_query(db, namespace, naming.consensus_record_name(cluster_name, RecordKind.LEADER_LEASE)).first()
    if lease is not None:
        lease.annotations = {"leader": new_primary.name, "renewTime": utcnow().isoformat()}
    db.commit()
    logger.info(
        "Switchover in %s/%s: %s -> %s", namespace, cluster_name, primary.name, new_primary.name
    )
    return {"old_primary": primary.name, "new_primary": new_primary.name}


# Garbage Collection
def collect_garbage(
    db: Session, now: Optional[datetime] = None, instance_grace_seconds: Optional[float] = None
) -> Dict[str, int]:
    """
    One sweep of the platform's garbage collector.

    - instances past their termination grace period are removed
    - cluster objects with a deletion timestamp and no finalizers are removed
    - instances and records whose owning cluster no longer exists are removed
    - terminating namespaces with no clusters left are removed
    """
    now = as_utc(now or utcnow())
    grace = INSTANCE_GRACE_SECONDS if instance_grace_seconds is None else instance_grace_seconds
    removed = {"instances": 0, "clusters": 0, "consensus_records": 0, "namespaces": 0}

    for instance in db.query(InstanceModel).filter(InstanceModel.deletion_timestamp.isnot(None)).all():
        if as_utc(instance.deletion_timestamp) + timedelta(seconds=grace) <= now:
            db.delete(instance)
            removed["instances"] += 1

    for cluster in db.query(ClusterModel).filter(ClusterModel.deletion_timestamp.isnot(None)).all():
        if not cluster.finalizers:
            db.delete(cluster)
            removed["clusters"] += 1
    db.flush()

    owners = {uid for (uid,) in db.query(ClusterModel.uid).all()}
    for instance in db.query(InstanceModel).all():
        if instance.cluster_uid not in owners:
            db.delete(instance)
            removed["instances"] += 1
    for record in db.query(RecordModel).all():
        if record.cluster_uid not in owners:
            db.delete(record)
            removed["consensus_records"] += 1
    db.flush()

    for ns in db.query(NamespaceModel).filter(NamespaceModel.deletion_timestamp.isnot(None)).all():
        if db.query(ClusterModel).filter(ClusterModel.namespace == ns.name).count() == 0:
            db.delete(ns)
            removed["namespaces"] += 1

    _commit(db)
    if any(removed.values()):
        logger.info("Garbage collector removed %s", removed)
    _refresh_gauges(db)
    return removed
