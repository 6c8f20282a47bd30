"""
Platform client interface and the SQL-backed implementation.

A PlatformClient is the only way the reconciler touches platform state. All
calls are blocking and bounded; failures surface as the PlatformError
taxonomy from resources.py, never as backend-specific exceptions.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import List, Optional

from sqlalchemy.exc import OperationalError

from api import shared_api_logic as services
from api.models import SessionLocal

from .resources import (
    Cluster,
    ClusterKey,
    ConsensusRecord,
    Instance,
    NotFoundError,
    PlatformTimeoutError,
    PropagationPolicy,
    RecordKind,
    as_utc,
)
from . import naming


class PlatformClient(ABC):
    @abstractmethod
    def list_cluster_keys(self) -> List[ClusterKey]:
        ...

    @abstractmethod
    def get_cluster(self, key: ClusterKey) -> Cluster:
        """Raises NotFoundError when the cluster object does not exist."""

    @abstractmethod
    def patch_finalizers(self, cluster: Cluster, finalizers: List[str]) -> Optional[Cluster]:
        """
        Replace the finalizer list using cluster.resource_version as a
        precondition. Returns the updated cluster, or None if the platform
        removed the object as a result.
        """

    @abstractmethod
    def list_instances(self, key: ClusterKey) -> List[Instance]:
        ...

    @abstractmethod
    def delete_instance(self, instance: Instance, propagation: PropagationPolicy) -> None:
        """Request deletion of the instance workload; does not wait."""

    @abstractmethod
    def list_consensus_records(self, key: ClusterKey) -> List[ConsensusRecord]:
        ...

    @abstractmethod
    def delete_consensus_record(self, record: ConsensusRecord, propagation: PropagationPolicy) -> None:
        """Delete a record, using record.uid as a precondition."""


class SQLPlatformClient(PlatformClient):
    """PlatformClient over the simulated platform store in api/."""

    def __init__(self, session_factory=None):
        if session_factory is None:
            session_factory = SessionLocal
        self.session_factory = session_factory

    @contextmanager
    def _session(self):
        db = self.session_factory()
        try:
            yield db
        except OperationalError as e:
            db.rollback()
            raise PlatformTimeoutError(str(e)) from e
        finally:
            db.close()

    @staticmethod
    def _to_cluster(row) -> Cluster:
        return Cluster(
            key=ClusterKey(row.namespace, row.name),
            resource_version=str(row.resource_version),
            replicas=row.replicas,
            image=row.image,
            postgres_version=row.postgres_version,
            finalizers=list(row.finalizers or []),
            deletion_timestamp=as_utc(row.deletion_timestamp),
            propagation=PropagationPolicy.parse(row.propagation),
            status=dict(row.status or {}),
        )

    def list_cluster_keys(self) -> List[ClusterKey]:
        with self._session() as db:
            return [ClusterKey(c.namespace, c.name) for c in services.list_clusters_logic(db)]

    def get_cluster(self, key: ClusterKey) -> Cluster:
        with self._session() as db:
            row = services.get_cluster_logic(db, key.namespace, key.name)
            if row is None:
                raise NotFoundError(f"Cluster {key} not found")
            return self._to_cluster(row)

    def patch_finalizers(self, cluster: Cluster, finalizers: List[str]) -> Optional[Cluster]:
        with self._session() as db:
            row = services.patch_cluster_finalizers_logic(
                db,
                cluster.key.namespace,
                cluster.key.name,
                finalizers,
                int(cluster.resource_version),
            )
            return self._to_cluster(row) if row is not None else None

    def list_instances(self, key: ClusterKey) -> List[Instance]:
        with self._session() as db:
            return [
                Instance(
                    name=row.name,
                    cluster=key,
                    role=naming.role_from_label((row.labels or {}).get(naming.LABEL_ROLE)),
                    ready=bool(row.ready),
                    workload=row.workload,
                    terminating=row.deletion_timestamp is not None,
                    uid=row.uid,
                )
                for row in services.list_instances_logic(db, key.namespace, key.name)
            ]

    def delete_instance(self, instance: Instance, propagation: PropagationPolicy) -> None:
        # The simulated store has no separate workload object to cascade from
        with self._session() as db:
            services.request_instance_delete_logic(db, instance.cluster.namespace, instance.name)

    def list_consensus_records(self, key: ClusterKey) -> List[ConsensusRecord]:
        with self._session() as db:
            return [
                ConsensusRecord(
                    name=row.name,
                    cluster=key,
                    kind=RecordKind(row.kind),
                    created_at=as_utc(row.created_at),
                    uid=row.uid,
                )
                for row in services.list_consensus_records_logic(db, key.namespace, key.name)
            ]

    def delete_consensus_record(self, record: ConsensusRecord, propagation: PropagationPolicy) -> None:
        with self._session() as db:
            services.delete_consensus_record_logic(
                db, record.cluster.namespace, record.name, uid=record.uid or None
            )
