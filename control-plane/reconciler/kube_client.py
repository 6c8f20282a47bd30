"""
PlatformClient for a real Kubernetes cluster.

Clusters are PostgresCluster custom objects, instances are database pods
owned by one StatefulSet each, and consensus records are the Endpoints
objects the HA agent uses as its store.
"""

import logging
import os
from datetime import datetime
from typing import List, Optional

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from . import naming
from .platform_client import PlatformClient
from .resources import (
    Cluster,
    ClusterKey,
    ConflictError,
    ConsensusRecord,
    Instance,
    NotFoundError,
    PlatformTimeoutError,
    PropagationPolicy,
    TransientPlatformError,
    as_utc,
)

logger = logging.getLogger(__name__)

KUBE_REQUEST_TIMEOUT_SECONDS = float(os.getenv("KUBE_REQUEST_TIMEOUT_SECONDS", "10"))

# Set by the API server when a delete asked for foreground propagation
FOREGROUND_FINALIZER = "foregroundDeletion"


def _parse_time(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def _translate(e: Exception, what: str) -> Exception:
    if isinstance(e, ApiException):
        if e.status == 404:
            return NotFoundError(f"{what}: not found")
        if e.status == 409:
            return ConflictError(f"{what}: {e.reason}")
        if e.status in (408, 504):
            return PlatformTimeoutError(f"{what}: {e.reason}")
        return TransientPlatformError(f"{what}: {e.status} {e.reason}")
    if isinstance(e, urllib3.exceptions.TimeoutError):
        return PlatformTimeoutError(f"{what}: {e}")
    return TransientPlatformError(f"{what}: {e}")


def _pod_ready(pod) -> bool:
    for condition in (pod.status.conditions if pod.status else None) or []:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


class KubernetesPlatformClient(PlatformClient):
    def __init__(
        self,
        custom_api: client.CustomObjectsApi,
        core_api: client.CoreV1Api,
        apps_api: client.AppsV1Api,
        namespace: Optional[str] = None,
        request_timeout: float = KUBE_REQUEST_TIMEOUT_SECONDS,
    ):
        self.custom_api = custom_api
        self.core_api = core_api
        self.apps_api = apps_api
        self.namespace = namespace
        self.request_timeout = request_timeout

    @classmethod
    def from_environment(cls, namespace: Optional[str] = None) -> "KubernetesPlatformClient":
        """Load in-cluster credentials, falling back to the local kubeconfig."""
        try:
            config.load_incluster_config()
            logger.info("Using in-cluster Kubernetes configuration")
        except config.ConfigException:
            config.load_kube_config()
            logger.info("Using local kubeconfig")
        return cls(client.CustomObjectsApi(), client.CoreV1Api(), client.AppsV1Api(), namespace=namespace)

    def _call(self, what: str, fn, *args, **kwargs):
        try:
            return fn(*args, _request_timeout=self.request_timeout, **kwargs)
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise _translate(e, what) from e

    # Clusters

    @staticmethod
    def _to_cluster(obj: dict) -> Cluster:
        metadata = obj.get("metadata", {})
        spec = obj.get("spec", {})
        finalizers = list(metadata.get("finalizers") or [])
        return Cluster(
            key=ClusterKey(metadata["namespace"], metadata["name"]),
            resource_version=metadata.get("resourceVersion", ""),
            replicas=int(spec.get("replicas", 1)),
            image=spec.get("image", ""),
            postgres_version=int(spec.get("postgresVersion", 0)),
            finalizers=finalizers,
            deletion_timestamp=_parse_time(metadata.get("deletionTimestamp")),
            propagation=(
                PropagationPolicy.FOREGROUND
                if FOREGROUND_FINALIZER in finalizers
                else PropagationPolicy.BACKGROUND
            ),
            status=dict(obj.get("status") or {}),
        )

    def list_cluster_keys(self) -> List[ClusterKey]:
        if self.namespace:
            listing = self._call(
                "list clusters",
                self.custom_api.list_namespaced_custom_object,
                naming.CRD_GROUP, naming.CRD_VERSION, self.namespace, naming.CRD_PLURAL,
            )
        else:
            listing = self._call(
                "list clusters",
                self.custom_api.list_cluster_custom_object,
                naming.CRD_GROUP, naming.CRD_VERSION, naming.CRD_PLURAL,
            )
        return [
            ClusterKey(item["metadata"]["namespace"], item["metadata"]["name"])
            for item in listing.get("items", [])
        ]

    def get_cluster(self, key: ClusterKey) -> Cluster:
        obj = self._call(
            f"get cluster {key}",
            self.custom_api.get_namespaced_custom_object,
            naming.CRD_GROUP, naming.CRD_VERSION, key.namespace, naming.CRD_PLURAL, key.name,
        )
        return self._to_cluster(obj)

    def patch_finalizers(self, cluster: Cluster, finalizers: List[str]) -> Optional[Cluster]:
        # resourceVersion in a merge patch makes the API server reject stale writes with 409
        body = {
            "metadata": {
                "finalizers": list(finalizers),
                "resourceVersion": cluster.resource_version,
            }
        }
        try:
            obj = self._call(
                f"patch finalizers of {cluster.key}",
                self.custom_api.patch_namespaced_custom_object,
                naming.CRD_GROUP, naming.CRD_VERSION, cluster.key.namespace, naming.CRD_PLURAL,
                cluster.key.name, body,
            )
        except NotFoundError:
            if cluster.deleting and not finalizers:
                return None
            raise
        updated = self._to_cluster(obj)
        if updated.deleting and not updated.finalizers:
            return None
        return updated

    # Instances

    def list_instances(self, key: ClusterKey) -> List[Instance]:
        pods = self._call(
            f"list instances of {key}",
            self.core_api.list_namespaced_pod,
            key.namespace,
            label_selector=naming.instance_selector(key),
        )
        instances = []
        for pod in pods.items:
            labels = pod.metadata.labels or {}
            instances.append(
                Instance(
                    name=pod.metadata.name,
                    cluster=key,
                    role=naming.role_from_label(labels.get(naming.LABEL_ROLE)),
                    ready=_pod_ready(pod),
                    workload=labels.get(naming.LABEL_INSTANCE) or pod.metadata.name,
                    terminating=pod.metadata.deletion_timestamp is not None,
                    uid=pod.metadata.uid or "",
                )
            )
        return instances

    def delete_instance(self, instance: Instance, propagation: PropagationPolicy) -> None:
        self._call(
            f"delete workload {instance.workload}",
            self.apps_api.delete_namespaced_stateful_set,
            instance.workload,
            instance.cluster.namespace,
            body=client.V1DeleteOptions(propagation_policy=propagation.value),
        )

    # Consensus records

    def list_consensus_records(self, key: ClusterKey) -> List[ConsensusRecord]:
        endpoints = self._call(
            f"list consensus records of {key}",
            self.core_api.list_namespaced_endpoints,
            key.namespace,
            label_selector=naming.consensus_selector(key),
        )
        return [
            ConsensusRecord(
                name=ep.metadata.name,
                cluster=key,
                kind=naming.record_kind_from_name(key.name, ep.metadata.name),
                created_at=_parse_time(ep.metadata.creation_timestamp),
                uid=ep.metadata.uid or "",
            )
            for ep in endpoints.items
        ]

    def delete_consensus_record(self, record: ConsensusRecord, propagation: PropagationPolicy) -> None:
        options = client.V1DeleteOptions(propagation_policy=propagation.value)
        if record.uid:
            options.preconditions = client.V1Preconditions(uid=record.uid)
        self._call(
            f"delete consensus record {record.name}",
            self.core_api.delete_namespaced_endpoints,
            record.name,
            record.cluster.namespace,
            body=options,
        )
