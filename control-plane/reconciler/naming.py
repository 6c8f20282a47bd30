"""
Naming conventions shared with the platform and the HA agent.

Label keys, the finalizer token and CRD coordinates live here, together with
the only translation between the HA agent's role vocabulary and ours.
"""

from typing import Optional

from .resources import ClusterKey, RecordKind, Role

LABEL_PREFIX = "postgres-control-plane.io"

LABEL_CLUSTER = f"{LABEL_PREFIX}/cluster"
LABEL_INSTANCE = f"{LABEL_PREFIX}/instance"
LABEL_ROLE = f"{LABEL_PREFIX}/role"
# Discovery tag carried by every consensus-store object of a cluster
LABEL_PATRONI = f"{LABEL_PREFIX}/patroni"

FINALIZER = f"{LABEL_PREFIX}/finalizer"

CRD_GROUP = LABEL_PREFIX
CRD_VERSION = "v1beta1"
CRD_PLURAL = "postgresclusters"

# Role values written by the HA agent. It still uses "master" for the leader,
# newer releases write "primary".
AGENT_ROLE_PRIMARY = "master"
AGENT_ROLE_REPLICA = "replica"

_AGENT_PRIMARY_ROLES = {"master", "primary", "standby-leader", "standby_leader"}
_AGENT_REPLICA_ROLES = {"replica", "sync-standby", "sync_standby"}


def role_from_label(value: Optional[str]) -> Role:
    """
    Translate a role label value written by the HA agent into a Role.

    Accepts both the agent's legacy vocabulary ("master") and our own
    ("primary"). Missing or unrecognised values map to Role.UNKNOWN.
    """
    if not value:
        return Role.UNKNOWN
    value = value.strip().lower()
    if value in _AGENT_PRIMARY_ROLES:
        return Role.PRIMARY
    if value in _AGENT_REPLICA_ROLES:
        return Role.REPLICA
    return Role.UNKNOWN


def role_to_label(role: Role) -> Optional[str]:
    """The label value the HA agent writes for role, or None for UNKNOWN."""
    if role is Role.PRIMARY:
        return AGENT_ROLE_PRIMARY
    if role is Role.REPLICA:
        return AGENT_ROLE_REPLICA
    return None


def cluster_selector(key: ClusterKey) -> str:
    return f"{LABEL_CLUSTER}={key.name}"


def instance_selector(key: ClusterKey) -> str:
    """Label selector matching every instance pod of a cluster."""
    return f"{LABEL_CLUSTER}={key.name},{LABEL_INSTANCE}"


def consensus_selector(key: ClusterKey) -> str:
    """Label selector matching every consensus-store object of a cluster."""
    return f"{LABEL_CLUSTER}={key.name},{LABEL_PATRONI}"


def consensus_record_name(cluster_name: str, kind: RecordKind) -> str:
    suffix = {
        RecordKind.CONFIG: "config",
        RecordKind.LEADER_LEASE: "leader",
        RecordKind.MEMBERSHIP: "members",
    }[kind]
    return f"{cluster_name}-{suffix}"


def record_kind_from_name(cluster_name: str, record_name: str) -> RecordKind:
    """Infer the record kind from the object name the HA agent chose."""
    suffix = record_name[len(cluster_name) + 1:] if record_name.startswith(f"{cluster_name}-") else record_name
    if suffix == "config":
        return RecordKind.CONFIG
    if suffix == "leader":
        return RecordKind.LEADER_LEASE
    return RecordKind.MEMBERSHIP


def instance_name(cluster_name: str, ordinal: int) -> str:
    return f"{cluster_name}-instance-{ordinal}"
