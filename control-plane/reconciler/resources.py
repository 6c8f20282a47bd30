"""
Observed resource types and the platform error taxonomy.

Everything here is a snapshot of platform state taken during one
reconciliation; nothing is cached between invocations.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


class Role(Enum):
    PRIMARY = "primary"
    REPLICA = "replica"
    UNKNOWN = "unknown"


class RecordKind(Enum):
    CONFIG = "config"
    LEADER_LEASE = "leader-lease"
    MEMBERSHIP = "membership"


class PropagationPolicy(Enum):
    BACKGROUND = "Background"
    FOREGROUND = "Foreground"

    @classmethod
    def parse(cls, value: Optional[str]) -> "PropagationPolicy":
        if not value:
            return cls.BACKGROUND
        for policy in cls:
            if policy.value.lower() == value.strip().lower():
                return policy
        raise ValueError(f"Unknown propagation policy: {value}")


class TeardownPhase(Enum):
    ACTIVE = "Active"
    DRAINING_REPLICAS = "DrainingReplicas"
    PRIMARY_ONLY = "PrimaryOnly"
    RECORDS_PENDING = "RecordsPending"
    FINALIZING = "Finalizing"
    GONE = "Gone"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize naive timestamps (as returned by SQLite) to aware UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class ClusterKey:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class Cluster:
    """A cluster object as read from the platform."""

    key: ClusterKey
    resource_version: str
    replicas: int = 1
    image: str = ""
    postgres_version: int = 0
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[datetime] = None
    propagation: PropagationPolicy = PropagationPolicy.BACKGROUND
    status: Dict[str, str] = field(default_factory=dict)

    @property
    def deleting(self) -> bool:
        return self.deletion_timestamp is not None


@dataclass(frozen=True)
class Instance:
    name: str
    cluster: ClusterKey
    role: Role
    ready: bool
    workload: str
    terminating: bool = False
    uid: str = ""


@dataclass(frozen=True)
class ConsensusRecord:
    name: str
    cluster: ClusterKey
    kind: RecordKind
    created_at: datetime
    uid: str = ""


class PlatformError(Exception):
    """Base class for failures reported by a platform client."""


class NotFoundError(PlatformError):
    """The object is already gone."""


class TransientPlatformError(PlatformError):
    """A retryable failure; the caller re-invokes later."""


class ConflictError(TransientPlatformError):
    """A write used a stale version, or a delete precondition did not match."""


class PlatformTimeoutError(TransientPlatformError):
    """The platform did not answer within the bounded timeout."""
