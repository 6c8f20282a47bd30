"""
ConsensusRecordSet: the HA agent's consensus-store records for one cluster.
"""

import logging
from datetime import datetime
from typing import Iterable, List

from .platform_client import PlatformClient
from .resources import (
    ClusterKey,
    ConflictError,
    ConsensusRecord,
    NotFoundError,
    PropagationPolicy,
    as_utc,
)

logger = logging.getLogger(__name__)


def created_at_or_before(records: Iterable[ConsensusRecord], cutoff: datetime) -> List[ConsensusRecord]:
    """Records whose creation time is at or before cutoff."""
    cutoff = as_utc(cutoff)
    return [r for r in records if as_utc(r.created_at) <= cutoff]


class ConsensusRecordSet:
    def __init__(self, client: PlatformClient):
        self.client = client

    def list(self, key: ClusterKey) -> List[ConsensusRecord]:
        return self.client.list_consensus_records(key)

    def delete_before(
        self,
        key: ClusterKey,
        cutoff: datetime,
        propagation: PropagationPolicy = PropagationPolicy.BACKGROUND,
    ) -> List[str]:
        """
        Delete the records created at or before cutoff and return the names of those removed.

        Records created after cutoff are left untouched. Each delete carries the
        observed uid, so a record the HA agent recreated under the same name in
        the meantime survives; the one that was observed is gone either way.
        """
        return self.delete_records(created_at_or_before(self.list(key), cutoff), propagation)

    def delete_records(
        self,
        records: Iterable[ConsensusRecord],
        propagation: PropagationPolicy = PropagationPolicy.BACKGROUND,
    ) -> List[str]:
        deleted = []
        for record in records:
            try:
                self.client.delete_consensus_record(record, propagation)
                logger.info(
                    "Deleted %s record %s/%s", record.kind.value, record.cluster.namespace, record.name
                )
            except NotFoundError:
                logger.debug("Consensus record %s already gone", record.name)
            except ConflictError:
                logger.info("Consensus record %s was recreated; leaving the new one", record.name)
                continue
            deleted.append(record.name)
        return deleted
