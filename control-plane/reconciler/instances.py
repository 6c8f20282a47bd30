"""
InstanceSet: the running database instances of one cluster.

Roles are read from the labels the HA agent writes on every call. Nothing
here promotes or demotes an instance.
"""

import logging
from typing import Iterable, List

from .platform_client import PlatformClient
from .resources import ClusterKey, Instance, NotFoundError, PropagationPolicy, Role

logger = logging.getLogger(__name__)


class InstanceSet:
    def __init__(self, client: PlatformClient):
        self.client = client

    def list(self, key: ClusterKey) -> List[Instance]:
        """Current instances of the cluster, including ones still terminating."""
        return self.client.list_instances(key)

    def request_delete(
        self, instance: Instance, propagation: PropagationPolicy = PropagationPolicy.BACKGROUND
    ) -> None:
        """Ask the platform to remove the instance. An instance already gone is fine."""
        try:
            self.client.delete_instance(instance, propagation)
        except NotFoundError:
            logger.debug("Instance %s already gone", instance.name)
            return
        logger.info(
            "Requested deletion of %s instance %s/%s",
            instance.role.value, instance.cluster.namespace, instance.name,
        )

    def request_delete_all(
        self, instances: Iterable[Instance], propagation: PropagationPolicy = PropagationPolicy.BACKGROUND
    ) -> List[str]:
        deleted = []
        for instance in instances:
            self.request_delete(instance, propagation)
            deleted.append(instance.name)
        return deleted


def primaries(instances: Iterable[Instance]) -> List[Instance]:
    return [i for i in instances if i.role is Role.PRIMARY]


def non_primaries(instances: Iterable[Instance]) -> List[Instance]:
    """Replicas, plus instances the HA agent never labelled."""
    return [i for i in instances if i.role is not Role.PRIMARY]
