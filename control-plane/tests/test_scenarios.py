"""
End-to-end teardown scenarios on the simulated platform.

Each step runs in its own session, the way the driver, the garbage collector
and the HA agent each hold their own connection to the platform.
"""

import pytest

from api import shared_api_logic as services
from api.models import Namespace as NamespaceModel, SessionLocal
from reconciler import naming
from reconciler.resources import ClusterKey, NotFoundError, RecordKind, Role, TeardownPhase

HEALTHY_IMAGE = "registry.developers.crunchydata.com/crunchydata/crunchy-postgres:ubi8-16.2-0"
BROKEN_IMAGE = "registry.invalid.example/crunchy-postgres:16"


def on_platform(fn, *args, **kwargs):
    db = SessionLocal()
    try:
        return fn(db, *args, **kwargs)
    finally:
        db.close()


def collect(db):
    return services.collect_garbage(db, instance_grace_seconds=0)


def create_running_cluster(driver, key, image=HEALTHY_IMAGE, replicas=3):
    on_platform(services.create_cluster_logic, key.namespace, key.name, image, 16, replicas)
    result = driver.reconcile(key)
    assert f"add_finalizer:{key}" in result.actions_taken
    on_platform(services.ensure_instances_logic, key.namespace, key.name)


def converge(driver, key, max_rounds=20, between=None):
    """Reconcile and garbage-collect until the cluster is gone; return the phases seen."""
    phases, actions = [], []
    for _ in range(max_rounds):
        result = driver.reconcile(key)
        assert not result.errors
        phases.append(result.phase)
        actions.extend(result.actions_taken)
        if result.phase is TeardownPhase.GONE and not result.requeue:
            return phases, actions
        if between is not None:
            between(result)
        on_platform(collect)
    pytest.fail(f"{key} did not converge, phases seen: {phases}")


def distinct(phases):
    out = []
    for phase in phases:
        if not out or out[-1] is not phase:
            out.append(phase)
    return out


def assert_fully_removed(sql_client, key):
    with pytest.raises(NotFoundError):
        sql_client.get_cluster(key)
    on_platform(collect)
    assert sql_client.list_instances(key) == []
    assert sql_client.list_consensus_records(key) == []


def test_healthy_cluster_teardown(driver, sql_client):
    key = ClusterKey("pg", "hippo")
    create_running_cluster(driver, key)
    assert naming.FINALIZER in sql_client.get_cluster(key).finalizers

    on_platform(services.request_cluster_delete_logic, key.namespace, key.name)
    phases, actions = converge(driver, key)

    assert distinct(phases) == [
        TeardownPhase.DRAINING_REPLICAS,
        TeardownPhase.PRIMARY_ONLY,
        TeardownPhase.RECORDS_PENDING,
        TeardownPhase.GONE,
    ]
    instance_deletes = [a.split(":", 1)[1] for a in actions if a.startswith("delete_")
                        and not a.startswith("delete_consensus")]
    assert instance_deletes[-1] == "hippo-instance-0"
    assert set(instance_deletes) == {"hippo-instance-0", "hippo-instance-1", "hippo-instance-2"}
    assert_fully_removed(sql_client, key)


def test_teardown_after_failover(driver, sql_client):
    key = ClusterKey("pg", "hippo-failover")
    create_running_cluster(driver, key)
    on_platform(services.switchover_logic, key.namespace, key.name, "hippo-failover-instance-1")

    on_platform(services.request_cluster_delete_logic, key.namespace, key.name)
    phases, actions = converge(driver, key)

    primary_deletes = [a for a in actions if a.startswith("delete_primary:")]
    replica_deletes = [a for a in actions if a.startswith("delete_replicas:")]
    assert set(primary_deletes) == {"delete_primary:hippo-failover-instance-1"}
    assert "delete_replicas:hippo-failover-instance-0" in replica_deletes
    assert actions.index(primary_deletes[0]) > max(actions.index(a) for a in replica_deletes)
    assert_fully_removed(sql_client, key)


def test_never_healthy_cluster_teardown(driver, sql_client):
    key = ClusterKey("pg", "hippo-broken")
    create_running_cluster(driver, key, image=BROKEN_IMAGE)
    instances = sql_client.list_instances(key)
    assert {i.role for i in instances} == {Role.UNKNOWN}
    assert sql_client.list_consensus_records(key) == []

    on_platform(services.request_cluster_delete_logic, key.namespace, key.name)
    phases, _ = converge(driver, key)

    assert TeardownPhase.PRIMARY_ONLY not in phases
    assert TeardownPhase.RECORDS_PENDING not in phases
    assert_fully_removed(sql_client, key)


def test_lease_recreated_during_teardown_is_left_for_collector(driver, sql_client):
    key = ClusterKey("pg", "hippo-lease")
    create_running_cluster(driver, key, replicas=2)
    lease_name = naming.consensus_record_name(key.name, RecordKind.LEADER_LEASE)

    on_platform(services.request_cluster_delete_logic, key.namespace, key.name)
    # Someone removes the lease; the still-running primary writes a new one
    on_platform(services.delete_consensus_record_logic, key.namespace, lease_name)
    recreated_uid = on_platform(services.renew_leader_lease_logic, key.namespace, key.name).uid

    seen_after_records = []

    def agent_check(result):
        if result.phase is TeardownPhase.RECORDS_PENDING:
            seen_after_records.extend(
                r.uid for r in sql_client.list_consensus_records(key) if r.name == lease_name
            )

    phases, actions = converge(driver, key, between=agent_check)

    assert f"delete_consensus_records:{lease_name}" not in actions
    assert seen_after_records == [recreated_uid]
    assert TeardownPhase.GONE in phases
    # The platform collector cleans up the newer lease once the owner is gone
    assert_fully_removed(sql_client, key)


def test_delete_is_idempotent_mid_teardown(driver, sql_client):
    key = ClusterKey("pg", "hippo-twice")
    create_running_cluster(driver, key)
    on_platform(services.request_cluster_delete_logic, key.namespace, key.name)
    stamp = sql_client.get_cluster(key).deletion_timestamp

    driver.reconcile(key)
    on_platform(services.request_cluster_delete_logic, key.namespace, key.name)
    assert sql_client.get_cluster(key).deletion_timestamp == stamp

    converge(driver, key)
    assert_fully_removed(sql_client, key)


def test_namespace_deletion_tears_down_every_cluster(driver, sql_client):
    keys = [ClusterKey("team-a", "alpha"), ClusterKey("team-a", "beta")]
    for key in keys:
        create_running_cluster(driver, key, replicas=2)

    on_platform(services.request_namespace_delete_logic, "team-a")
    for key in keys:
        converge(driver, key)
        assert_fully_removed(sql_client, key)

    on_platform(collect)
    assert on_platform(lambda db: db.query(NamespaceModel).count()) == 0
