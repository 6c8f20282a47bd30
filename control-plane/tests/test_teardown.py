"""Tests for the teardown planner and TeardownController"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from reconciler import naming
from reconciler.platform_client import PlatformClient
from reconciler.resources import (
    Cluster,
    ClusterKey,
    ConflictError,
    ConsensusRecord,
    Instance,
    NotFoundError,
    PlatformTimeoutError,
    PropagationPolicy,
    RecordKind,
    Role,
    TeardownPhase,
)
from reconciler.teardown import TeardownController, plan_teardown

KEY = ClusterKey("pg", "hippo")
DELETED_AT = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_cluster(deleting=True, finalizers=None, propagation=PropagationPolicy.BACKGROUND):
    return Cluster(
        key=KEY,
        resource_version="7",
        replicas=3,
        finalizers=[naming.FINALIZER] if finalizers is None else finalizers,
        deletion_timestamp=DELETED_AT if deleting else None,
        propagation=propagation,
    )


def make_instance(name, role, terminating=False):
    return Instance(name=name, cluster=KEY, role=role, ready=not terminating, workload=name, terminating=terminating)


def make_record(name, offset_seconds=-60, uid=""):
    return ConsensusRecord(
        name=name,
        cluster=KEY,
        kind=naming.record_kind_from_name(KEY.name, name),
        created_at=DELETED_AT + timedelta(seconds=offset_seconds),
        uid=uid or f"uid-{name}",
    )


@pytest.fixture
def client():
    mock = MagicMock(spec=PlatformClient)
    mock.list_instances.return_value = []
    mock.list_consensus_records.return_value = []
    return mock


class TestPlanTeardown:
    def test_active_cluster_is_left_alone(self):
        plan = plan_teardown(make_cluster(deleting=False), [make_instance("a", Role.PRIMARY)], [])
        assert plan.phase is TeardownPhase.ACTIVE
        assert plan.action == "none"

    def test_cluster_without_finalizer_is_gone(self):
        plan = plan_teardown(make_cluster(finalizers=[]), [make_instance("a", Role.REPLICA)], [])
        assert plan.phase is TeardownPhase.GONE
        assert plan.instances == ()

    def test_replicas_before_primary(self):
        instances = [
            make_instance("hippo-instance-2", Role.REPLICA),
            make_instance("hippo-instance-0", Role.PRIMARY),
            make_instance("hippo-instance-1", Role.REPLICA),
        ]
        plan = plan_teardown(make_cluster(), instances, [])
        assert plan.phase is TeardownPhase.DRAINING_REPLICAS
        assert [i.name for i in plan.instances] == ["hippo-instance-1", "hippo-instance-2"]

    def test_unlabelled_instances_are_drained_with_replicas(self):
        instances = [make_instance("hippo-instance-0", Role.UNKNOWN), make_instance("hippo-instance-1", Role.PRIMARY)]
        plan = plan_teardown(make_cluster(), instances, [])
        assert [i.name for i in plan.instances] == ["hippo-instance-0"]

    def test_terminating_replica_still_blocks_primary(self):
        instances = [
            make_instance("hippo-instance-0", Role.PRIMARY),
            make_instance("hippo-instance-1", Role.REPLICA, terminating=True),
        ]
        plan = plan_teardown(make_cluster(), instances, [])
        assert plan.phase is TeardownPhase.DRAINING_REPLICAS

    def test_primary_only(self):
        plan = plan_teardown(make_cluster(), [make_instance("hippo-instance-0", Role.PRIMARY)], [make_record("hippo-config")])
        assert plan.phase is TeardownPhase.PRIMARY_ONLY
        assert plan.records == ()

    def test_records_at_or_before_deletion_only(self):
        records = [
            make_record("hippo-config", -30),
            make_record("hippo-leader", 5),
            make_record("hippo", 0),
        ]
        plan = plan_teardown(make_cluster(), [], records)
        assert plan.phase is TeardownPhase.RECORDS_PENDING
        assert [r.name for r in plan.records] == ["hippo", "hippo-config"]

    def test_only_newer_records_left_means_finalizing(self):
        plan = plan_teardown(make_cluster(), [], [make_record("hippo-leader", 5)])
        assert plan.phase is TeardownPhase.FINALIZING
        assert plan.remove_finalizer


class TestTeardownController:
    def test_deletes_replicas_and_does_not_touch_records(self, client):
        client.list_instances.return_value = [
            make_instance("hippo-instance-0", Role.PRIMARY),
            make_instance("hippo-instance-1", Role.REPLICA),
        ]
        result = TeardownController(client).handle_delete(make_cluster())

        assert result.phase is TeardownPhase.DRAINING_REPLICAS
        assert result.deleted == ["hippo-instance-1"]
        client.delete_instance.assert_called_once()
        assert client.delete_instance.call_args[0][0].name == "hippo-instance-1"
        client.list_consensus_records.assert_not_called()
        client.delete_consensus_record.assert_not_called()
        client.patch_finalizers.assert_not_called()

    def test_propagation_of_cluster_is_used(self, client):
        client.list_instances.return_value = [make_instance("hippo-instance-0", Role.PRIMARY)]
        TeardownController(client).handle_delete(make_cluster(propagation=PropagationPolicy.FOREGROUND))
        client.delete_instance.assert_called_once_with(
            client.list_instances.return_value[0], PropagationPolicy.FOREGROUND
        )

    def test_deletes_old_records_after_instances(self, client):
        old, new = make_record("hippo-config", -10), make_record("hippo-leader", 10)
        client.list_consensus_records.return_value = [old, new]
        result = TeardownController(client).handle_delete(make_cluster())

        assert result.phase is TeardownPhase.RECORDS_PENDING
        assert result.deleted == ["hippo-config"]
        client.delete_consensus_record.assert_called_once_with(old, PropagationPolicy.BACKGROUND)

    def test_recreated_record_is_not_reported_deleted(self, client):
        client.list_consensus_records.return_value = [make_record("hippo-leader", -10, uid="old-uid")]
        client.delete_consensus_record.side_effect = ConflictError("uid precondition failed")
        result = TeardownController(client).handle_delete(make_cluster())

        assert not result.interrupted
        assert result.deleted == []

    def test_finalizing_keeps_foreign_finalizers(self, client):
        cluster = make_cluster(finalizers=["example.com/backup", naming.FINALIZER])
        result = TeardownController(client).handle_delete(cluster)

        assert result.phase is TeardownPhase.FINALIZING
        assert result.finalizers == ["example.com/backup"]
        # Persisting the finalizer list is the caller's job
        client.patch_finalizers.assert_not_called()

    def test_gone_does_nothing(self, client):
        result = TeardownController(client).handle_delete(make_cluster(finalizers=[]))
        assert result.complete
        client.list_instances.assert_called_once()
        client.delete_instance.assert_not_called()

    def test_instance_already_gone_is_not_an_error(self, client):
        client.list_instances.return_value = [make_instance("hippo-instance-1", Role.REPLICA)]
        client.delete_instance.side_effect = NotFoundError("gone")
        result = TeardownController(client).handle_delete(make_cluster())
        assert not result.interrupted
        assert result.deleted == ["hippo-instance-1"]

    def test_transient_error_interrupts_without_advancing(self, client):
        client.list_instances.return_value = [
            make_instance("hippo-instance-1", Role.REPLICA),
            make_instance("hippo-instance-2", Role.REPLICA),
        ]
        client.delete_instance.side_effect = PlatformTimeoutError("slow")
        result = TeardownController(client).handle_delete(make_cluster())

        assert result.interrupted
        assert result.phase is TeardownPhase.DRAINING_REPLICAS
        assert "slow" in result.error
        assert result.finalizers is None

    def test_list_failure_interrupts(self, client):
        client.list_instances.side_effect = PlatformTimeoutError("apiserver unavailable")
        result = TeardownController(client).handle_delete(make_cluster())
        assert result.interrupted
        assert result.phase is None

    def test_repeated_calls_converge_to_same_request(self, client):
        client.list_instances.return_value = [make_instance("hippo-instance-1", Role.REPLICA, terminating=True)]
        controller = TeardownController(client)
        first = controller.handle_delete(make_cluster())
        second = controller.handle_delete(make_cluster())
        assert first.deleted == second.deleted == ["hippo-instance-1"]
        assert client.delete_instance.call_count == 2
