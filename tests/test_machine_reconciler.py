"""Tests for the machine reconciler.

Runs full reconcile passes through the manager against the in-memory
cloud so that status writes, tracker clearing and forward-progress checks
are exercised exactly as in production.
"""

from __future__ import annotations

import logging
from pathlib import Path
from unittest.mock import patch

import pytest
from cloud_mock import Harness, build_harness, make_cluster, make_machine, make_secret

from capic import conditions
from capic.cloud import CloudAuthError, PermanentCloudError, TransientCloudError
from capic.models import (
    FINALIZER,
    PAUSED_ANNOTATION,
    BootstrapSpec,
    ImageRef,
    MachinePhase,
    ResourceKey,
)
from capic.store import ConflictError


def _ready_cluster(h: Harness, **cluster_kwargs: object) -> ResourceKey:
    h.add(make_secret())
    key = h.add(make_cluster(host="192.0.2.10", **cluster_kwargs))  # type: ignore[arg-type]
    h.reconcile(key, passes=2)
    return key


def _delete_until_gone(h: Harness, key: ResourceKey, max_passes: int = 10) -> int:
    h.store.request_deletion(key)
    for passes in range(1, max_passes + 1):
        h.reconcile(key)
        if h.get(key) is None:
            return passes
    raise AssertionError(f"{key} still present after {max_passes} passes")


class TestMachineProvisioning:
    """Tests for the happy path from Pending to Running."""

    @pytest.fixture
    def h(self, tmp_path: Path) -> Harness:
        harness = build_harness(tmp_path)
        _ready_cluster(harness)
        return harness

    def test_first_pass_adds_finalizer_only(self, h: Harness) -> None:
        """Test that the finalizer is claimed before any cloud mutation."""
        key = h.add(make_machine())

        outcome = h.reconcile(key)

        assert FINALIZER in h.get(key).metadata.finalizers
        assert outcome.requeue_after == 0
        assert h.cloud.calls["create_server"] == 0

    def test_machine_reaches_running(self, h: Harness) -> None:
        """Test that a machine converges to Running with its addresses."""
        key = h.add(make_machine())

        outcome = h.reconcile(key, passes=2)

        machine = h.get(key)
        status = machine.status
        assert status.phase == MachinePhase.RUNNING
        assert status.ready is True
        assert status.provider_id == f"ionos://{status.instance_id}"
        assert status.addresses == ("10.0.0.5",)
        assert status.nic_id is not None
        assert status.ip_block_id is not None
        for condition_type in (
            conditions.READY,
            conditions.INSTANCE_PROVISIONED,
            conditions.NETWORK_ATTACHED,
            conditions.BOOTSTRAP_READY,
        ):
            assert conditions.is_true(status.conditions, condition_type), condition_type
        assert outcome.requeue_after == h.config.resync_interval_seconds

    def test_completed_requests_are_cleared_after_write(self, h: Harness) -> None:
        """Test that tracker entries are gone once their results are stored."""
        key = h.add(make_machine())

        h.reconcile(key, passes=2)

        assert h.tracker.list(key) == []

    def test_nic_gets_the_reserved_address(self, h: Harness) -> None:
        """Test that the NIC is attached with the IP of the reserved block."""
        key = h.add(make_machine())

        h.reconcile(key, passes=2)

        status = h.get(key).status
        server = h.cloud.servers[status.instance_id]
        assert server.nics[status.nic_id].ips == h.cloud.ip_blocks[status.ip_block_id].ips
        assert server.nics[status.nic_id].lan_id == 1

    def test_phases_advance_with_pending_requests(self, tmp_path: Path) -> None:
        """Test the phase sequence when each cloud request needs one extra poll."""
        h = build_harness(tmp_path)
        _ready_cluster(h)
        h.cloud.polls_to_complete = 1
        key = h.add(make_machine())
        h.reconcile(key)

        seen = []
        for _ in range(4):
            h.reconcile(key)
            seen.append(h.get(key).status.phase)

        assert seen == [
            MachinePhase.CREATING,
            MachinePhase.NETWORK_ATTACHING,
            MachinePhase.NETWORK_ATTACHING,
            MachinePhase.RUNNING,
        ]

    def test_pending_request_requeues_at_poll_interval(self, tmp_path: Path) -> None:
        """Test that an in-flight request is re-checked at the poll interval."""
        h = build_harness(tmp_path)
        _ready_cluster(h)
        h.cloud.polls_to_complete = 1
        key = h.add(make_machine())

        outcome = h.reconcile(key, passes=2)

        assert outcome.requeue_after == h.config.poll_interval_seconds
        assert outcome.backoff is False
        condition = conditions.get_condition(
            h.get(key).status.conditions, conditions.INSTANCE_PROVISIONED
        )
        assert condition.reason == conditions.REQUEST_IN_PROGRESS

    def test_running_machine_is_stable(self, h: Harness) -> None:
        """Test that further passes neither write nor mutate the cloud."""
        key = h.add(make_machine())
        h.reconcile(key, passes=2)
        version = h.get(key).metadata.resource_version

        h.reconcile(key, passes=3)

        assert h.get(key).metadata.resource_version == version
        assert h.cloud.calls["create_server"] == 1
        assert h.cloud.calls["reserve_ip_block"] == 1
        assert h.cloud.calls["attach_nic"] == 1


class TestMachineIdempotency:
    """Tests that repeated passes never duplicate cloud mutations."""

    def test_exactly_one_create_across_passes(self, tmp_path: Path) -> None:
        """Test that a slow create is polled, not re-issued."""
        h = build_harness(tmp_path)
        _ready_cluster(h)
        h.cloud.polls_to_complete = 4
        key = h.add(make_machine())

        h.reconcile(key, passes=5)

        assert h.cloud.calls["create_server"] == 1
        assert h.get(key).status.phase == MachinePhase.CREATING
        assert len(h.tracker.list(key)) == 1

    def test_exactly_one_create_across_restart(self, tmp_path: Path) -> None:
        """Test that the tracker survives a restart mid-create."""
        h = build_harness(tmp_path)
        _ready_cluster(h)
        h.cloud.polls_to_complete = 2
        key = h.add(make_machine())
        h.reconcile(key, passes=2)
        assert h.get(key).status.phase == MachinePhase.CREATING

        restarted = h.restart()
        restarted.reconcile(key, passes=8)

        machine = restarted.get(key)
        assert machine.status.phase == MachinePhase.RUNNING
        assert restarted.cloud.calls["create_server"] == 1
        assert len(restarted.cloud.servers) == 1

    def test_failed_status_write_does_not_duplicate_create(self, tmp_path: Path) -> None:
        """Test that a completed request survives a lost status write."""
        h = build_harness(tmp_path)
        _ready_cluster(h)
        key = h.add(make_machine())
        h.reconcile(key)

        with patch.object(h.store, "update", side_effect=ConflictError("stale")):
            h.reconcile(key)
        assert h.get(key).status.instance_id is None
        assert h.tracker.list(key) != []

        h.reconcile(key)

        assert h.get(key).status.phase == MachinePhase.RUNNING
        assert h.cloud.calls["create_server"] == 1
        assert h.tracker.list(key) == []

    def test_failed_request_survives_lost_status_write(self, tmp_path: Path) -> None:
        """Test that a failed create is not re-issued after a write conflict."""
        h = build_harness(tmp_path)
        _ready_cluster(h)
        h.cloud.fail_next_request("create_server", "image not found")
        key = h.add(make_machine())
        h.reconcile(key)
        real_update = h.store.update
        attempts = []

        def flaky_update(resource):  # type: ignore[no-untyped-def]
            attempts.append(resource)
            if len(attempts) == 1:
                raise ConflictError("stale")
            return real_update(resource)

        with patch.object(h.store, "update", side_effect=flaky_update):
            h.reconcile(key)

        assert len(attempts) == 2
        status = h.get(key).status
        assert status.phase == MachinePhase.FAILED
        assert status.failure_reason == "image not found"
        assert h.cloud.calls["create_server"] == 1
        assert h.cloud.servers == {}
        assert h.tracker.list(key) == []

    def test_failed_request_kept_until_failure_is_written(self, tmp_path: Path) -> None:
        """Test that a failed create stays tracked while the write keeps failing."""
        h = build_harness(tmp_path)
        _ready_cluster(h)
        h.cloud.fail_next_request("create_server", "image not found")
        key = h.add(make_machine())
        h.reconcile(key)

        with patch.object(h.store, "update", side_effect=ConflictError("stale")):
            h.reconcile(key)
        assert h.get(key).status.phase != MachinePhase.FAILED
        assert len(h.tracker.list(key)) == 1

        h.reconcile(key)

        assert h.get(key).status.phase == MachinePhase.FAILED
        assert h.cloud.calls["create_server"] == 1
        assert h.tracker.list(key) == []


class TestMachineBootstrap:
    """Tests for bootstrap data and readiness handling."""

    def test_waits_for_bootstrap_data_secret(self, tmp_path: Path) -> None:
        """Test that no server is created before its user data exists."""
        h = build_harness(tmp_path)
        _ready_cluster(h)
        key = h.add(make_machine(data_secret="demo-cp-0-bootstrap"))

        outcome = h.reconcile(key, passes=2)

        condition = conditions.get_condition(
            h.get(key).status.conditions, conditions.INSTANCE_PROVISIONED
        )
        assert condition.reason == conditions.WAITING_FOR_BOOTSTRAP_DATA
        assert outcome.requeue_after == h.config.poll_interval_seconds
        assert h.cloud.calls["create_server"] == 0

    def test_user_data_passed_to_create(self, tmp_path: Path) -> None:
        """Test that the bootstrap secret value becomes the server's user data."""
        h = build_harness(tmp_path)
        _ready_cluster(h)
        h.add(make_secret("demo-cp-0-bootstrap", data={"value": "#cloud-config\n"}))
        key = h.add(make_machine(data_secret="demo-cp-0-bootstrap"))

        h.reconcile(key, passes=2)

        server = h.cloud.servers[h.get(key).status.instance_id]
        assert server.user_data == "#cloud-config\n"

    def test_waits_for_bootstrap_ready(self, tmp_path: Path) -> None:
        """Test that a machine stays Bootstrapping until bootstrap is ready."""
        h = build_harness(tmp_path)
        _ready_cluster(h)
        key = h.add(make_machine(bootstrap_ready=False))

        h.reconcile(key, passes=3)

        status = h.get(key).status
        assert status.phase == MachinePhase.BOOTSTRAPPING
        assert status.ready is False
        ready = conditions.get_condition(status.conditions, conditions.READY)
        assert ready.reason == conditions.WAITING_FOR_BOOTSTRAP

        h.edit_spec(key, bootstrap=BootstrapSpec(ready=True))
        h.reconcile(key)

        assert h.get(key).status.phase == MachinePhase.RUNNING


class TestMachineWaiting:
    """Tests for prerequisites that are not met yet."""

    def test_waits_for_cluster(self, tmp_path: Path) -> None:
        """Test that a machine waits while its cluster is not Ready."""
        h = build_harness(tmp_path)
        key = h.add(make_machine())

        h.reconcile(key, passes=2)

        machine = h.get(key)
        assert machine.status.phase == MachinePhase.PENDING
        condition = conditions.get_condition(
            machine.status.conditions, conditions.INSTANCE_PROVISIONED
        )
        assert condition.reason == conditions.WAITING_FOR_CLUSTER
        assert sum(h.cloud.calls.values()) == 0

    def test_missing_cluster_label_fails(self, tmp_path: Path) -> None:
        """Test that a machine without a cluster label is Failed."""
        h = build_harness(tmp_path)
        key = h.add(make_machine(cluster=None))

        h.reconcile(key, passes=2)

        assert h.get(key).status.phase == MachinePhase.FAILED

    def test_paused_machine_is_untouched(self, tmp_path: Path) -> None:
        """Test that a paused machine is not reconciled at all."""
        h = build_harness(tmp_path)
        _ready_cluster(h)
        key = h.add(make_machine(annotations={PAUSED_ANNOTATION: "true"}))

        h.reconcile(key, passes=2)

        assert h.get(key).metadata.finalizers == ()
        assert h.cloud.calls["create_server"] == 0

    def test_paused_cluster_pauses_machines(self, tmp_path: Path) -> None:
        """Test that pausing the cluster also pauses its machines."""
        h = build_harness(tmp_path)
        cluster_key = _ready_cluster(h)
        cluster = h.get(cluster_key)
        metadata = cluster.metadata.model_copy(update={"annotations": {PAUSED_ANNOTATION: ""}})
        h.store.update(cluster.model_copy(update={"metadata": metadata}))
        key = h.add(make_machine())

        h.reconcile(key, passes=2)

        assert h.cloud.calls["create_server"] == 0


class TestMachineErrors:
    """Tests for transient and permanent cloud failures."""

    @pytest.fixture
    def h(self, tmp_path: Path) -> Harness:
        harness = build_harness(tmp_path)
        _ready_cluster(harness)
        return harness

    def test_failed_create_request_marks_failed(self, h: Harness) -> None:
        """Test that a FAILED create request is surfaced verbatim."""
        h.cloud.fail_next_request("create_server", "image not found")
        key = h.add(make_machine())

        outcome = h.reconcile(key, passes=2)

        status = h.get(key).status
        assert status.phase == MachinePhase.FAILED
        assert status.ready is False
        assert status.failure_reason == "image not found"
        assert status.failure_message == "CreateError: image not found"
        assert outcome.requeue_after is None
        assert outcome.backoff is False
        assert h.tracker.list(key) == []

    def test_failed_machine_is_not_retried(self, h: Harness) -> None:
        """Test that Failed is terminal until the spec changes."""
        h.cloud.fail_next_request("create_server", "image not found")
        key = h.add(make_machine())
        h.reconcile(key, passes=2)

        h.reconcile(key, passes=3)

        assert h.cloud.calls["create_server"] == 1
        assert h.get(key).status.phase == MachinePhase.FAILED

    def test_spec_edit_resumes_failed_machine(self, h: Harness) -> None:
        """Test that fixing the image lets the machine converge."""
        h.cloud.fail_next_request("create_server", "image not found")
        key = h.add(make_machine())
        h.reconcile(key, passes=2)

        disk = h.get(key).spec.disk.model_copy(update={"image": ImageRef(id="img-fixed")})
        h.edit_spec(key, disk=disk)
        h.reconcile(key)

        status = h.get(key).status
        assert status.phase == MachinePhase.RUNNING
        assert status.failure_reason is None
        assert status.failure_message is None
        assert status.observed_generation == 2
        assert h.cloud.calls["create_server"] == 2

    def test_synchronous_permanent_error_marks_failed(self, h: Harness) -> None:
        """Test that a rejected create call fails the machine."""
        h.cloud.inject_error("create_server", PermanentCloudError("invalid cpu family", 422))
        key = h.add(make_machine())

        h.reconcile(key, passes=2)

        status = h.get(key).status
        assert status.phase == MachinePhase.FAILED
        assert status.failure_reason == "invalid cpu family"

    def test_transient_error_degrades_and_retries(self, h: Harness) -> None:
        """Test that a rate limit is retried with backoff without failing."""
        h.cloud.inject_error("create_server", TransientCloudError("rate limited", 429))
        key = h.add(make_machine())

        outcome = h.reconcile(key, passes=2)

        status = h.get(key).status
        assert outcome.backoff is True
        assert status.phase == MachinePhase.PENDING
        assert status.failure_reason is None
        degraded = conditions.get_condition(status.conditions, conditions.DEGRADED)
        assert degraded.reason == conditions.CREATE_ERROR
        assert degraded.message == "rate limited"

        h.reconcile(key)

        status = h.get(key).status
        assert status.phase == MachinePhase.RUNNING
        assert conditions.get_condition(status.conditions, conditions.DEGRADED) is None
        assert h.cloud.calls["create_server"] == 2
        assert len(h.cloud.servers) == 1

    def test_auth_error_does_not_fail_machine(self, h: Harness) -> None:
        """Test that rejected credentials are retried, not terminal."""
        h.cloud.inject_error("create_server", CloudAuthError("Unauthorized", 401))
        key = h.add(make_machine())

        outcome = h.reconcile(key, passes=2)

        assert outcome.backoff is True
        assert h.get(key).status.phase == MachinePhase.PENDING

    def test_external_deletion_marks_failed(self, h: Harness) -> None:
        """Test that a server removed outside the provider is reported."""
        key = h.add(make_machine())
        h.reconcile(key, passes=2)
        instance_id = h.get(key).status.instance_id

        h.cloud.delete_externally(instance_id)
        h.reconcile(key)

        status = h.get(key).status
        assert status.phase == MachinePhase.FAILED
        assert status.ready is False
        ready = conditions.get_condition(status.conditions, conditions.READY)
        assert ready.reason == conditions.INSTANCE_NOT_FOUND
        assert instance_id in status.failure_reason

    def test_spec_edit_after_external_deletion_recreates(self, h: Harness) -> None:
        """Test that a new server replaces a vanished one after a spec edit."""
        key = h.add(make_machine())
        h.reconcile(key, passes=2)
        old_instance = h.get(key).status.instance_id
        h.cloud.delete_externally(old_instance)
        h.reconcile(key)

        h.edit_spec(key, num_cores=4)
        h.reconcile(key)

        status = h.get(key).status
        assert status.phase == MachinePhase.RUNNING
        assert status.instance_id != old_instance
        assert h.cloud.calls["create_server"] == 2
        # The IP block is reused for the replacement server
        assert h.cloud.calls["reserve_ip_block"] == 1

    def test_stale_request_is_logged_and_backed_off(
        self, h: Harness, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test that a request pending past the threshold is flagged."""
        h.cloud.polls_to_complete = 1000
        key = h.add(make_machine())
        h.reconcile(key, passes=2)

        h.clock.advance(h.config.request_stale_after_seconds + 1)
        with caplog.at_level(logging.WARNING, logger="capic.machine"):
            outcome = h.reconcile(key)

        assert outcome.backoff is True
        condition = conditions.get_condition(
            h.get(key).status.conditions, conditions.INSTANCE_PROVISIONED
        )
        assert condition.reason == conditions.REQUEST_STALE
        assert any("pending for" in r.getMessage() for r in caplog.records)
        # Still one request; staleness never re-issues
        assert h.cloud.calls["create_server"] == 1


class TestMachineDeletion:
    """Tests for teardown of machines."""

    @pytest.fixture
    def h(self, tmp_path: Path) -> Harness:
        harness = build_harness(tmp_path)
        _ready_cluster(harness)
        return harness

    def test_delete_running_machine(self, h: Harness) -> None:
        """Test that server and IP block are removed before the finalizer."""
        key = h.add(make_machine())
        h.reconcile(key, passes=2)

        _delete_until_gone(h, key)

        assert h.cloud.servers == {}
        assert h.cloud.ip_blocks == {}
        assert h.cloud.calls["delete_server"] == 1
        assert h.cloud.calls["release_ip_block"] == 1
        assert h.tracker.list(key) == []

    def test_delete_without_cloud_resources(self, h: Harness) -> None:
        """Test that a machine that never provisioned is removed at once."""
        key = h.add(make_machine(data_secret="missing-bootstrap"))
        h.reconcile(key, passes=2)

        passes = _delete_until_gone(h, key)

        assert passes == 1
        assert h.cloud.calls["delete_server"] == 0

    def test_finalizer_kept_while_delete_pending(self, tmp_path: Path) -> None:
        """Test that the object stays until the cloud confirms the deletion."""
        h = build_harness(tmp_path)
        _ready_cluster(h)
        key = h.add(make_machine())
        h.reconcile(key, passes=2)
        h.cloud.polls_to_complete = 2

        h.store.request_deletion(key)
        h.reconcile(key)

        machine = h.get(key)
        assert machine is not None
        assert FINALIZER in machine.metadata.finalizers
        assert machine.status.phase == MachinePhase.DELETING
        assert len(h.cloud.servers) == 1

    def test_delete_mid_network_attaching(self, tmp_path: Path) -> None:
        """Test that an in-flight IP reservation is settled and released."""
        h = build_harness(tmp_path)
        _ready_cluster(h)
        h.cloud.polls_to_complete = 1
        key = h.add(make_machine())
        h.reconcile(key, passes=3)
        assert h.get(key).status.phase == MachinePhase.NETWORK_ATTACHING
        assert h.get(key).status.ip_block_id is None

        _delete_until_gone(h, key)

        assert h.cloud.servers == {}
        assert h.cloud.ip_blocks == {}
        assert h.cloud.calls["attach_nic"] == 0
        assert h.cloud.calls["delete_server"] == 1
        assert h.cloud.calls["release_ip_block"] == 1
        assert h.tracker.list(key) == []

    def test_delete_when_server_already_gone(self, h: Harness) -> None:
        """Test that NotFound on delete counts as success."""
        key = h.add(make_machine())
        h.reconcile(key, passes=2)
        h.cloud.delete_externally(h.get(key).status.instance_id)

        passes = _delete_until_gone(h, key)

        assert passes == 1
        assert h.cloud.ip_blocks == {}

    def test_delete_transient_error_keeps_finalizer(self, h: Harness) -> None:
        """Test that a failed delete call is retried with backoff."""
        key = h.add(make_machine())
        h.reconcile(key, passes=2)
        h.cloud.inject_error("delete_server", TransientCloudError("timed out", 504))

        h.store.request_deletion(key)
        outcome = h.reconcile(key)

        assert outcome.backoff is True
        machine = h.get(key)
        assert FINALIZER in machine.metadata.finalizers
        degraded = conditions.get_condition(machine.status.conditions, conditions.DEGRADED)
        assert degraded.reason == conditions.DELETE_ERROR

        h.reconcile(key)

        assert h.get(key) is None
        assert h.cloud.servers == {}

    def test_delete_failed_machine(self, h: Harness) -> None:
        """Test that a Failed machine can still be deleted."""
        h.cloud.fail_next_request("create_server", "image not found")
        key = h.add(make_machine())
        h.reconcile(key, passes=2)

        _delete_until_gone(h, key)

        assert h.get(key) is None

    def test_stale_delete_is_logged_and_backed_off(
        self, h: Harness, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test that a delete pending past the threshold is flagged."""
        key = h.add(make_machine())
        h.reconcile(key, passes=2)
        h.cloud.polls_to_complete = 1000
        h.store.request_deletion(key)
        outcome = h.reconcile(key)
        assert outcome.backoff is False
        assert outcome.requeue_after == h.config.poll_interval_seconds

        h.clock.advance(h.config.request_stale_after_seconds + 1)
        with caplog.at_level(logging.WARNING, logger="capic.machine"):
            outcome = h.reconcile(key)

        assert outcome.backoff is True
        machine = h.get(key)
        assert FINALIZER in machine.metadata.finalizers
        assert machine.status.phase == MachinePhase.DELETING
        degraded = conditions.get_condition(machine.status.conditions, conditions.DEGRADED)
        assert degraded.reason == conditions.REQUEST_STALE
        assert any(
            "DeleteServer" in r.getMessage() and "pending for" in r.getMessage()
            for r in caplog.records
        )
        assert h.cloud.calls["delete_server"] == 1

    def test_failed_delete_is_reissued_after_write(self, h: Harness) -> None:
        """Test that a failed delete request is retried on the next pass."""
        key = h.add(make_machine())
        h.reconcile(key, passes=2)
        h.cloud.fail_next_request("delete_server", "internal error")
        h.store.request_deletion(key)

        outcome = h.reconcile(key)

        assert outcome.backoff is True
        degraded = conditions.get_condition(h.get(key).status.conditions, conditions.DEGRADED)
        assert degraded.reason == conditions.DELETE_ERROR
        assert h.tracker.list(key) == []

        h.reconcile(key)

        assert h.get(key) is None
        assert h.cloud.calls["delete_server"] == 2
