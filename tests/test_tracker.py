import pytest

from power_sequencer.errors import TransportError
from power_sequencer.models import OperationKind, OperationState, PowerState
from power_sequencer.tracker import OperationTracker


def test_launch_returns_pending_operation(client, clock, cluster_ref):
    client.add_host("esx01")
    client.add_vm("app01", "esx01", power=PowerState.OFF)
    tracker = OperationTracker(client, cluster_ref, clock, poll_interval=1)

    operation = tracker.launch("app01", OperationKind.START_VM)

    assert operation.state is OperationState.PENDING
    assert operation.started_at == 0
    assert client.targets(OperationKind.START_VM) == ["app01"]


def test_rejected_launch_is_failed_but_still_observed(client, clock, cluster_ref):
    client.add_host("esx01")
    client.add_vm("app01", "esx01")
    client.add_vm("legacy01", "esx01")
    client.no_tools.add("legacy01")
    tracker = OperationTracker(client, cluster_ref, clock, poll_interval=1)

    tracker.launch("app01", OperationKind.SHUTDOWN_VM_GUEST)
    failed = tracker.launch("legacy01", OperationKind.SHUTDOWN_VM_GUEST)

    assert failed.state is OperationState.FAILED
    assert "VMware Tools" in failed.error

    observed = {op.target_name: op.state for op in tracker.observe(timeout=30)}
    assert observed == {
        "app01": OperationState.SUCCEEDED,
        "legacy01": OperationState.FAILED,
    }


def test_missing_target_fails_the_operation_not_the_batch(client, clock, cluster_ref):
    client.add_host("esx01")
    tracker = OperationTracker(client, cluster_ref, clock, poll_interval=1)

    operation = tracker.launch("ghost", OperationKind.START_VM)

    assert operation.state is OperationState.FAILED
    assert list(tracker.observe(timeout=10)) == [operation]


def test_each_operation_has_an_independent_deadline(client, clock, cluster_ref):
    client.add_host("esx01")
    client.add_host("esx02")
    client.stuck_hosts.add("esx02")
    tracker = OperationTracker(client, cluster_ref, clock, poll_interval=5)

    tracker.launch("esx01", OperationKind.ENTER_MAINTENANCE)
    tracker.launch("esx02", OperationKind.ENTER_MAINTENANCE)

    order = []
    for operation in tracker.observe(timeout=60):
        order.append((operation.target_name, operation.state, clock.now()))

    assert order == [
        ("esx01", OperationState.SUCCEEDED, 20),
        ("esx02", OperationState.TIMED_OUT, 60),
    ]
    assert "did not complete within 60s" in tracker.operations[1].error


def test_failed_task_reports_remote_error(client, clock, cluster_ref):
    client.add_host("esx01")
    client.add_vm("big01", "esx01", power=PowerState.OFF)
    client.fail_start.add("big01")
    tracker = OperationTracker(client, cluster_ref, clock, poll_interval=1)

    tracker.launch("big01", OperationKind.START_VM)
    (operation,) = list(tracker.observe(timeout=30))

    assert operation.state is OperationState.FAILED
    assert operation.error == "Insufficient resources"


def test_tracker_is_single_use(client, clock, cluster_ref):
    tracker = OperationTracker(client, cluster_ref, clock)
    list(tracker.observe(timeout=1))

    with pytest.raises(RuntimeError):
        list(tracker.observe(timeout=1))


def test_transport_error_on_launch_propagates(client, clock, cluster_ref):
    client.reachable = False
    tracker = OperationTracker(client, cluster_ref, clock)

    with pytest.raises(TransportError):
        tracker.launch("app01", OperationKind.START_VM)


def test_task_that_vanishes_while_polled_fails_only_that_operation(client, clock, cluster_ref):
    client.add_host("esx01")
    client.add_vm("app01", "esx01", power=PowerState.OFF)
    client.add_vm("app02", "esx01", power=PowerState.OFF)
    client.lost_tasks.add("app02")
    tracker = OperationTracker(client, cluster_ref, clock, poll_interval=1)

    tracker.launch("app01", OperationKind.START_VM)
    tracker.launch("app02", OperationKind.START_VM)
    observed = {op.target_name: op for op in tracker.observe(timeout=30)}

    assert observed["app01"].state is OperationState.SUCCEEDED
    assert observed["app02"].state is OperationState.FAILED
    assert "Object no longer exists" in observed["app02"].error
    assert observed["app02"].finished_at == 0


def test_transport_error_while_polling_propagates(client, clock, cluster_ref):
    client.add_host("esx01")
    client.add_vm("app01", "esx01", power=PowerState.OFF)
    tracker = OperationTracker(client, cluster_ref, clock, poll_interval=1)
    tracker.launch("app01", OperationKind.START_VM)
    client.reachable = False

    with pytest.raises(TransportError):
        list(tracker.observe(timeout=30))
