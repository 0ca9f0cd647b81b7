import threading

import pytest

from power_sequencer.classifier import build_plan, classify
from power_sequencer.errors import TransportError
from power_sequencer.models import Direction, OperationKind, PowerState
from power_sequencer.phases import PhaseExecutor


@pytest.fixture
def executor(client, cluster_ref, configuration, clock):
    return PhaseExecutor(client, cluster_ref, configuration, clock)


def populate(client, power=PowerState.ON):
    client.add_host("esx01")
    client.add_host("esx02")
    client.add_vm("vcsa", "esx01", power)
    client.add_vm("db01", "esx01", power, {"tier": "db"})
    client.add_vm("app01", "esx02", power, {"tier": "app"})
    client.add_vm("app02", "esx02", power, {"tier": "app"})
    client.add_vm("web01", "esx01", power, {"tier": "web"})
    client.add_vm("jump01", "esx02", power)


def snapshot_vms(client, cluster_ref):
    return client.list_vms(cluster_ref)


def test_shutdown_phases_run_strictly_in_order(client, cluster_ref, configuration, executor):
    populate(client)
    plan = build_plan(configuration)
    classification = classify(snapshot_vms(client, cluster_ref), plan, Direction.SHUTDOWN)

    results = executor.run(classification)

    assert [r.category.name for r in results] == ["tier=web", "tier=app", "tier=db", "priority", "other"]
    assert client.targets(OperationKind.SHUTDOWN_VM_GUEST) == [
        "web01", "app01", "app02", "db01", "vcsa", "jump01",
    ]
    # each phase only starts once the previous one has fully converged
    launch_times = {call[2]: call[0] for call in client.operations(OperationKind.SHUTDOWN_VM_GUEST)}
    assert launch_times["web01"] < launch_times["app01"] == launch_times["app02"]
    assert launch_times["app01"] + client.guest_delay <= launch_times["db01"]
    assert launch_times["db01"] + client.guest_delay <= launch_times["vcsa"]
    assert all(r.ok and r.forced_count == 0 for r in results)
    assert all(vm["power"] is PowerState.OFF for vm in client.vms.values())


def test_members_of_a_phase_are_issued_before_any_wait(client, cluster_ref, configuration, executor, clock):
    populate(client)
    plan = build_plan(configuration)
    classification = classify(snapshot_vms(client, cluster_ref), plan, Direction.SHUTDOWN)

    executor.run_phase(
        list(classification.groups)[1], classification.groups[list(classification.groups)[1]], Direction.SHUTDOWN
    )

    times = [call[0] for call in client.operations(OperationKind.SHUTDOWN_VM_GUEST)]
    assert times == [0, 0]


def test_graceful_timeout_escalates_to_force_stop_for_that_vm_only(client, cluster_ref, configuration, executor):
    populate(client)
    client.stubborn.add("app02")
    plan = build_plan(configuration)
    classification = classify(snapshot_vms(client, cluster_ref), plan, Direction.SHUTDOWN)

    results = executor.run(classification)

    app_phase = results[1]
    assert app_phase.category.name == "tier=app"
    assert app_phase.forced_count == 1
    assert app_phase.succeeded == 2
    assert app_phase.ok
    assert client.targets(OperationKind.FORCE_STOP_VM) == ["app02"]
    # the run continued with the remaining phases
    assert [r.category.name for r in results][2:] == ["tier=db", "priority", "other"]
    assert client.vms["jump01"]["power"] is PowerState.OFF


def test_tools_unavailable_goes_straight_to_force_stop(client, cluster_ref, configuration, executor, clock):
    populate(client)
    client.no_tools.add("web01")
    plan = build_plan(configuration)
    classification = classify(snapshot_vms(client, cluster_ref), plan, Direction.SHUTDOWN)

    result = executor.run_phase(
        plan.shutdown_order[0], classification.groups[plan.shutdown_order[0]], Direction.SHUTDOWN
    )

    assert result.forced_count == 1
    assert result.ok
    # no graceful wait was spent on a VM whose guest shutdown was rejected
    assert clock.now() < configuration.timeouts.vm_shutdown


def test_force_fallback_accounts_for_every_member(client, cluster_ref, configuration, executor):
    populate(client)
    client.stubborn.update({"app01", "app02"})
    client.unstoppable.add("app02")
    plan = build_plan(configuration)
    category = plan.shutdown_order[1]
    members = classify(snapshot_vms(client, cluster_ref), plan, Direction.SHUTDOWN).groups[category]

    result = executor.run_phase(category, members, Direction.SHUTDOWN)

    assert result.attempted == 2
    assert result.succeeded_names == {"app01"}
    assert result.failed_names == {"app02"}
    assert result.succeeded_names.isdisjoint(result.failed_names)
    assert result.attempted == result.succeeded + len(result.failed_names)
    assert result.failures["app02"] == "Device busy"
    assert result.forced_count == 1


def test_vm_disappearing_mid_phase_is_recorded_not_fatal(client, cluster_ref, configuration, executor, clock):
    populate(client)
    client.stubborn.add("app02")
    plan = build_plan(configuration)
    category = plan.shutdown_order[1]
    members = classify(snapshot_vms(client, cluster_ref), plan, Direction.SHUTDOWN).groups[category]
    clock.at(15, lambda: client.vms.pop("app02"))

    result = executor.run_phase(category, members, Direction.SHUTDOWN)

    assert result.failures == {"app02": "VM not found"}
    assert result.succeeded_names == {"app01"}


def test_startup_failure_is_reported_without_retry(client, cluster_ref, configuration, executor):
    populate(client, power=PowerState.OFF)
    client.fail_start.add("db01")
    plan = build_plan(configuration)
    classification = classify(snapshot_vms(client, cluster_ref), plan, Direction.STARTUP)

    results = executor.run(classification)

    db_phase = results[1]
    assert db_phase.category.name == "tier=db"
    assert db_phase.failures == {"db01": "Insufficient resources"}
    assert db_phase.forced_count == 0
    assert client.targets(OperationKind.START_VM).count("db01") == 1
    assert not client.operations(OperationKind.FORCE_STOP_VM)
    assert client.vms["web01"]["power"] is PowerState.ON


def test_startup_applies_grace_delay_between_categories(client, cluster_ref, configuration, executor, clock):
    populate(client, power=PowerState.OFF)
    plan = build_plan(configuration)
    classification = classify(snapshot_vms(client, cluster_ref), plan, Direction.STARTUP)

    executor.run(classification)

    grace = configuration.timeouts.startup_grace_delay
    # priority, db, app, web are followed by a grace delay; other is last
    assert clock.sleeps.count(grace) == 4
    starts = {call[2]: call[0] for call in client.operations(OperationKind.START_VM)}
    assert starts["db01"] >= starts["vcsa"] + client.task_delay + grace


def test_empty_categories_issue_nothing(client, cluster_ref, configuration, executor):
    client.add_host("esx01")
    plan = build_plan(configuration)

    results = executor.run(classify([], plan, Direction.SHUTDOWN))

    assert len(results) == len(plan.shutdown_order)
    assert all(r.attempted == 0 for r in results)
    assert client.calls == []


def test_cancellation_stops_before_next_phase(client, cluster_ref, configuration, clock):
    populate(client)
    cancel = threading.Event()
    executor = PhaseExecutor(client, cluster_ref, configuration, clock, cancel_event=cancel)
    plan = build_plan(configuration)
    classification = classify(snapshot_vms(client, cluster_ref), plan, Direction.SHUTDOWN)
    clock.at(1, cancel.set)

    results = executor.run(classification)

    assert [r.category.name for r in results] == ["tier=web"]
    assert client.targets(OperationKind.SHUTDOWN_VM_GUEST) == ["web01"]


def test_cancellation_during_convergence_still_completes_force_fallback(client, cluster_ref, configuration, clock):
    populate(client)
    client.stubborn.add("web01")
    cancel = threading.Event()
    executor = PhaseExecutor(client, cluster_ref, configuration, clock, cancel_event=cancel)
    plan = build_plan(configuration)
    classification = classify(snapshot_vms(client, cluster_ref), plan, Direction.SHUTDOWN)
    clock.at(10, cancel.set)

    results = executor.run(classification)

    assert len(results) == 1
    assert results[0].forced_count == 1
    assert client.vms["web01"]["power"] is PowerState.OFF


def test_transport_error_carries_phase_context(client, cluster_ref, configuration, executor, clock):
    populate(client)
    plan = build_plan(configuration)
    classification = classify(snapshot_vms(client, cluster_ref), plan, Direction.SHUTDOWN)
    clock.at(5, lambda: setattr(client, "reachable", False))

    with pytest.raises(TransportError) as excinfo:
        executor.run(classification)

    assert excinfo.value.stage == "shutdown phase tier=web"


def test_cancellation_skips_startup_grace_delay(client, cluster_ref, configuration, clock):
    populate(client, power=PowerState.OFF)
    cancel = threading.Event()
    executor = PhaseExecutor(client, cluster_ref, configuration, clock, cancel_event=cancel)
    plan = build_plan(configuration)
    classification = classify(snapshot_vms(client, cluster_ref), plan, Direction.STARTUP)
    clock.at(1, cancel.set)

    results = executor.run(classification)

    assert [r.category.name for r in results] == ["priority"]
    assert results[0].succeeded == 1
    assert configuration.timeouts.startup_grace_delay not in clock.sleeps
    assert client.targets(OperationKind.START_VM) == ["vcsa"]
