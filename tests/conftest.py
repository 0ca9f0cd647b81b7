import math

import pytest

from power_sequencer.config import Configuration, TagGroup, Timeouts
from power_sequencer.errors import ClusterNotFound, NotFoundError, OperationFailed, TransportError
from power_sequencer.models import (
    ClusterRef,
    ConnectionState,
    HostInfo,
    OperationKind,
    OperationState,
    PowerMode,
    PowerState,
    VMInfo,
)


class FakeClock:
    """Deterministic clock; sleeping advances time and fires due alarms."""

    def __init__(self):
        self.current = 0.0
        self.sleeps = []
        self.alarms = []

    def now(self):
        return self.current

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.current += seconds
        for alarm in list(self.alarms):
            at, callback = alarm
            if self.current >= at:
                self.alarms.remove(alarm)
                callback()

    def wait(self, seconds, cancel_event=None):
        if cancel_event is not None and cancel_event.is_set():
            return False
        self.sleep(seconds)
        return cancel_event is None or not cancel_event.is_set()

    def at(self, when, callback):
        self.alarms.append((when, callback))


class FakeTask:
    def __init__(self, kind, target, done_at, effect=None, error=None):
        self.kind = kind
        self.target = target
        self.done_at = done_at
        self.effect = effect
        self.error = error
        self.applied = False


class FakeClusterClient:
    """
    In-memory vCenter.

    Operations complete after a simulated delay measured on the shared clock.
    Every issued operation is recorded in ``calls`` as (time, kind, target, options).
    """

    def __init__(self, clock, cluster="prod"):
        self.clock = clock
        self.cluster = cluster
        self.hosts = {}
        self.vms = {}
        self.calls = []
        self.tasks = []
        self.violations = []
        self.reachable = True

        self.guest_delay = 10
        self.task_delay = 5
        self.maintenance_delay = 20

        self.stubborn = set()
        self.no_tools = set()
        self.fail_start = set()
        self.unstoppable = set()
        self.stuck_hosts = set()
        self.failing_hosts = set()
        self.lost_tasks = set()

    # inventory setup

    def add_host(self, name, maintenance=False, connection=ConnectionState.CONNECTED):
        self.hosts[name] = {"connection": connection, "maintenance": maintenance}

    def add_vm(self, name, host, power=PowerState.ON, tags=None):
        self.vms[name] = {"power": power, "host": host, "tags": dict(tags or {})}

    # helpers

    def _check(self, cluster_ref=None):
        if not self.reachable:
            raise TransportError("vCenter unreachable")
        if cluster_ref is not None and cluster_ref.name != self.cluster:
            raise ClusterNotFound(f"Cluster '{cluster_ref.name}' not found", target=cluster_ref.name)

    def _advance(self):
        for task in self.tasks:
            if not task.applied and self.clock.now() >= task.done_at:
                task.applied = True
                if task.effect is not None and task.error is None:
                    task.effect()

    def _schedule(self, kind, target, delay, effect=None, error=None):
        task = FakeTask(kind, target, self.clock.now() + delay, effect, error)
        self.tasks.append(task)
        return task

    def _vm(self, name):
        if name not in self.vms:
            raise NotFoundError(f"VM '{name}' not found", target=name)
        return self.vms[name]

    def _host(self, name):
        if name not in self.hosts:
            raise NotFoundError(f"Host '{name}' not found", target=name)
        return self.hosts[name]

    def _set_power(self, name, power):
        def effect():
            if name in self.vms:
                self.vms[name]["power"] = power

        return effect

    def _set_maintenance(self, name, value):
        def effect():
            self.hosts[name]["maintenance"] = value

        return effect

    def _power_off_host(self, name):
        def effect():
            self.hosts[name]["connection"] = ConnectionState.NOT_RESPONDING

        return effect

    def operations(self, *kinds):
        return [call for call in self.calls if not kinds or call[1] in kinds]

    def targets(self, *kinds):
        return [call[2] for call in self.operations(*kinds)]

    # cluster client contract

    def list_hosts(self, cluster_ref):
        self._check(cluster_ref)
        self._advance()
        return [
            HostInfo(
                name=name,
                connection_state=state["connection"],
                power_mode=PowerMode.MAINTENANCE if state["maintenance"] else PowerMode.NORMAL,
            )
            for name, state in self.hosts.items()
        ]

    def list_vms(self, cluster_ref):
        self._check(cluster_ref)
        self._advance()
        return [
            VMInfo(name=name, power_state=state["power"], host_name=state["host"], tags=dict(state["tags"]))
            for name, state in self.vms.items()
        ]

    def launch_operation(self, target_name, kind, cluster_ref=None, **options):
        self._check(cluster_ref)
        self.calls.append((self.clock.now(), kind, target_name, options))

        if kind is OperationKind.SHUTDOWN_VM_GUEST:
            self._vm(target_name)
            if target_name in self.no_tools:
                raise OperationFailed("VMware Tools is not running", target=target_name)
            if target_name not in self.stubborn:
                self._schedule(kind, target_name, self.guest_delay, self._set_power(target_name, PowerState.OFF))
            return None

        if kind is OperationKind.START_VM:
            self._vm(target_name)
            if target_name in self.fail_start:
                return self._schedule(kind, target_name, self.task_delay, error="Insufficient resources")
            return self._schedule(kind, target_name, self.task_delay, self._set_power(target_name, PowerState.ON))

        if kind is OperationKind.FORCE_STOP_VM:
            self._vm(target_name)
            if target_name in self.unstoppable:
                return self._schedule(kind, target_name, self.task_delay, error="Device busy")
            return self._schedule(kind, target_name, self.task_delay, self._set_power(target_name, PowerState.OFF))

        if kind in (OperationKind.ENTER_MAINTENANCE, OperationKind.EXIT_MAINTENANCE):
            self._host(target_name)
            enter = kind is OperationKind.ENTER_MAINTENANCE
            if target_name in self.failing_hosts:
                raise OperationFailed("Host has running VMs that cannot be evacuated", target=target_name)
            if target_name in self.stuck_hosts:
                return self._schedule(kind, target_name, math.inf)
            return self._schedule(
                kind, target_name, self.maintenance_delay, self._set_maintenance(target_name, enter)
            )

        if kind is OperationKind.SHUTDOWN_HOST:
            host = self._host(target_name)
            if not host["maintenance"]:
                self.violations.append(f"{target_name} shut down outside maintenance mode")
            running = [
                name for name, vm in self.vms.items()
                if vm["host"] == target_name and vm["power"] is PowerState.ON and not name.startswith("vCLS")
            ]
            if running:
                self.violations.append(f"{target_name} shut down while running {running}")
            return self._schedule(kind, target_name, self.task_delay, self._power_off_host(target_name))

        raise ValueError(kind)

    def poll_operation(self, handle):
        self._check()
        if handle is None:
            return OperationState.SUCCEEDED, None
        self._advance()
        if handle.target in self.lost_tasks:
            raise NotFoundError(f"Object no longer exists: task for {handle.target}", target=handle.target)
        if self.clock.now() >= handle.done_at:
            if handle.error:
                return OperationState.FAILED, handle.error
            return OperationState.SUCCEEDED, None
        return OperationState.PENDING, None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client(clock):
    return FakeClusterClient(clock)


@pytest.fixture
def cluster_ref():
    return ClusterRef("prod")


@pytest.fixture
def timeouts():
    return Timeouts(
        vm_operation=30,
        vm_shutdown=60,
        vm_startup=60,
        force_stop=30,
        host_maintenance=120,
        connection=10,
        host_boot=100,
        poll_interval=5,
        startup_grace_delay=15,
    )


@pytest.fixture
def configuration(timeouts):
    return Configuration(
        cluster_name="prod",
        priority_vms=("vcsa",),
        tag_groups=(
            TagGroup("tier", "db"),
            TagGroup("tier", "app"),
            TagGroup("tier", "web"),
        ),
        infra_vm_prefix="vCLS",
        migration_mode="noAction",
        timeouts=timeouts,
    )
