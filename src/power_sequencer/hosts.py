"""
Host state transitions for Power Sequencer.

Maintenance entry and exit are issued for every target host first and then
waited on together; each host still gets its own outcome. Host shutdown is
only issued for hosts last seen in maintenance mode with no targeted VM left
running on them.
"""

import logging
import threading
from typing import Callable, Dict, Iterable, List, Optional

from .ilo_client import IloClient
from .inventory import InventorySnapshot, take_snapshot
from .models import (
    ClusterRef,
    HostOutcome,
    OperationKind,
    OperationState,
    PowerMode,
)
from .polling import Clock, wait_until
from .tracker import OperationTracker

logger = logging.getLogger("power-sequencer")


class HostStateController:
    """Moves hosts between normal and maintenance mode and powers them off or on."""

    def __init__(
        self,
        client,
        cluster_ref: ClusterRef,
        clock: Optional[Clock] = None,
        poll_interval: float = 5,
    ):
        self.client = client
        self.cluster_ref = cluster_ref
        self.clock = clock or Clock()
        self.poll_interval = poll_interval

    def enter_maintenance(
        self, host_names: Iterable[str], migration_mode: str, timeout: float
    ) -> List[HostOutcome]:
        """
        Put hosts into maintenance mode.

        Args:
            host_names: Hosts to transition.
            migration_mode: vSAN decommission object action, passed through.
            timeout: Seconds to wait for the hosts to report maintenance mode.
        """
        return self._transition(
            list(host_names),
            OperationKind.ENTER_MAINTENANCE,
            PowerMode.MAINTENANCE,
            timeout,
            migration_mode=migration_mode,
        )

    def exit_maintenance(self, host_names: Iterable[str], timeout: float) -> List[HostOutcome]:
        """Take hosts out of maintenance mode."""
        return self._transition(
            list(host_names), OperationKind.EXIT_MAINTENANCE, PowerMode.NORMAL, timeout
        )

    def shutdown_host(
        self,
        host_name: str,
        snapshot: InventorySnapshot,
        is_excluded: Callable[[str], bool] = lambda name: False,
    ) -> HostOutcome:
        """
        Issue a power-off for a host without waiting for it to go dark.

        The host must be in maintenance mode in the given snapshot and must
        not be running any VM other than excluded ones.
        """
        host = snapshot.host(host_name)
        if host is None or not host.in_maintenance:
            logger.error(f"Host '{host_name}' is not in maintenance mode, cannot shut down")
            return HostOutcome(
                host_name,
                OperationKind.SHUTDOWN_HOST,
                OperationState.FAILED,
                detail="not in maintenance mode",
            )

        running = [
            vm.name
            for vm in snapshot.vms_on(host_name)
            if vm.powered_on and not is_excluded(vm.name)
        ]
        if running:
            logger.error(
                f"Host '{host_name}' still runs {', '.join(running)}, cannot shut down"
            )
            return HostOutcome(
                host_name,
                OperationKind.SHUTDOWN_HOST,
                OperationState.FAILED,
                detail=f"VMs still powered on: {', '.join(sorted(running))}",
            )

        logger.info(f"Shutting down host '{host_name}'")
        tracker = OperationTracker(self.client, self.cluster_ref, self.clock, self.poll_interval)
        operation = tracker.launch(host_name, OperationKind.SHUTDOWN_HOST)
        if operation.state is OperationState.FAILED:
            logger.error(f"Failed to shut down host '{host_name}': {operation.error}")
            return HostOutcome(
                host_name, OperationKind.SHUTDOWN_HOST, OperationState.FAILED, detail=operation.error
            )

        logger.info(f"Host '{host_name}' is shutting down")
        return HostOutcome(
            host_name, OperationKind.SHUTDOWN_HOST, OperationState.SUCCEEDED, detail="shutdown issued"
        )

    def power_on_hosts(
        self,
        ilo_clients: Dict[str, IloClient],
        timeout: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[HostOutcome]:
        """
        Power on hosts through their iLO interfaces and wait for them to reconnect.

        Args:
            ilo_clients: iLO client per ESXi host name.
            timeout: Seconds to wait for the hosts to report connected.
        """
        outcomes: Dict[str, HostOutcome] = {}
        booting = []
        for host_name, ilo_client in ilo_clients.items():
            if not ilo_client.connect():
                outcomes[host_name] = HostOutcome(
                    host_name,
                    OperationKind.POWER_ON_HOST,
                    OperationState.FAILED,
                    detail=f"could not connect to iLO at {ilo_client.host}",
                )
                continue
            try:
                powered = ilo_client.power_on()
            finally:
                ilo_client.disconnect()
            if powered:
                booting.append(host_name)
            else:
                outcomes[host_name] = HostOutcome(
                    host_name,
                    OperationKind.POWER_ON_HOST,
                    OperationState.FAILED,
                    detail=f"iLO at {ilo_client.host} refused power on",
                )

        if booting:
            logger.info(f"Waiting up to {timeout:.0f}s for {len(booting)} host(s) to reconnect")
            wait = wait_until(
                lambda: take_snapshot(self.client, self.cluster_ref),
                lambda snapshot: all(
                    snapshot.host(name) is not None and snapshot.host(name).connected
                    for name in booting
                ),
                self.poll_interval,
                timeout,
                clock=self.clock,
                cancel_event=cancel_event,
            )
            for name in booting:
                host = wait.state.host(name)
                if host is not None and host.connected:
                    logger.info(f"Host '{name}' is connected")
                    outcomes[name] = HostOutcome(
                        name, OperationKind.POWER_ON_HOST, OperationState.SUCCEEDED
                    )
                else:
                    state = host.connection_state.value if host else "missing"
                    logger.error(f"Host '{name}' did not reconnect, last state {state}")
                    outcomes[name] = HostOutcome(
                        name,
                        OperationKind.POWER_ON_HOST,
                        OperationState.TIMED_OUT,
                        detail=f"still {state} after {timeout:.0f}s",
                    )

        return [outcomes[name] for name in ilo_clients]

    def _transition(
        self,
        host_names: List[str],
        kind: OperationKind,
        desired: PowerMode,
        timeout: float,
        **options,
    ) -> List[HostOutcome]:
        snapshot = take_snapshot(self.client, self.cluster_ref)
        tracker = OperationTracker(self.client, self.cluster_ref, self.clock, self.poll_interval)
        outcomes: Dict[str, HostOutcome] = {}
        launched = {}

        for name in host_names:
            host = snapshot.host(name)
            if host is None:
                outcomes[name] = HostOutcome(
                    name, kind, OperationState.FAILED, detail="host not found"
                )
            elif host.power_mode is desired:
                logger.info(f"Host '{name}' is already in {desired.value} mode")
                outcomes[name] = HostOutcome(name, kind, OperationState.SUCCEEDED, skipped=True)
            else:
                logger.info(f"Moving host '{name}' to {desired.value} mode")
                launched[name] = tracker.launch(name, kind, timeout=timeout, **options)

        if launched:

            def fetch() -> InventorySnapshot:
                tracker.refresh()
                return take_snapshot(self.client, self.cluster_ref)

            def settled(current: InventorySnapshot) -> bool:
                for name, operation in launched.items():
                    host = current.host(name)
                    if host is not None and host.power_mode is desired:
                        continue
                    if operation.state is OperationState.FAILED:
                        continue
                    return False
                return True

            wait = wait_until(fetch, settled, self.poll_interval, timeout, clock=self.clock)

            for name, operation in launched.items():
                host = wait.state.host(name)
                if host is not None and host.power_mode is desired:
                    logger.info(f"Host '{name}' is now in {desired.value} mode")
                    outcomes[name] = HostOutcome(name, kind, OperationState.SUCCEEDED)
                elif operation.state is OperationState.FAILED:
                    logger.error(f"Host '{name}' failed {kind.value}: {operation.error}")
                    outcomes[name] = HostOutcome(
                        name, kind, OperationState.FAILED, detail=operation.error
                    )
                else:
                    mode = host.power_mode.value if host else "missing"
                    logger.error(f"Host '{name}' is still {mode} after {timeout:.0f}s")
                    outcomes[name] = HostOutcome(
                        name,
                        kind,
                        OperationState.TIMED_OUT,
                        detail=f"still {mode} after {timeout:.0f}s",
                    )

        return [outcomes[name] for name in host_names]
