"""
Cluster Operations module for Power Sequencer.

This module provides the LifecycleOrchestrator, which shuts down and starts up
a vSphere cluster in configured VM order, and the shutdown_cluster and
startup_cluster convenience functions.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional

from .classifier import build_plan, classify
from .config import Configuration
from .errors import fatal_context
from .hosts import HostStateController
from .ilo_client import IloClient
from .inventory import InventorySnapshot, take_snapshot
from .models import ClusterRef, ClusterReport, Direction, HostOutcome, StatusEvent
from .phases import PhaseExecutor
from .polling import Clock

logger = logging.getLogger("power-sequencer")


class LifecycleOrchestrator:
    """
    Coordinates a full cluster shutdown or startup.

    Args:
        client: Connected cluster client (see VCenterClient).
        cluster_ref: Cluster to operate on.
        config: Resolved configuration.
        clock: Time source for all waits.
        cancel_event: When set, no new phase or host transition is started.
        on_event: Receives a StatusEvent for every notable step.
        ilo_factory: Builds an iLO client from (host, username, password).

    Raises:
        ConfigurationError: If the category configuration is invalid.
    """

    def __init__(
        self,
        client,
        cluster_ref: ClusterRef,
        config: Configuration,
        clock: Optional[Clock] = None,
        cancel_event: Optional[threading.Event] = None,
        on_event: Optional[Callable[[StatusEvent], None]] = None,
        ilo_factory: Callable[[str, str, str], IloClient] = IloClient,
    ):
        self.client = client
        self.cluster_ref = cluster_ref
        self.config = config
        self.clock = clock or Clock()
        self.cancel_event = cancel_event
        self.on_event = on_event
        self.ilo_factory = ilo_factory
        self.plan = build_plan(config)
        self.phases = PhaseExecutor(client, cluster_ref, config, self.clock, cancel_event, on_event)
        self.hosts = HostStateController(
            client, cluster_ref, self.clock, config.timeouts.poll_interval
        )

    def shutdown_cluster(self) -> ClusterReport:
        """
        Shut down every VM in shutdown order, then put hosts into maintenance and power them off.

        Returns:
            The aggregate report. Only transport errors and a missing cluster raise.
        """
        logger.info(f"Starting shutdown of cluster '{self.cluster_ref}'")
        self._notify("run_started", "shutdown")
        report = ClusterReport(direction=Direction.SHUTDOWN, cluster=self.cluster_ref)

        snapshot = self._snapshot("inventory snapshot")
        powered_on = [vm for vm in snapshot.vms if vm.powered_on]
        classification = classify(powered_on, self.plan, Direction.SHUTDOWN)

        report.phases = self.phases.run(classification)

        if self._cancelled():
            return self._finish_cancelled(report)

        snapshot = self._snapshot("host inventory")
        connected = [host.name for host in snapshot.hosts if host.connected]
        logger.info(f"Putting {len(connected)} host(s) into maintenance mode")
        with fatal_context("host maintenance"):
            outcomes = self.hosts.enter_maintenance(
                connected, self.config.migration_mode, self.config.timeouts.host_maintenance
            )
        self._record_hosts(report, outcomes)

        final = self._snapshot("verification snapshot")
        report.remaining = sorted(
            vm.name for vm in final.vms if vm.powered_on and not self.plan.is_excluded(vm.name)
        )
        if report.remaining:
            logger.error(f"VMs still powered on: {', '.join(report.remaining)}")

        if self._cancelled():
            return self._finish_cancelled(report)

        for name in connected:
            host = final.host(name)
            if host is None or not host.in_maintenance:
                logger.warning(f"Not shutting down host '{name}', it is not in maintenance mode")
                continue
            with fatal_context("host shutdown", target=name):
                outcome = self.hosts.shutdown_host(name, final, self.plan.is_excluded)
            self._record_hosts(report, [outcome])

        return self._finish(report)

    def startup_cluster(self) -> ClusterReport:
        """
        Bring hosts out of maintenance mode, then start VMs in startup order.

        Hosts that vCenter cannot reach are powered on through iLO first when
        an iLO entry is configured for them.

        Returns:
            The aggregate report. Only transport errors and a missing cluster raise.
        """
        logger.info(f"Starting startup of cluster '{self.cluster_ref}'")
        self._notify("run_started", "startup")
        report = ClusterReport(direction=Direction.STARTUP, cluster=self.cluster_ref)

        snapshot = self._snapshot("inventory snapshot")

        ilo_clients: Dict[str, IloClient] = {}
        for host in snapshot.hosts:
            ilo = self.config.ilo_for(host.name)
            if not host.connected and ilo is not None:
                ilo_clients[host.name] = self.ilo_factory(ilo.host, ilo.username, ilo.password)
        if ilo_clients:
            logger.info(f"Powering on {len(ilo_clients)} unreachable host(s) through iLO")
            with fatal_context("host power on"):
                outcomes = self.hosts.power_on_hosts(
                    ilo_clients, self.config.timeouts.host_boot, self.cancel_event
                )
            self._record_hosts(report, outcomes)
            snapshot = self._snapshot("host inventory")

        if self._cancelled():
            return self._finish_cancelled(report)

        in_maintenance = [
            host.name for host in snapshot.hosts if host.connected and host.in_maintenance
        ]
        if in_maintenance:
            logger.info(f"Taking {len(in_maintenance)} host(s) out of maintenance mode")
            with fatal_context("host maintenance exit"):
                outcomes = self.hosts.exit_maintenance(
                    in_maintenance, self.config.timeouts.host_maintenance
                )
            self._record_hosts(report, outcomes)
            snapshot = self._snapshot("inventory snapshot")

        powered_off = [vm for vm in snapshot.vms if vm.powered_off]
        classification = classify(powered_off, self.plan, Direction.STARTUP)

        report.phases = self.phases.run(classification)

        final = self._snapshot("verification snapshot")
        report.remaining = sorted(
            vm.name
            for vm in classification.targets
            if final.vm(vm.name) is not None and not final.vm(vm.name).powered_on
        )
        if report.remaining:
            logger.error(f"VMs not powered on: {', '.join(report.remaining)}")

        if self._cancelled():
            return self._finish_cancelled(report)
        return self._finish(report)

    def _snapshot(self, stage: str) -> InventorySnapshot:
        with fatal_context(stage, target=self.cluster_ref.name):
            return take_snapshot(self.client, self.cluster_ref)

    def _record_hosts(self, report: ClusterReport, outcomes: List[HostOutcome]) -> None:
        for outcome in outcomes:
            report.host_outcomes.append(outcome)
            self._notify(
                "host_outcome",
                outcome.detail or outcome.state.value,
                phase=outcome.action.value,
                target=outcome.host_name,
            )

    def _finish_cancelled(self, report: ClusterReport) -> ClusterReport:
        logger.warning(f"{report.direction.value.capitalize()} of '{self.cluster_ref}' was cancelled")
        report.cancelled = True
        return self._finish(report)

    def _finish(self, report: ClusterReport) -> ClusterReport:
        if report.success:
            logger.info(f"Cluster {report.direction.value} procedure completed successfully")
        else:
            logger.warning(f"Cluster {report.direction.value} procedure completed with errors")
        self._notify("run_completed", "success" if report.success else "completed with errors")
        return report

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _notify(
        self, kind: str, message: str, phase: Optional[str] = None, target: Optional[str] = None
    ) -> None:
        if self.on_event is not None:
            self.on_event(StatusEvent(kind=kind, message=message, phase=phase, target=target))


def shutdown_cluster(client, config: Configuration, **kwargs) -> ClusterReport:
    """
    Shut down the cluster named in the configuration.

    Args:
        client: Connected cluster client.
        config: Resolved configuration.
        **kwargs: Passed through to LifecycleOrchestrator.
    """
    orchestrator = LifecycleOrchestrator(client, ClusterRef(config.cluster_name), config, **kwargs)
    return orchestrator.shutdown_cluster()


def startup_cluster(client, config: Configuration, **kwargs) -> ClusterReport:
    """
    Start up the cluster named in the configuration.

    Args:
        client: Connected cluster client.
        config: Resolved configuration.
        **kwargs: Passed through to LifecycleOrchestrator.
    """
    orchestrator = LifecycleOrchestrator(client, ClusterRef(config.cluster_name), config, **kwargs)
    return orchestrator.startup_cluster()
