"""
Phase execution for Power Sequencer.

A phase drives every VM of one category through a power operation: all
operations are issued before any wait begins, observed jointly, and then the
whole set is waited on until it reaches the desired power state. Shutdown
phases escalate stragglers to a forced power-off. Phases run strictly one
after the other.
"""

import logging
import threading
from typing import Callable, Dict, Iterable, List, Optional

from .classifier import Classification
from .config import Configuration
from .errors import fatal_context
from .inventory import InventorySnapshot, take_snapshot
from .models import (
    Category,
    ClusterRef,
    Direction,
    OperationKind,
    OperationState,
    PhaseResult,
    PowerState,
    StatusEvent,
    VMInfo,
)
from .polling import Clock, WaitResult, wait_until
from .tracker import OperationTracker

logger = logging.getLogger("power-sequencer")


class PhaseExecutor:
    """Runs the categories of a classification in order, one phase at a time."""

    def __init__(
        self,
        client,
        cluster_ref: ClusterRef,
        config: Configuration,
        clock: Optional[Clock] = None,
        cancel_event: Optional[threading.Event] = None,
        on_event: Optional[Callable[[StatusEvent], None]] = None,
    ):
        self.client = client
        self.cluster_ref = cluster_ref
        self.timeouts = config.timeouts
        self.clock = clock or Clock()
        self.cancel_event = cancel_event
        self.on_event = on_event

    def run(self, classification: Classification) -> List[PhaseResult]:
        """
        Run every category of the classification in order.

        A failed phase never stops the run; a cancellation request stops it
        before the next phase starts.
        """
        direction = classification.direction
        categories = list(classification.groups.items())
        results = []

        for index, (category, members) in enumerate(categories):
            if self._cancelled():
                logger.warning(f"Cancellation requested, skipping remaining {direction.value} phases")
                break

            result = self.run_phase(category, members, direction)
            results.append(result)

            is_last = index == len(categories) - 1
            grace = self.timeouts.startup_grace_delay
            if direction is Direction.STARTUP and result.succeeded and not is_last and grace > 0:
                logger.info(f"Waiting {grace:.0f}s for '{category}' services to settle")
                if not self.clock.wait(grace, self.cancel_event):
                    logger.warning("Cancellation requested during the startup grace delay")

        return results

    def run_phase(
        self, category: Category, members: Iterable[VMInfo], direction: Direction
    ) -> PhaseResult:
        members = list(members)
        result = PhaseResult(category=category, direction=direction, attempted=len(members))
        if not members:
            logger.info(f"No VMs to {direction.value} in category '{category}'")
            return result

        self._notify("phase_started", f"{direction.value} '{category}' ({len(members)} VMs)", category)
        with fatal_context(f"{direction.value} phase {category}"):
            if direction is Direction.SHUTDOWN:
                self._shutdown_phase(members, result)
            else:
                self._startup_phase(members, result)

        for name, reason in sorted(result.failures.items()):
            self._notify("member_failed", reason, category, target=name)
        logger.info(
            f"Phase '{category}' {direction.value} done: {result.attempted} attempted, "
            f"{result.succeeded} succeeded, {result.forced_count} forced, "
            f"{len(result.failures)} failed"
        )
        self._notify("phase_completed", f"{result.succeeded}/{result.attempted} converged", category)
        return result

    def _shutdown_phase(self, members: List[VMInfo], result: PhaseResult) -> None:
        names = [vm.name for vm in members]

        # Issuing and Monitoring
        launch_errors = self._issue_and_observe(
            names, OperationKind.SHUTDOWN_VM_GUEST, self.timeouts.vm_operation
        )

        # Converging
        waiting = [name for name in names if name not in launch_errors]
        wait = self._converge(waiting, PowerState.OFF, self.timeouts.vm_shutdown, cancellable=True)
        if wait.cancelled:
            logger.warning("Cancellation requested, forcing off the VMs still running")

        stragglers = []
        for name in names:
            vm = wait.state.vm(name)
            if vm is None:
                result.record_failure(name, "VM not found")
            elif vm.power_state is PowerState.OFF:
                result.record_success(name)
            else:
                stragglers.append(name)

        if not stragglers:
            return

        # ForceFallback
        for name in stragglers:
            cause = launch_errors.get(name) or "guest shutdown timed out"
            logger.warning(f"VM '{name}' did not shut down gracefully ({cause}), forcing power off")

        force_errors = self._issue_and_observe(
            stragglers, OperationKind.FORCE_STOP_VM, self.timeouts.force_stop
        )
        wait = self._converge(stragglers, PowerState.OFF, self.timeouts.force_stop, cancellable=False)

        for name in stragglers:
            vm = wait.state.vm(name)
            if vm is None:
                result.record_failure(name, "VM not found")
            elif vm.power_state is PowerState.OFF:
                logger.info(f"VM '{name}' has been powered off (forced)")
                result.record_success(name)
                result.forced_count += 1
            else:
                reason = force_errors.get(name) or (
                    f"still {vm.power_state.value} after forced power off"
                )
                logger.error(f"Failed to power off VM '{name}': {reason}")
                result.record_failure(name, reason)

    def _startup_phase(self, members: List[VMInfo], result: PhaseResult) -> None:
        names = [vm.name for vm in members]

        launch_errors = self._issue_and_observe(
            names, OperationKind.START_VM, self.timeouts.vm_operation
        )

        waiting = [name for name in names if name not in launch_errors]
        wait = self._converge(waiting, PowerState.ON, self.timeouts.vm_startup, cancellable=True)

        for name in names:
            vm = wait.state.vm(name)
            if vm is None:
                result.record_failure(name, "VM not found")
            elif vm.power_state is PowerState.ON:
                result.record_success(name)
            elif name in launch_errors:
                logger.error(f"Failed to power on VM '{name}': {launch_errors[name]}")
                result.record_failure(name, launch_errors[name])
            elif wait.cancelled:
                result.record_failure(name, "cancelled before power on completed")
            else:
                reason = f"still {vm.power_state.value} after {self.timeouts.vm_startup:.0f}s"
                logger.error(f"VM '{name}' did not power on: {reason}")
                result.record_failure(name, reason)

    def _issue_and_observe(
        self, names: List[str], kind: OperationKind, timeout: float
    ) -> Dict[str, str]:
        """Launch one operation per VM, observe them all, return errors by name."""
        tracker = OperationTracker(
            self.client, self.cluster_ref, self.clock, self.timeouts.poll_interval
        )
        for name in names:
            logger.info(f"Issuing {kind.value} for VM '{name}'")
            tracker.launch(name, kind)

        errors = {}
        for operation in tracker.observe(timeout):
            logger.debug(
                f"{kind.value} for VM '{operation.target_name}' {operation.state.value} "
                f"after {operation.finished_at - operation.started_at:.0f}s"
            )
            if operation.state is not OperationState.SUCCEEDED:
                errors[operation.target_name] = operation.error or operation.state.value
                logger.warning(
                    f"{kind.value} for VM '{operation.target_name}' "
                    f"{operation.state.value}: {operation.error}"
                )
        return errors

    def _converge(
        self, names: List[str], desired: PowerState, timeout: float, cancellable: bool
    ) -> WaitResult:
        def fetch() -> InventorySnapshot:
            return take_snapshot(self.client, self.cluster_ref)

        def converged(snapshot: InventorySnapshot) -> bool:
            for name in names:
                vm = snapshot.vm(name)
                if vm is not None and vm.power_state is not desired:
                    return False
            return True

        return wait_until(
            fetch,
            converged,
            self.timeouts.poll_interval,
            timeout,
            clock=self.clock,
            cancel_event=self.cancel_event if cancellable else None,
        )

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _notify(
        self, kind: str, message: str, category: Category, target: Optional[str] = None
    ) -> None:
        if self.on_event is not None:
            self.on_event(StatusEvent(kind=kind, message=message, phase=category.name, target=target))
