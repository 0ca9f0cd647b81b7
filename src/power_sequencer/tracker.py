"""
Async operation tracking for Power Sequencer.

An OperationTracker launches a batch of remote operations without waiting on
any of them, then observes the whole batch until every member is terminal.
"""

import logging
from typing import Iterator, List, Optional

from .errors import NotFoundError, OperationFailed, OperationTimeout
from .models import AsyncOperation, ClusterRef, OperationKind, OperationState
from .polling import Clock

logger = logging.getLogger("power-sequencer")


class OperationTracker:
    """Single-use tracker for one batch of operations."""

    def __init__(
        self,
        client,
        cluster_ref: Optional[ClusterRef] = None,
        clock: Optional[Clock] = None,
        poll_interval: float = 1.0,
    ):
        self.client = client
        self.cluster_ref = cluster_ref
        self.clock = clock or Clock()
        self.poll_interval = poll_interval
        self.operations: List[AsyncOperation] = []
        self._observed = False

    def launch(self, target_name: str, kind: OperationKind, **options) -> AsyncOperation:
        """
        Issue a non-blocking operation.

        Returns:
            The operation, pending, or already failed if the remote side
            rejected the request. Transport errors propagate.
        """
        operation = AsyncOperation(target_name=target_name, kind=kind, started_at=self.clock.now())
        try:
            operation.handle = self.client.launch_operation(
                target_name, kind, cluster_ref=self.cluster_ref, **options
            )
        except (OperationFailed, NotFoundError) as e:
            logger.warning(f"Could not issue {kind.value} for '{target_name}': {e}")
            operation.finish(OperationState.FAILED, self.clock.now(), str(e))
        self.operations.append(operation)
        return operation

    @property
    def pending(self) -> List[AsyncOperation]:
        return [op for op in self.operations if not op.state.terminal]

    def refresh(self, timeout: Optional[float] = None) -> List[AsyncOperation]:
        """
        Poll every pending operation once.

        Args:
            timeout: Per-operation bound in seconds; pending operations older
                than this are marked timed out. None means no bound.

        Returns:
            Operations that became terminal during this round.
        """
        finished = []
        for operation in self.pending:
            try:
                state, error = self.client.poll_operation(operation.handle)
            except (OperationFailed, NotFoundError) as e:
                logger.warning(
                    f"Lost track of {operation.kind.value} for '{operation.target_name}': {e}"
                )
                state, error = OperationState.FAILED, str(e)
            now = self.clock.now()
            if state.terminal:
                operation.finish(state, now, error)
                finished.append(operation)
            elif timeout is not None and now - operation.started_at >= timeout:
                timed_out = OperationTimeout(
                    f"{operation.kind.value} did not complete within {timeout:.0f}s",
                    target=operation.target_name,
                )
                operation.finish(OperationState.TIMED_OUT, now, str(timed_out))
                finished.append(operation)
        return finished

    def observe(self, timeout: float) -> Iterator[AsyncOperation]:
        """
        Yield each operation once it reaches a terminal state.

        Pending operations are polled together in rounds and each has its own
        deadline, so one slow member never holds up the others.
        """
        if self._observed:
            raise RuntimeError("OperationTracker instances are single-use")
        self._observed = True

        for operation in self.operations:
            if operation.state.terminal:
                yield operation

        while self.pending:
            for operation in self.refresh(timeout):
                yield operation
            if self.pending:
                self.clock.sleep(self.poll_interval)
