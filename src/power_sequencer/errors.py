"""
Exceptions raised by Power Sequencer.

Transport failures and a missing cluster are fatal and abort a run. Everything
else is captured into the run report.
"""

from contextlib import contextmanager
from typing import Iterator, Optional


class PowerSequencerError(Exception):
    """Base class for all Power Sequencer errors."""


class ConfigurationError(PowerSequencerError, ValueError):
    """Raised when the configuration cannot produce a valid category plan."""


class ClusterClientError(PowerSequencerError):
    """Base class for errors reported by the cluster client."""

    def __init__(self, message: str, target: Optional[str] = None):
        super().__init__(message)
        self.target = target
        self.stage: Optional[str] = None

    def __str__(self) -> str:
        message = super().__str__()
        context = []
        if self.stage:
            context.append(f"stage={self.stage}")
        if self.target:
            context.append(f"target={self.target}")
        if context:
            return f"{message} ({', '.join(context)})"
        return message


class TransportError(ClusterClientError, ConnectionError):
    """The cluster-management API could not be reached or refused the session."""


class NotFoundError(ClusterClientError):
    """A named object no longer exists in the inventory."""


class ClusterNotFound(NotFoundError):
    """The named cluster does not exist."""


class OperationFailed(ClusterClientError):
    """The remote side rejected or failed an operation."""


class OperationTimeout(ClusterClientError):
    """An operation did not reach a terminal state in time."""


@contextmanager
def fatal_context(stage: str, target: Optional[str] = None) -> Iterator[None]:
    """Attach the failing stage to fatal client errors raised inside the block."""
    try:
        yield
    except (TransportError, ClusterNotFound) as e:
        if e.stage is None:
            e.stage = stage
        if e.target is None:
            e.target = target
        raise
