"""
Data model for Power Sequencer.

This module holds the value objects passed between the inventory, classifier,
phase executor, host controller and orchestrator. All of them are created fresh
for every run and none of them is a source of truth: the cluster client is.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    NOT_RESPONDING = "notResponding"


class PowerMode(str, Enum):
    NORMAL = "normal"
    MAINTENANCE = "maintenance"


class PowerState(str, Enum):
    ON = "poweredOn"
    OFF = "poweredOff"
    SUSPENDED = "suspended"


class OperationKind(str, Enum):
    START_VM = "startVm"
    SHUTDOWN_VM_GUEST = "shutdownVmGuest"
    FORCE_STOP_VM = "forceStopVm"
    ENTER_MAINTENANCE = "enterMaintenance"
    EXIT_MAINTENANCE = "exitMaintenance"
    SHUTDOWN_HOST = "shutdownHost"
    POWER_ON_HOST = "powerOnHost"


class OperationState(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timedOut"

    @property
    def terminal(self) -> bool:
        return self is not OperationState.PENDING


class Direction(str, Enum):
    SHUTDOWN = "shutdown"
    STARTUP = "startup"


class CategoryKind(str, Enum):
    PRIORITY = "priority"
    TAG_GROUP = "tagGroup"
    OTHER = "other"
    INFRASTRUCTURE = "infrastructure"


@dataclass(frozen=True)
class ClusterRef:
    """Identifies the target cluster by name."""

    name: str

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class HostInfo:
    name: str
    connection_state: ConnectionState
    power_mode: PowerMode

    @property
    def connected(self) -> bool:
        return self.connection_state is ConnectionState.CONNECTED

    @property
    def in_maintenance(self) -> bool:
        return self.power_mode is PowerMode.MAINTENANCE


@dataclass(frozen=True)
class VMInfo:
    name: str
    power_state: PowerState
    host_name: Optional[str] = None
    tags: Mapping[str, str] = field(default_factory=dict, compare=False, hash=False)

    @property
    def powered_on(self) -> bool:
        return self.power_state is PowerState.ON

    @property
    def powered_off(self) -> bool:
        return self.power_state is PowerState.OFF


@dataclass(frozen=True)
class Category:
    """
    One classification bucket.

    Tag groups carry the tag key/value they match on; every other kind is
    identified by its kind alone.
    """

    kind: CategoryKind
    tag_key: Optional[str] = None
    tag_value: Optional[str] = None
    label: Optional[str] = None

    @property
    def name(self) -> str:
        if self.label:
            return self.label
        if self.kind is CategoryKind.TAG_GROUP:
            return f"{self.tag_key}={self.tag_value}"
        return self.kind.value

    def matches(self, vm: VMInfo) -> bool:
        if self.kind is not CategoryKind.TAG_GROUP:
            return False
        return vm.tags.get(self.tag_key) == self.tag_value

    def __str__(self) -> str:
        return self.name


PRIORITY = Category(CategoryKind.PRIORITY)
OTHER = Category(CategoryKind.OTHER)
INFRASTRUCTURE = Category(CategoryKind.INFRASTRUCTURE)


@dataclass
class AsyncOperation:
    """A single remote operation issued against a VM or host."""

    target_name: str
    kind: OperationKind
    started_at: float
    state: OperationState = OperationState.PENDING
    handle: Any = None
    error: Optional[str] = None
    finished_at: Optional[float] = None

    def finish(self, state: OperationState, at: float, error: Optional[str] = None) -> None:
        self.state = state
        self.finished_at = at
        if error:
            self.error = error


@dataclass
class PhaseResult:
    """Outcome of running one category in one direction."""

    category: Category
    direction: Direction
    attempted: int = 0
    forced_count: int = 0
    succeeded_names: Set[str] = field(default_factory=set)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> int:
        return len(self.succeeded_names)

    @property
    def failed_names(self) -> Set[str]:
        return set(self.failures)

    @property
    def ok(self) -> bool:
        return not self.failures

    def record_success(self, name: str) -> None:
        self.failures.pop(name, None)
        self.succeeded_names.add(name)

    def record_failure(self, name: str, reason: str) -> None:
        self.succeeded_names.discard(name)
        self.failures[name] = reason


@dataclass
class HostOutcome:
    host_name: str
    action: OperationKind
    state: OperationState
    skipped: bool = False
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state is OperationState.SUCCEEDED


@dataclass
class StatusEvent:
    """Structured progress notification for presentation layers."""

    kind: str
    message: str
    phase: Optional[str] = None
    target: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class ClusterReport:
    """Aggregate result of a shutdown or startup run."""

    direction: Direction
    cluster: ClusterRef
    phases: List[PhaseResult] = field(default_factory=list)
    host_outcomes: List[HostOutcome] = field(default_factory=list)
    remaining: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def attempted(self) -> int:
        return sum(phase.attempted for phase in self.phases)

    @property
    def success(self) -> bool:
        if self.cancelled or self.remaining:
            return False
        if any(not phase.ok for phase in self.phases):
            return False
        return all(outcome.ok for outcome in self.host_outcomes)

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def failures(self) -> List[Tuple[str, str, str]]:
        """
        Enumerate every failure as (phase, name, reason).

        Host failures are reported under the host action name.
        """
        rows = []
        for phase in self.phases:
            for name in sorted(phase.failures):
                rows.append((phase.category.name, name, phase.failures[name]))
        for outcome in self.host_outcomes:
            if not outcome.ok:
                rows.append(
                    (outcome.action.value, outcome.host_name, outcome.detail or outcome.state.value)
                )
        return rows
