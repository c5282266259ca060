"""
Core Data Model for the Hop Monitor Daemon

Defines the value types that flow through one polling cycle:

    Target -> ProbeOutcome -> AggregateVerdict -> OutageEvent
                                       |
                                  MonitorState (persisted)

All types are immutable. Only MonitorState is ever written to disk (see
state.py); OutageEvent is serialized to the CSV evidentiary log (see
event_log.py). Everything else lives for exactly one cycle.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple


class Status(Enum):
    """Aggregate connectivity status for one polling cycle."""
    UP = "UP"
    DOWN = "DOWN"
    HIGH_LATENCY = "HIGH_LATENCY"


class FailureReason(Enum):
    """Classified reason a single probe failed."""
    DNS_ERROR = "DNS_ERROR"
    NETWORK_UNREACHABLE = "NETWORK_UNREACHABLE"
    HOST_UNREACHABLE = "HOST_UNREACHABLE"
    NO_ROUTE = "NO_ROUTE"
    TIMEOUT = "TIMEOUT"
    UNKNOWN = "UNKNOWN"


class RecordKind(Enum):
    """Distinguishes transition rows from verbose-mode heartbeat rows."""
    TRANSITION = "transition"
    HEARTBEAT = "heartbeat"


class PolicyKind(Enum):
    ALL = "ALL"
    THRESHOLD = "THRESHOLD"


@dataclass(frozen=True)
class SuccessPolicy:
    """
    Rule deciding when a cycle counts as UP.

    ALL requires every target to answer; THRESHOLD(n) requires at least
    n successful targets.
    """
    kind: PolicyKind = PolicyKind.ALL
    min_successes: int = 1

    @classmethod
    def all_required(cls) -> "SuccessPolicy":
        return cls(PolicyKind.ALL)

    @classmethod
    def threshold(cls, min_successes: int) -> "SuccessPolicy":
        return cls(PolicyKind.THRESHOLD, min_successes)

    def is_satisfied(self, successes: int, total: int) -> bool:
        if self.kind is PolicyKind.ALL:
            return total > 0 and successes == total
        return successes >= self.min_successes

    def __str__(self) -> str:
        if self.kind is PolicyKind.ALL:
            return "ALL"
        return f"THRESHOLD({self.min_successes})"


@dataclass(frozen=True)
class Target:
    """
    One hop in the monitored chain.

    Attributes:
        address: IP address or hostname handed to the prober.
        label: Optional human-readable name (e.g. "ROUTER").
        position: Ordinal index in the configured hop list.
    """
    address: str
    label: Optional[str] = None
    position: int = 0

    @property
    def display(self) -> str:
        if self.label:
            return f"{self.address}({self.label})"
        return self.address


@dataclass(frozen=True)
class ProbeOutcome:
    """
    Result of probing one target once.

    Use the ok() / failed() constructors; a success always carries a
    latency and never a reason, a failure always carries a reason.
    """
    success: bool
    latency_ms: Optional[int] = None
    reason: Optional[FailureReason] = None
    detail: str = ""

    @classmethod
    def ok(cls, latency_ms: int) -> "ProbeOutcome":
        return cls(success=True, latency_ms=max(0, int(latency_ms)))

    @classmethod
    def failed(cls, reason: FailureReason, detail: str = "") -> "ProbeOutcome":
        return cls(success=False, reason=reason, detail=detail)


FailedTargets = Tuple[Tuple[Target, FailureReason], ...]


@dataclass(frozen=True)
class AggregateVerdict:
    """
    The connectivity verdict for one cycle.

    Attributes:
        status: UP, DOWN or HIGH_LATENCY.
        avg_latency_ms: Truncated mean latency of the successful targets;
            None when the verdict is DOWN.
        failed_targets: Every failed target with its reason, in configured order.
        timestamp: When the cycle started (whole seconds, local tz).
        success_count / total_count: Raw counts for diagnostics.
    """
    status: Status
    avg_latency_ms: Optional[int]
    failed_targets: FailedTargets
    timestamp: datetime
    success_count: int = 0
    total_count: int = 0


@dataclass(frozen=True)
class MonitorState:
    """The only fact trusted across restarts: current status and when it began."""
    status: Status
    since: Optional[datetime]

    @classmethod
    def default(cls, now: datetime) -> "MonitorState":
        # Fresh install: assume connectivity was up when the monitor started.
        return cls(status=Status.UP, since=now)


@dataclass(frozen=True)
class OutageEvent:
    """
    One row of the evidentiary log.

    duration is a pre-formatted string ("HH:MM:SS" / "Dd HH:MM:SS") and is
    only set on UP-after-DOWN transitions whose start time is trustworthy.
    """
    timestamp: datetime
    status: Status
    latency_ms: Optional[int] = None
    duration: Optional[str] = None
    failed_targets: FailedTargets = ()
    error_details: str = ""
    kind: RecordKind = RecordKind.TRANSITION
