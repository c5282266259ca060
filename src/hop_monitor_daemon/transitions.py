"""
Transition detection between the persisted state and a fresh verdict.

Transition table (prior -> verdict):

    same status            -> no event
    UP / HIGH_LATENCY -> DOWN  -> DOWN event, failed hops and first reason
    DOWN -> UP             -> UP event with outage duration
    UP -> HIGH_LATENCY     -> HIGH_LATENCY event, RTT in error_details
    DOWN -> HIGH_LATENCY   -> HIGH_LATENCY event, no duration
    HIGH_LATENCY -> UP     -> UP event, no duration

Everything here is pure: the only inputs are the prior MonitorState and
the AggregateVerdict (whose timestamp is "now" for duration math).
"""

from datetime import datetime
from typing import Optional

from .models import AggregateVerdict, MonitorState, OutageEvent, RecordKind, Status


def format_duration(seconds: int) -> str:
    """
    Format whole seconds as HH:MM:SS, prefixed with "Nd " past one day.

    Examples:
        >>> format_duration(3661)
        '01:01:01'
        >>> format_duration(90061)
        '1d 01:01:01'
    """
    days, rem = divmod(int(seconds), 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    if days > 0:
        return f"{days}d {hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def outage_duration(since: Optional[datetime], until: datetime) -> Optional[str]:
    """Formatted duration, or None when the start time cannot be trusted."""
    if not isinstance(since, datetime):
        return None
    try:
        delta = until - since
    except TypeError:
        # naive vs aware mix from a hand-edited state file
        return None
    seconds = int(delta.total_seconds())
    if seconds < 0:
        return None
    return format_duration(seconds)


def _first_reason(verdict: AggregateVerdict) -> str:
    if not verdict.failed_targets:
        return ""
    return verdict.failed_targets[0][1].value


def detect(prior: MonitorState, verdict: AggregateVerdict) -> Optional[OutageEvent]:
    """
    Decide whether this verdict is a transition and build its log record.

    Returns:
        OutageEvent for a status change, None for a no-op cycle.
    """
    if verdict.status == prior.status:
        return None

    if verdict.status is Status.DOWN:
        return OutageEvent(
            timestamp=verdict.timestamp,
            status=Status.DOWN,
            latency_ms=None,
            duration=None,
            failed_targets=verdict.failed_targets,
            error_details=_first_reason(verdict),
        )

    if verdict.status is Status.HIGH_LATENCY:
        return OutageEvent(
            timestamp=verdict.timestamp,
            status=Status.HIGH_LATENCY,
            latency_ms=verdict.avg_latency_ms,
            duration=None,
            failed_targets=verdict.failed_targets,
            error_details=f"RTT={verdict.avg_latency_ms}ms",
        )

    duration = None
    if prior.status is Status.DOWN:
        duration = outage_duration(prior.since, verdict.timestamp)
    return OutageEvent(
        timestamp=verdict.timestamp,
        status=Status.UP,
        latency_ms=verdict.avg_latency_ms,
        duration=duration,
        failed_targets=verdict.failed_targets,
        error_details=_first_reason(verdict),
    )


def next_state(event: OutageEvent) -> MonitorState:
    """The state that becomes current once event has been recorded."""
    return MonitorState(status=event.status, since=event.timestamp)


def make_heartbeat(verdict: AggregateVerdict) -> OutageEvent:
    """Verbose-mode record for a cycle that did not change status."""
    return OutageEvent(
        timestamp=verdict.timestamp,
        status=verdict.status,
        latency_ms=verdict.avg_latency_ms,
        duration=None,
        failed_targets=verdict.failed_targets,
        error_details=_first_reason(verdict),
        kind=RecordKind.HEARTBEAT,
    )
