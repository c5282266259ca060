"""
Target Aggregator

Probes every configured hop and folds the outcomes into one
AggregateVerdict under the configured SuccessPolicy.

Ordering:
    Targets are evaluated and reported in configured order. With
    max_workers > 1 the probes run concurrently on a thread pool, but the
    outcomes are reassembled by position before aggregation, so the
    verdict is identical to a sequential run.

Latency refinement:
    When the policy is satisfied, the verdict carries the truncated mean
    latency of the successful targets. If a latency threshold is set and
    the mean exceeds it, the status is HIGH_LATENCY instead of UP.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Optional, Sequence

from .models import AggregateVerdict, FailureReason, ProbeOutcome, Status, SuccessPolicy, Target
from .probe import Prober

logger = logging.getLogger(os.getenv("LOGGER_NAME", "HOP_MONITOR_DAEMON"))


def local_now() -> datetime:
    """Timezone-aware local time truncated to whole seconds."""
    return datetime.now().astimezone().replace(microsecond=0)


def _safe_probe(prober: Prober, target: Target, count: int, timeout: int) -> ProbeOutcome:
    # A prober bug must only cost its own target, never the whole cycle
    try:
        return prober.probe(target, count, timeout)
    except Exception as e:
        logger.exception(f"Prober raised for {target.display}: {e}")
        return ProbeOutcome.failed(FailureReason.UNKNOWN, str(e))


def probe_all(targets: Sequence[Target],
              prober: Prober,
              count: int,
              timeout: int,
              max_workers: int = 1,
              should_stop: Optional[Callable[[], bool]] = None) -> list[ProbeOutcome]:
    """
    Run the prober over every target and return outcomes in configured order.

    Sequential mode checks should_stop between probes and returns the
    outcomes gathered so far if it fires.
    """
    if max_workers > 1 and len(targets) > 1:
        with ThreadPoolExecutor(max_workers=min(max_workers, len(targets)),
                                thread_name_prefix="probe") as pool:
            futures = [pool.submit(_safe_probe, prober, t, count, timeout) for t in targets]
            return [f.result() for f in futures]

    outcomes = []
    for target in targets:
        if should_stop is not None and should_stop():
            break
        outcomes.append(_safe_probe(prober, target, count, timeout))
    return outcomes


def build_verdict(targets: Sequence[Target],
                  outcomes: Sequence[ProbeOutcome],
                  policy: SuccessPolicy,
                  latency_threshold_ms: Optional[int] = None,
                  timestamp: Optional[datetime] = None) -> AggregateVerdict:
    """Fold per-target outcomes (aligned with targets) into a verdict."""
    if len(outcomes) != len(targets):
        raise ValueError(f"Expected {len(targets)} outcomes, got {len(outcomes)}")

    latencies = [o.latency_ms for o in outcomes if o.success]
    failed = tuple((t, o.reason or FailureReason.UNKNOWN)
                   for t, o in zip(targets, outcomes) if not o.success)

    if policy.is_satisfied(len(latencies), len(targets)):
        avg = sum(latencies) // len(latencies) if latencies else 0
        status = Status.UP
        if latency_threshold_ms is not None and avg > latency_threshold_ms:
            status = Status.HIGH_LATENCY
    else:
        avg = None
        status = Status.DOWN

    return AggregateVerdict(
        status=status,
        avg_latency_ms=avg,
        failed_targets=failed,
        timestamp=timestamp or local_now(),
        success_count=len(latencies),
        total_count=len(targets),
    )


def aggregate(targets: Sequence[Target],
              policy: SuccessPolicy,
              prober: Prober,
              count: int,
              timeout: int,
              latency_threshold_ms: Optional[int] = None,
              max_workers: int = 1,
              now: Optional[datetime] = None,
              should_stop: Optional[Callable[[], bool]] = None,
              structured_logger=None) -> Optional[AggregateVerdict]:
    """
    Probe all targets and produce this cycle's verdict.

    Args:
        targets: Hops in configured order.
        policy: ALL or THRESHOLD(n).
        prober: Probe backend.
        count / timeout: Passed through to each probe.
        latency_threshold_ms: Optional HIGH_LATENCY cut-off.
        max_workers: >1 probes concurrently.
        now: Verdict timestamp; defaults to the cycle start time.
        should_stop: Cancellation check between sequential probes.
        structured_logger: Optional StructuredEventLogger for per-probe events.

    Returns:
        AggregateVerdict, or None if cancelled before every target was probed.
    """
    timestamp = now or local_now()
    outcomes = probe_all(targets, prober, count, timeout, max_workers, should_stop)
    if len(outcomes) < len(targets):
        logger.info(f"Probe pass interrupted after {len(outcomes)}/{len(targets)} targets")
        return None

    for target, outcome in zip(targets, outcomes):
        if structured_logger is not None:
            structured_logger.log_probe_result(
                target=target.display,
                success=outcome.success,
                latency_ms=outcome.latency_ms,
                reason=outcome.reason.value if outcome.reason else None,
            )
        if not outcome.success:
            logger.debug(f"{target.display} failed: {outcome.reason.value} {outcome.detail}".rstrip())

    return build_verdict(targets, outcomes, policy, latency_threshold_ms, timestamp)
