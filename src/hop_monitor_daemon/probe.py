"""
Probe Executor

Reachability checks against a single hop. Every prober returns a
ProbeOutcome and never raises on network failure, so aggregation and
transition logic never see the underlying tool's output grammar.

Backends:
    - PingProber: runs the OS `ping` utility in a subprocess and parses its
      text output. The subprocess is bounded by the probe timeout plus a
      grace margin and killed if it overruns.
    - Ping3Prober: uses the `ping3` library (raw ICMP sockets; usually needs
      CAP_NET_RAW or root) and maps its exception types to failure reasons.

Usage:
    prober = build_prober(cfg)
    outcome = prober.probe(Target("192.168.1.1", "ROUTER"), count=3, timeout=2)
    if outcome.success:
        print(outcome.latency_ms)
    else:
        print(outcome.reason)
"""

import logging
import os
import re
import shutil
import subprocess
from abc import ABC, abstractmethod
from typing import Optional

from .models import FailureReason, ProbeOutcome, Target

logger = logging.getLogger(os.getenv("LOGGER_NAME", "HOP_MONITOR_DAEMON"))

# Extra seconds allowed on top of the ping deadline before the child is killed
PROBE_GRACE_SECONDS = 2

# Checked in order; first match wins
FAILURE_PATTERNS = (
    (FailureReason.DNS_ERROR, (
        "name or service not known",
        "temporary failure in name resolution",
        "unknown host",
        "cannot resolve",
    )),
    (FailureReason.NETWORK_UNREACHABLE, (
        "network is unreachable",
        "destination net unreachable",
    )),
    (FailureReason.HOST_UNREACHABLE, (
        "destination host unreachable",
        "host unreachable",
    )),
    (FailureReason.NO_ROUTE, (
        "no route to host",
    )),
)

# "rtt min/avg/max/mdev = 9.8/10.4/11.2/0.5 ms" (Linux) or
# "round-trip min/avg/max/stddev = ..." (BSD/macOS)
_SUMMARY_RE = re.compile(r"(?:rtt|round-trip)[^=]*=\s*([\d.]+)/([\d.]+)/([\d.]+)", re.IGNORECASE)
_REPLY_TIME_RE = re.compile(r"time[=<]\s*([\d.]+)\s*ms", re.IGNORECASE)


def classify_failure(output: str) -> FailureReason:
    """
    Map a probe tool's diagnostic text to a FailureReason.

    Case-insensitive substring match; anything unrecognised is a TIMEOUT
    (ping prints nothing specific when replies simply never arrive).
    """
    text = (output or "").lower()
    for reason, phrases in FAILURE_PATTERNS:
        if any(phrase in text for phrase in phrases):
            return reason
    return FailureReason.TIMEOUT


def extract_latency_ms(output: str) -> int:
    """
    Pull the round-trip time out of successful ping output.

    Prefers the average from the summary line, then the last per-reply
    `time=` value. Truncates to whole milliseconds. Returns 0 if nothing
    numeric can be found; a successful probe is never discarded because
    its latency text was unparsable.
    """
    text = output or ""
    match = _SUMMARY_RE.search(text)
    if match:
        try:
            return int(float(match.group(2)))
        except ValueError:
            pass
    replies = _REPLY_TIME_RE.findall(text)
    if replies:
        try:
            return int(float(replies[-1]))
        except ValueError:
            pass
    return 0


class Prober(ABC):
    @abstractmethod
    def probe(self, target: Target, count: int, timeout: int) -> ProbeOutcome:
        """Probe one target and return a classified outcome. Must not raise."""
        raise NotImplementedError


class PingProber(Prober):
    """
    Wrapper around the system `ping` binary.

    Runs `ping -n -c COUNT -W TIMEOUT ADDRESS` in the C locale. Exit code 0
    means at least one reply arrived. Undecodable output bytes are replaced
    rather than failing the probe.
    """

    def __init__(self, ping_bin: Optional[str] = None, grace_seconds: float = PROBE_GRACE_SECONDS):
        self.ping_bin = ping_bin or shutil.which("ping") or "/bin/ping"
        self.grace_seconds = grace_seconds

    def build_command(self, address: str, count: int, timeout: int) -> list[str]:
        return [self.ping_bin, "-n", "-c", str(count), "-W", str(timeout), address]

    def deadline(self, count: int, timeout: int) -> float:
        # Worst case every request waits the full per-reply timeout
        return count * timeout + self.grace_seconds

    def probe(self, target: Target, count: int, timeout: int) -> ProbeOutcome:
        cmd = self.build_command(target.address, count, timeout)
        try:
            proc = subprocess.run(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                # Diagnostics are matched against English phrases
                env={**os.environ, "LC_ALL": "C"},
                timeout=self.deadline(count, timeout),
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.debug(f"ping to {target.display} exceeded {self.deadline(count, timeout)}s and was killed")
            return ProbeOutcome.failed(FailureReason.TIMEOUT, "probe deadline exceeded")
        except OSError as e:
            logger.error(f"Could not run {self.ping_bin} for {target.display}: {e}")
            return ProbeOutcome.failed(FailureReason.UNKNOWN, str(e))

        output = proc.stdout or ""
        if proc.returncode == 0:
            return ProbeOutcome.ok(extract_latency_ms(output))

        reason = classify_failure(output)
        detail = output.strip().splitlines()[-1] if output.strip() else f"exit code {proc.returncode}"
        return ProbeOutcome.failed(reason, detail)


class Ping3Prober(Prober):
    """
    Prober backed by the ping3 library.

    Sends `count` echo requests; succeeds if any reply arrives. Latency is
    the truncated mean of the replies. The last error seen decides the
    failure reason.
    """

    def __init__(self):
        import ping3
        from ping3 import errors as ping3_errors

        ping3.EXCEPTIONS = True
        self._ping = ping3.ping
        self._errors = ping3_errors

    def _reason_for(self, exc: Exception) -> FailureReason:
        errors = self._errors
        if isinstance(exc, errors.HostUnknown):
            return FailureReason.DNS_ERROR
        if isinstance(exc, errors.DestinationHostUnreachable):
            return FailureReason.HOST_UNREACHABLE
        if isinstance(exc, errors.DestinationUnreachable):
            return FailureReason.NETWORK_UNREACHABLE
        if isinstance(exc, errors.Timeout):
            return FailureReason.TIMEOUT
        if isinstance(exc, OSError):
            # Raw socket errors surface with their errno text
            return classify_failure(str(exc)) if str(exc) else FailureReason.UNKNOWN
        return FailureReason.UNKNOWN

    def probe(self, target: Target, count: int, timeout: int) -> ProbeOutcome:
        latencies = []
        last_error: Optional[Exception] = None
        for seq in range(count):
            try:
                delay = self._ping(target.address, timeout=timeout, unit="ms", seq=seq)
            except (self._errors.PingError, OSError) as e:
                last_error = e
                continue
            if delay is None or delay is False:
                continue
            latencies.append(float(delay))

        if latencies:
            return ProbeOutcome.ok(int(sum(latencies) / len(latencies)))
        if last_error is None:
            return ProbeOutcome.failed(FailureReason.TIMEOUT, "no reply")
        return ProbeOutcome.failed(self._reason_for(last_error), str(last_error))


def build_prober(cfg) -> Prober:
    """Select the probe backend named by cfg.probe_backend."""
    if cfg.probe_backend == "ping3":
        return Ping3Prober()
    return PingProber()
