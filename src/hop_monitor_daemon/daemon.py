"""
Scheduler / Loop Driver for the Hop Monitor Daemon

Runs the fixed-interval polling loop and sequences each cycle:

    1. Event log rotation check (before any append)
    2. Aggregation: probe every hop, build the verdict
    3. Transition detection against the in-memory MonitorState
    4. On transition: persist state, append the CSV record, notify
       In verbose mode without transition: append a heartbeat record
    5. Upload hook when its interval has elapsed (background thread)
    6. Interruptible wait until the next cycle

Lifecycle:
    RUNNING --(SIGTERM/SIGINT or request_shutdown())--> SHUTTING_DOWN --> STOPPED

    A signal only sets the cancellation token. The loop notices it at the
    next suspension point (between probes, or within one 1-second tick of
    the inter-cycle wait), finishes any write already in progress, then
    stop() closes resources and releases the singleton lock. STOPPED is
    entered exactly once.

State ownership:
    The Scheduler owns the MonitorState, the event log, the lock and the
    hooks for the lifetime of the process. If a state write fails the
    in-memory state still advances, so the next cycle does not log the
    same transition again.

Usage:
    cfg = Config()
    scheduler = startup(cfg)   # validates config, takes the lock
    scheduler.run()            # returns after shutdown was requested
    scheduler.stop()
"""

import logging
import os
import signal
import threading
import time
import uuid
from enum import Enum
from typing import Callable, List, Optional

from .aggregator import aggregate, local_now
from .config import Config, validate_configuration
from .event_log import EventLog
from .hooks import Notifier, UploadHook, build_notifiers, build_upload_hook, describe_event
from .lockfile import PidLock
from .models import AggregateVerdict, MonitorState, OutageEvent
from .probe import Prober, build_prober
from .state import StateStore, StateWriteError
from .structured_events import ActionResult, StructuredEventLogger
from .transitions import detect, make_heartbeat, next_state

DAEMON_NAME = "Internet hop monitor"
DAEMON_VERSION = "1.0.0"

# Granularity of the interruptible inter-cycle wait
TICK_SECONDS = 1.0

# Process exit codes
EXIT_OK = 0
EXIT_FATAL = 1
EXIT_LOCK_HELD = 3


class Lifecycle(Enum):
    RUNNING = "RUNNING"
    SHUTTING_DOWN = "SHUTTING_DOWN"
    STOPPED = "STOPPED"


class Scheduler:
    """
    Owns one monitor's runtime state and drives its polling loop.

    Args:
        cfg (Config): Immutable configuration.
        prober (Prober): Probe backend.
        state_store (StateStore): Persistence for MonitorState.
        event_log (EventLog): CSV evidentiary log.
        lock (PidLock): Singleton lock, already acquired (or None in tests).
        upload_hook (UploadHook): Optional periodic log upload.
        notifiers (list[Notifier]): Optional transition notifications.
        structured_logger (StructuredEventLogger): Operational event sink.
        clock (callable): Returns the cycle timestamp (tz-aware, whole seconds).
        sleep (callable): Used for the 1-second ticks (injectable for tests).
    """

    def __init__(self,
                 cfg: Config,
                 prober: Prober,
                 state_store: StateStore,
                 event_log: EventLog,
                 lock: Optional[PidLock] = None,
                 upload_hook: Optional[UploadHook] = None,
                 notifiers: Optional[List[Notifier]] = None,
                 structured_logger: Optional[StructuredEventLogger] = None,
                 clock: Callable = local_now,
                 sleep: Optional[Callable[[float], None]] = None):
        self.cfg = cfg
        self.prober = prober
        self.state_store = state_store
        self.event_log = event_log
        self.lock = lock
        self.upload_hook = upload_hook
        self.notifiers = notifiers or []
        self.structured_logger = structured_logger or StructuredEventLogger(cfg.logger_name)
        self.logger = logging.getLogger(cfg.logger_name)
        self.clock = clock
        self.shutdown_event = threading.Event()
        self._sleep = sleep
        self._stop_lock = threading.Lock()

        self.lifecycle = Lifecycle.RUNNING
        self.state: MonitorState = state_store.load()
        self.consecutive_errors = 0
        self.cycles = 0

    # ------------------------------------------------------------------
    # Shutdown handling
    # ------------------------------------------------------------------

    def request_shutdown(self, reason: str = "requested") -> None:
        """Move RUNNING -> SHUTTING_DOWN. Safe to call from a signal handler."""
        if self.lifecycle is Lifecycle.RUNNING:
            self.lifecycle = Lifecycle.SHUTTING_DOWN
        self.shutdown_event.set()
        self.logger.info(f"Shutdown {reason}, finishing current cycle...")

    def _signal_handler(self, signum: int, frame) -> None:
        signal_names = {
            signal.SIGTERM: 'SIGTERM',
            signal.SIGINT: 'SIGINT'
        }
        self.request_shutdown(f"on {signal_names.get(signum, f'Signal-{signum}')}")

    def install_signal_handlers(self) -> None:
        """Route SIGTERM and SIGINT to request_shutdown()."""
        try:
            signal.signal(signal.SIGTERM, self._signal_handler)
            signal.signal(signal.SIGINT, self._signal_handler)
            self.logger.debug("Signal handlers registered for SIGTERM and SIGINT")
        except (ValueError, OSError) as e:
            # Only possible off the main thread
            self.logger.warning(f"Failed to register signal handlers: {e}")

    def should_stop(self) -> bool:
        return self.shutdown_event.is_set()

    def wait_interval(self, seconds: float) -> bool:
        """
        Wait up to `seconds` in TICK_SECONDS steps.

        Returns True if shutdown was requested during the wait.
        """
        deadline = time.monotonic() + seconds
        while not self.shutdown_event.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            tick = min(TICK_SECONDS, remaining)
            if self._sleep is not None:
                self._sleep(tick)
            else:
                self.shutdown_event.wait(tick)
        return True

    # ------------------------------------------------------------------
    # One polling cycle
    # ------------------------------------------------------------------

    def _record_transition(self, event: OutageEvent) -> None:
        old = self.state
        new = next_state(event)

        state_saved = True
        try:
            self.state_store.save(new)
        except StateWriteError as e:
            state_saved = False
            self.logger.error(f"{e}; keeping {new.status.value} in memory")
        # In-memory state advances regardless to avoid repeating the event
        self.state = new

        try:
            self.event_log.append(event)
        except OSError as e:
            self.logger.error(f"Could not append to event log {self.event_log.path}: {e}")

        self.logger.info(f"Transition {old.status.value} -> {new.status.value}: {describe_event(event)}")
        self.structured_logger.log_transition(
            old_status=old.status.value,
            new_status=new.status.value,
            latency_ms=event.latency_ms,
            duration=event.duration,
            failed_targets=[f"{t.display}:{r.value}" for t, r in event.failed_targets],
            state_saved=state_saved,
        )

        for notifier in self.notifiers:
            notifier.notify(event)

    def _record_heartbeat(self, verdict: AggregateVerdict) -> None:
        try:
            self.event_log.append(make_heartbeat(verdict))
        except OSError as e:
            self.logger.error(f"Could not append heartbeat to {self.event_log.path}: {e}")
        self.structured_logger.log_heartbeat(
            status=verdict.status.value,
            latency_ms=verdict.avg_latency_ms,
            success_count=verdict.success_count,
            total_count=verdict.total_count,
        )

    def run_cycle(self) -> Optional[OutageEvent]:
        """
        Execute one cycle.

        Returns:
            The transition event, or None for a no-op (or cancelled) cycle.
        """
        correlation_id = f"cycle-{int(time.time())}-{str(uuid.uuid4())[:8]}"
        self.structured_logger.set_correlation_id(correlation_id)
        self.cycles += 1

        self.event_log.check_rotation(self.structured_logger)

        verdict = aggregate(
            self.cfg.targets,
            self.cfg.policy,
            self.prober,
            self.cfg.ping_count,
            self.cfg.ping_timeout,
            latency_threshold_ms=self.cfg.latency_threshold_ms,
            max_workers=self.cfg.probe_workers,
            now=self.clock(),
            should_stop=self.should_stop,
            structured_logger=self.structured_logger,
        )
        if verdict is None:
            return None

        self.logger.debug(f"[{correlation_id}] Verdict {verdict.status.value} "
                          f"({verdict.success_count}/{verdict.total_count} hops up, "
                          f"avg {verdict.avg_latency_ms} ms)")

        event = detect(self.state, verdict)
        if event is not None:
            self._record_transition(event)
        elif self.cfg.verbose:
            self._record_heartbeat(verdict)

        if self.upload_hook is not None:
            self.upload_hook.maybe_upload(self.event_log.path)
        return event

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def run(self) -> int:
        """
        Poll until shutdown is requested or too many cycles fail in a row.

        Returns:
            EXIT_OK after a requested shutdown, EXIT_FATAL after
            max_consecutive_errors unexpected failures.
        """
        self.logger.info(f"Monitoring {len(self.cfg.targets)} hops every {self.cfg.ping_interval}s "
                         f"(policy {self.cfg.policy}, latency threshold "
                         f"{self.cfg.latency_threshold_ms or 'disabled'})")
        for target in self.cfg.targets:
            self.logger.info(f"  hop {target.position}: {target.display}")
        self.logger.info(f"Current state {self.state.status.value} since "
                         f"{self.state.since.isoformat() if self.state.since else 'unknown'}")

        self.structured_logger.log_lifecycle("startup", {
            "version": DAEMON_VERSION,
            "targets": [t.display for t in self.cfg.targets],
            "policy": str(self.cfg.policy),
            "ping_interval": self.cfg.ping_interval,
            "latency_threshold_ms": self.cfg.latency_threshold_ms,
            "initial_status": self.state.status.value,
        })

        exit_code = EXIT_OK
        while not self.shutdown_event.is_set():
            loop_start = time.monotonic()
            try:
                self.run_cycle()
                self.consecutive_errors = 0
            except Exception as e:
                self.consecutive_errors += 1
                self.logger.exception(f"Unexpected error in polling cycle "
                                      f"({self.consecutive_errors}/{self.cfg.max_consecutive_errors}): {e}")
                if self.consecutive_errors >= self.cfg.max_consecutive_errors:
                    self.logger.critical("Reached maximum consecutive errors, exiting polling loop")
                    exit_code = EXIT_FATAL
                    break

            elapsed = time.monotonic() - loop_start
            sleep_time = max(0.0, self.cfg.ping_interval - elapsed)
            if sleep_time == 0:
                self.logger.warning(f"Cycle took {elapsed:.1f}s, longer than interval {self.cfg.ping_interval}s")
            if self.wait_interval(sleep_time):
                break

        self.structured_logger.set_correlation_id(None)
        if self.lifecycle is Lifecycle.RUNNING:
            self.lifecycle = Lifecycle.SHUTTING_DOWN
        return exit_code

    def stop(self) -> None:
        """Release everything the scheduler owns. Idempotent; ends in STOPPED."""
        with self._stop_lock:
            if self.lifecycle is Lifecycle.STOPPED:
                return
            self.lifecycle = Lifecycle.SHUTTING_DOWN
            self.shutdown_event.set()

            if self.upload_hook is not None:
                self.upload_hook.join(timeout=TICK_SECONDS)
            if self.lock is not None:
                self.lock.release()

            self.structured_logger.log_lifecycle("shutdown", {
                "cycles": self.cycles,
                "final_status": self.state.status.value,
                "consecutive_errors": self.consecutive_errors,
            })
            self.logger.info("Hop monitor stopped.")
            self.lifecycle = Lifecycle.STOPPED


class ConfigurationError(Exception):
    def __init__(self, errors: List[str]):
        super().__init__(f"Configuration validation failed with {len(errors)} errors")
        self.errors = errors


def startup(cfg: Config, prober: Optional[Prober] = None) -> Scheduler:
    """
    Validate configuration, take the singleton lock and build the Scheduler.

    Raises:
        ConfigurationError: the configuration is invalid.
        LockHeldError: another live instance holds the lock.
    """
    logger = logging.getLogger(cfg.logger_name)
    structured_logger = StructuredEventLogger(cfg.logger_name)

    logger.info(f"{DAEMON_NAME} v{DAEMON_VERSION} starting")

    errors = validate_configuration(cfg)
    if errors:
        logger.error("Configuration validation failed with the following errors:")
        for i, error in enumerate(errors, 1):
            logger.error(f"  {i}. {error}")
        structured_logger.log_lifecycle("config_validation", {"validation_errors": errors},
                                        result=ActionResult.FAILURE,
                                        error_message=f"{len(errors)} configuration errors")
        raise ConfigurationError(errors)

    lock = PidLock(cfg.lock_file)
    lock.acquire()

    try:
        event_log = EventLog(cfg.event_log_file, cfg.event_log_max_bytes)
        event_log.ensure_exists()
        scheduler = Scheduler(
            cfg,
            prober or build_prober(cfg),
            StateStore(cfg.state_file),
            event_log,
            lock=lock,
            upload_hook=build_upload_hook(cfg, structured_logger),
            notifiers=build_notifiers(cfg, structured_logger),
            structured_logger=structured_logger,
        )
    except BaseException:
        lock.release()
        raise

    scheduler.install_signal_handlers()
    return scheduler
