import logging
import time
from typing import Dict, Any, Optional
from enum import Enum
from dataclasses import dataclass, asdict


class EventType(Enum):
    """Standard event types for structured logging"""
    CONNECTIVITY_TRANSITION = "connectivity_transition"
    PROBE_RESULT = "probe_result"
    HEARTBEAT = "heartbeat"
    LOG_ROTATION = "log_rotation"
    HOOK_RESULT = "hook_result"
    CIRCUIT_BREAKER_EVENT = "circuit_breaker_event"
    DAEMON_LIFECYCLE = "daemon_lifecycle"


class ActionResult(Enum):
    """Standard action results"""
    SUCCESS = "success"
    FAILURE = "failure"
    NO_CHANGE = "no_change"
    SKIPPED = "skipped"


@dataclass
class StructuredEvent:
    """Base structure for all structured log events"""
    event_type: str
    timestamp: float
    result: str
    component: str
    operation: str
    details: Dict[str, Any]
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    correlation_id: Optional[str] = None


class StructuredEventLogger:
    """
    Emits structured operational events on the diagnostic stream.

    These records describe what the daemon is doing (probes, transitions,
    rotations, hook calls). They never go into the CSV evidentiary log.
    """

    def __init__(self, logger_name: str):
        self.logger = logging.getLogger(logger_name)
        self.correlation_id = None

    def set_correlation_id(self, correlation_id: Optional[str]):
        """Set correlation ID for tracking related events across one polling cycle"""
        self.correlation_id = correlation_id

    def log_event(self, event) -> None:
        """Log a structured event with consistent schema"""
        if isinstance(event, StructuredEvent):
            if self.correlation_id:
                event.correlation_id = self.correlation_id
            log_data = {
                "structured_event": True,
                **asdict(event)
            }
        elif isinstance(event, dict):
            log_data = {
                "structured_event": True,
                **event
            }
            if self.correlation_id:
                log_data["correlation_id"] = self.correlation_id
        else:
            raise TypeError(f"Event must be StructuredEvent dataclass or dict, got {type(event)}")

        result = log_data.get("result")
        level = logging.INFO
        if result == ActionResult.FAILURE.value:
            level = logging.ERROR
        elif result == ActionResult.NO_CHANGE.value:
            level = logging.DEBUG

        component = log_data.get("component", "unknown")
        operation = log_data.get("operation", "unknown")
        message = f"{component}.{operation}: {result}"
        if log_data.get("error_message"):
            message += f" - {log_data['error_message']}"

        self.logger.log(level, message, extra={"json_fields": log_data})

    def log_probe_result(self,
                         target: str,
                         success: bool,
                         latency_ms: Optional[int] = None,
                         reason: Optional[str] = None,
                         duration_ms: Optional[int] = None) -> None:
        """Log one probe outcome (DEBUG on success, ERROR on failure)"""
        event = StructuredEvent(
            event_type=EventType.PROBE_RESULT.value,
            timestamp=time.time(),
            result=ActionResult.NO_CHANGE.value if success else ActionResult.FAILURE.value,
            component="prober",
            operation="probe",
            details={
                "target": target,
                "success": success,
                "latency_ms": latency_ms,
                "reason": reason,
            },
            duration_ms=duration_ms,
            error_message=reason,
        )
        self.log_event(event)

    def log_transition(self,
                       old_status: str,
                       new_status: str,
                       latency_ms: Optional[int],
                       duration: Optional[str],
                       failed_targets: list,
                       state_saved: bool) -> None:
        """Log a connectivity state transition"""
        event = StructuredEvent(
            event_type=EventType.CONNECTIVITY_TRANSITION.value,
            timestamp=time.time(),
            result=ActionResult.SUCCESS.value if state_saved else ActionResult.FAILURE.value,
            component="state_machine",
            operation="transition",
            details={
                "old_status": old_status,
                "new_status": new_status,
                "latency_ms": latency_ms,
                "duration": duration,
                "failed_targets": failed_targets,
                "state_saved": state_saved,
            },
            error_message=None if state_saved else "state file could not be written",
        )
        self.log_event(event)

    def log_heartbeat(self, status: str, latency_ms: Optional[int], success_count: int, total_count: int) -> None:
        """Log a no-op cycle"""
        event = StructuredEvent(
            event_type=EventType.HEARTBEAT.value,
            timestamp=time.time(),
            result=ActionResult.NO_CHANGE.value,
            component="state_machine",
            operation="heartbeat",
            details={
                "status": status,
                "latency_ms": latency_ms,
                "targets_up": success_count,
                "targets_total": total_count,
            },
        )
        self.log_event(event)

    def log_rotation(self, log_file: str, archive: Optional[str], size_bytes: int,
                     error_message: Optional[str] = None) -> None:
        """Log an event-log rotation attempt"""
        event = StructuredEvent(
            event_type=EventType.LOG_ROTATION.value,
            timestamp=time.time(),
            result=ActionResult.FAILURE.value if error_message else ActionResult.SUCCESS.value,
            component="event_log",
            operation="rotate",
            details={
                "log_file": log_file,
                "archive": archive,
                "size_bytes": size_bytes,
            },
            error_message=error_message,
        )
        self.log_event(event)

    def log_hook_result(self,
                        hook: str,
                        result: ActionResult,
                        duration_ms: Optional[int] = None,
                        error_message: Optional[str] = None,
                        details: Dict[str, Any] = None) -> None:
        """Log the outcome of an upload or notification hook"""
        event = StructuredEvent(
            event_type=EventType.HOOK_RESULT.value,
            timestamp=time.time(),
            result=result.value,
            component="hooks",
            operation=hook,
            details=details or {},
            duration_ms=duration_ms,
            error_message=error_message,
        )
        self.log_event(event)

    def log_circuit_breaker_event(self,
                                  service: str,
                                  event_name: str,  # "opened", "closed", "call_blocked", ...
                                  failure_count: int = None,
                                  error_message: str = None) -> None:
        """Log circuit breaker state changes"""
        event = StructuredEvent(
            event_type=EventType.CIRCUIT_BREAKER_EVENT.value,
            timestamp=time.time(),
            result=ActionResult.SUCCESS.value,
            component="circuit_breaker",
            operation=event_name,
            details={
                "service": service,
                "failure_count": failure_count
            },
            error_message=error_message
        )
        self.log_event(event)

    def log_lifecycle(self, operation: str, details: Dict[str, Any],
                      result: ActionResult = ActionResult.SUCCESS,
                      error_message: Optional[str] = None) -> None:
        """Log daemon startup / shutdown milestones"""
        self.log_event({
            "event_type": EventType.DAEMON_LIFECYCLE.value,
            "timestamp": time.time(),
            "result": result.value,
            "component": "daemon",
            "operation": operation,
            "details": details,
            "error_message": error_message,
        })
