"""
External Hooks: log upload and transition notifications

All hooks are best-effort. Failures are logged, counted by a per-hook
CircuitBreaker and never propagate into the polling loop.

Hooks:
    - UploadHook: copies the CSV log to an rclone remote on a background
      thread at most once per upload interval. Skipped when rclone is not
      installed or the remote is not configured.
    - WebhookNotifier: POSTs a JSON summary of each transition (requests).
    - EmailNotifier: sends a plain-text mail per transition (smtplib).

Usage:
    notifiers = build_notifiers(cfg, structured_logger)
    for n in notifiers:
        n.notify(event)
"""

import logging
import os
import shutil
import smtplib
import subprocess
import threading
import time
from email.message import EmailMessage
from typing import Any, Callable, Dict, List, Optional

import requests

from .circuit import CircuitBreaker, CircuitOpenError
from .event_log import NOT_AVAILABLE, TIMESTAMP_FORMAT
from .models import OutageEvent
from .structured_events import ActionResult, StructuredEventLogger

logger = logging.getLogger(os.getenv("LOGGER_NAME", "HOP_MONITOR_DAEMON"))

RCLONE_LIST_TIMEOUT = 30   # seconds
RCLONE_COPY_TIMEOUT = 300  # seconds


def summarize_event(event: OutageEvent) -> Dict[str, Any]:
    """Flat, JSON-serialisable description of a transition."""
    return {
        "timestamp": event.timestamp.isoformat(),
        "status": event.status.value,
        "latency_ms": event.latency_ms,
        "duration": event.duration,
        "failed_targets": [
            {"address": t.address, "label": t.label, "reason": r.value}
            for t, r in event.failed_targets
        ],
        "error_details": event.error_details or None,
    }


def describe_event(event: OutageEvent) -> str:
    """One-line human summary, used for e-mail subjects and log lines."""
    text = f"Connectivity {event.status.value} at {event.timestamp.strftime(TIMESTAMP_FORMAT)}"
    if event.duration:
        text += f" after {event.duration} outage"
    elif event.latency_ms is not None:
        text += f" ({event.latency_ms} ms)"
    if event.failed_targets:
        text += " - failed: " + ", ".join(f"{t.display} {r.value}" for t, r in event.failed_targets)
    return text


class UploadHook:
    """
    Periodic best-effort copy of the event log to an rclone remote.

    Args:
        remote (str): rclone remote name (without the trailing colon).
        remote_path (str): Destination folder on the remote.
        interval (int): Minimum seconds between uploads.
        breaker (CircuitBreaker): Failure isolation for the remote.
        structured_logger (StructuredEventLogger): Optional event sink.
        rclone_bin (str): rclone executable; looked up on PATH if omitted.
        clock (callable): Monotonic clock (injectable for tests).
    """

    def __init__(self,
                 remote: str,
                 remote_path: str,
                 interval: int,
                 breaker: CircuitBreaker,
                 structured_logger: Optional[StructuredEventLogger] = None,
                 rclone_bin: Optional[str] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.remote = remote
        self.remote_path = remote_path
        self.interval = interval
        self.breaker = breaker
        self.structured_logger = structured_logger
        self.rclone_bin = rclone_bin
        self._clock = clock
        self._last_attempt = clock()
        self._thread: Optional[threading.Thread] = None

    def due(self) -> bool:
        return self._clock() - self._last_attempt >= self.interval

    def maybe_upload(self, path: str) -> bool:
        """
        Start a background upload if the interval has elapsed.

        Returns True if an upload thread was started. Never blocks.
        """
        if not self.due():
            return False
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Previous log upload still running; skipping this interval")
            return False
        self._last_attempt = self._clock()
        self._thread = threading.Thread(target=self.upload, args=(path,), name="log-upload", daemon=True)
        self._thread.start()
        return True

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _rclone(self) -> Optional[str]:
        return self.rclone_bin or shutil.which("rclone")

    def _remote_configured(self, rclone: str) -> bool:
        proc = subprocess.run([rclone, "listremotes"], capture_output=True, text=True,
                              timeout=RCLONE_LIST_TIMEOUT, check=False)
        remotes = {line.strip() for line in proc.stdout.splitlines()}
        return f"{self.remote}:" in remotes

    def _copy(self, rclone: str, path: str) -> None:
        proc = subprocess.run([rclone, "copy", path, f"{self.remote}:{self.remote_path}", "--quiet"],
                              capture_output=True, text=True, timeout=RCLONE_COPY_TIMEOUT, check=False)
        if proc.returncode != 0:
            raise RuntimeError(f"rclone copy exited {proc.returncode}: {proc.stderr.strip()}")

    def _report(self, result: ActionResult, started: float, error: Optional[str] = None) -> None:
        if self.structured_logger:
            self.structured_logger.log_hook_result(
                hook="upload",
                result=result,
                duration_ms=int((time.monotonic() - started) * 1000),
                error_message=error,
                details={"remote": f"{self.remote}:{self.remote_path}"},
            )

    def upload(self, path: str) -> bool:
        """Synchronous upload. Returns True on success; never raises."""
        started = time.monotonic()
        rclone = self._rclone()
        if not rclone:
            logger.info("rclone is not installed, upload skipped")
            self._report(ActionResult.SKIPPED, started, "rclone not installed")
            return False
        if not os.path.exists(path):
            logger.info(f"Nothing to upload yet ({path} does not exist)")
            self._report(ActionResult.SKIPPED, started, "log file missing")
            return False
        try:
            if not self.breaker.call(self._remote_configured, rclone):
                logger.warning(f"rclone remote '{self.remote}' is not configured, upload skipped")
                self._report(ActionResult.SKIPPED, started, "remote not configured")
                return False
            self.breaker.call(self._copy, rclone, path)
        except CircuitOpenError as e:
            logger.debug(f"Upload skipped: {e}")
            self._report(ActionResult.SKIPPED, started, str(e))
            return False
        except (OSError, subprocess.SubprocessError, RuntimeError) as e:
            logger.error(f"Log upload to {self.remote}:{self.remote_path} failed: {e}")
            self._report(ActionResult.FAILURE, started, str(e))
            return False
        logger.info(f"{os.path.basename(path)} uploaded to {self.remote}:{self.remote_path}")
        self._report(ActionResult.SUCCESS, started)
        return True


class Notifier:
    """Base class: subclasses implement _send(); notify() is best-effort."""

    name = "notifier"

    def __init__(self, breaker: CircuitBreaker, structured_logger: Optional[StructuredEventLogger] = None):
        self.breaker = breaker
        self.structured_logger = structured_logger

    def _send(self, event: OutageEvent) -> None:
        raise NotImplementedError

    def notify(self, event: OutageEvent) -> bool:
        started = time.monotonic()
        try:
            self.breaker.call(self._send, event)
        except CircuitOpenError as e:
            logger.debug(f"{self.name} skipped: {e}")
            result, error = ActionResult.SKIPPED, str(e)
        except Exception as e:
            logger.error(f"{self.name} failed: {e}")
            result, error = ActionResult.FAILURE, str(e)
        else:
            result, error = ActionResult.SUCCESS, None

        if self.structured_logger:
            self.structured_logger.log_hook_result(
                hook=self.name,
                result=result,
                duration_ms=int((time.monotonic() - started) * 1000),
                error_message=error,
                details={"status": event.status.value},
            )
        return result is ActionResult.SUCCESS


class WebhookNotifier(Notifier):
    """POST a JSON summary of each transition to a webhook URL."""

    name = "webhook_notify"

    def __init__(self, url: str, timeout: int, breaker: CircuitBreaker,
                 structured_logger: Optional[StructuredEventLogger] = None,
                 session: Optional[requests.Session] = None):
        super().__init__(breaker, structured_logger)
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def _send(self, event: OutageEvent) -> None:
        payload = summarize_event(event)
        payload["text"] = describe_event(event)
        response = self.session.post(self.url, json=payload, timeout=self.timeout)
        response.raise_for_status()


class EmailNotifier(Notifier):
    """Send a short plain-text e-mail for each transition."""

    name = "email_notify"

    def __init__(self, host: str, port: int, sender: str, recipients: List[str], timeout: int,
                 breaker: CircuitBreaker, user: Optional[str] = None, password: Optional[str] = None,
                 structured_logger: Optional[StructuredEventLogger] = None):
        super().__init__(breaker, structured_logger)
        self.host = host
        self.port = port
        self.sender = sender
        self.recipients = recipients
        self.timeout = timeout
        self.user = user
        self.password = password

    def build_message(self, event: OutageEvent) -> EmailMessage:
        summary = summarize_event(event)
        msg = EmailMessage()
        msg["Subject"] = f"[hop-monitor] {describe_event(event)}"
        msg["From"] = self.sender
        msg["To"] = ", ".join(self.recipients)
        lines = [
            f"Status:         {summary['status']}",
            f"Time:           {summary['timestamp']}",
            f"Latency (ms):   {summary['latency_ms'] if summary['latency_ms'] is not None else NOT_AVAILABLE}",
            f"Outage length:  {summary['duration'] or NOT_AVAILABLE}",
        ]
        for failed in summary["failed_targets"]:
            label = f" ({failed['label']})" if failed["label"] else ""
            lines.append(f"Failed hop:     {failed['address']}{label} {failed['reason']}")
        msg.set_content("\n".join(lines) + "\n")
        return msg

    def _send(self, event: OutageEvent) -> None:
        msg = self.build_message(event)
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            smtp.ehlo()
            if smtp.has_extn("starttls"):
                smtp.starttls()
                smtp.ehlo()
            if self.user and self.password:
                smtp.login(self.user, self.password)
            smtp.send_message(msg)


def _breaker(cfg, name: str, structured_logger) -> CircuitBreaker:
    return CircuitBreaker(threshold=cfg.hook_failure_threshold, timeout=cfg.hook_cooldown,
                          service_name=name, structured_logger=structured_logger)


def build_upload_hook(cfg, structured_logger=None) -> Optional[UploadHook]:
    if not cfg.upload_enabled:
        return None
    return UploadHook(cfg.rclone_remote, cfg.rclone_path, cfg.upload_interval,
                      _breaker(cfg, "log_upload", structured_logger), structured_logger)


def build_notifiers(cfg, structured_logger=None) -> List[Notifier]:
    notifiers: List[Notifier] = []
    if cfg.notify_webhook_url:
        notifiers.append(WebhookNotifier(cfg.notify_webhook_url, cfg.notify_timeout,
                                         _breaker(cfg, "webhook_notify", structured_logger),
                                         structured_logger))
    if cfg.smtp_host and cfg.notify_email_to:
        recipients = [r.strip() for r in cfg.notify_email_to.split(",") if r.strip()]
        sender = cfg.notify_email_from or cfg.smtp_user or "hop-monitor@localhost"
        notifiers.append(EmailNotifier(cfg.smtp_host, cfg.smtp_port, sender, recipients, cfg.notify_timeout,
                                       _breaker(cfg, "email_notify", structured_logger),
                                       user=cfg.smtp_user, password=cfg.smtp_password,
                                       structured_logger=structured_logger))
    return notifiers
