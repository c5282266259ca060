import os
import re
import ipaddress
from dataclasses import dataclass, field
from typing import Optional, Tuple
from dotenv import load_dotenv

from .models import PolicyKind, SuccessPolicy, Target

# Load environment variables from a .env file into the runtime environment
load_dotenv()

DEFAULT_TARGETS = "192.168.1.1=ROUTER,8.8.8.8=GOOGLE_DNS,1.1.1.1=CLOUDFLARE_DNS"

_HOSTNAME_RE = re.compile(r"^(?=.{1,253}$)([A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)(\.[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*\.?$")


def _optional_int(raw: Optional[str]) -> Optional[int]:
    """Empty, missing or zero means 'disabled'."""
    if raw is None or raw.strip() == "":
        return None
    value = int(raw)
    return value if value > 0 else None


def parse_targets(raw: str) -> Tuple[Target, ...]:
    """
    Parse an ordered hop list of the form "addr[=label],addr[=label],...".

    Blank entries are skipped; positions follow the order given.

    Example:
        >>> parse_targets("192.168.1.1=ROUTER,8.8.8.8")
        (Target(address='192.168.1.1', label='ROUTER', position=0),
         Target(address='8.8.8.8', label=None, position=1))
    """
    targets = []
    for chunk in (raw or "").split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        address, _, label = chunk.partition("=")
        targets.append(Target(address=address.strip(), label=label.strip() or None, position=len(targets)))
    return tuple(targets)


@dataclass(frozen=True)
class Config:
    """
    Immutable configuration for the hop monitor, built once at startup and
    passed to every component.

    All fields default to environment variables (a .env file is honoured).
    Construct with keyword overrides in tests, e.g. Config(state_file=...).

    Attributes:
        Probing:
            - targets_spec / targets: Ordered hop list ("addr=LABEL,...").
            - ping_interval: Seconds between polling cycles.
            - ping_count: Echo requests per probe.
            - ping_timeout: Per-reply timeout in seconds.
            - probe_backend: "ping" (OS utility) or "ping3" (library).
            - probe_workers: >1 probes targets concurrently.

        Verdict:
            - success_policy: "ALL" or "THRESHOLD".
            - min_successful_targets: n for THRESHOLD.
            - latency_threshold_ms: Average latency above which UP becomes HIGH_LATENCY.

        Persistence:
            - event_log_file: CSV evidentiary log.
            - event_log_max_bytes: Size that triggers rotation.
            - state_file: Persisted {status, since}.
            - lock_file: Process-singleton PID lock.
            - verbose: Write heartbeat rows for no-op cycles.

        Hooks:
            - upload_enabled / rclone_remote / rclone_path / upload_interval: Log upload via rclone.
            - notify_webhook_url / notify_timeout: JSON webhook for transitions.
            - smtp_* / notify_email_*: E-mail notification for transitions.
            - hook_failure_threshold / hook_cooldown: Circuit breaker for hooks.

        Logging:
            - logger_name, log_level, log_file, log_max_bytes, log_backup_count
            - enable_syslog / syslog_address
            - enable_structured_console / enable_structured_file / structured_log_file

        Runtime Control:
            - max_consecutive_errors: Loop exits after this many unexpected errors in a row.
    """
    # Logging
    logger_name: str = os.getenv('LOGGER_NAME', 'HOP_MONITOR_DAEMON').upper()
    log_level: str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_file: Optional[str] = os.getenv('LOG_FILE', '/var/log/hop_monitor.log') or None
    log_max_bytes: int = int(os.getenv('LOG_MAX_BYTES', 5 * 1024 * 1024))
    log_backup_count: int = int(os.getenv('LOG_BACKUP_COUNT', 5))
    enable_syslog: bool = os.getenv('ENABLE_SYSLOG', 'false').lower() == 'true'
    syslog_address: str = os.getenv('SYSLOG_ADDRESS', '/dev/log')
    enable_structured_console: bool = os.getenv('ENABLE_STRUCTURED_CONSOLE', 'false').lower() == 'true'
    enable_structured_file: bool = os.getenv('ENABLE_STRUCTURED_FILE', 'false').lower() == 'true'
    structured_log_file: Optional[str] = os.getenv('STRUCTURED_LOG_FILE', '/var/log/hop_monitor_structured.jsonl')

    # Probing
    targets_spec: str = os.getenv('TARGETS', DEFAULT_TARGETS)
    ping_interval: int = int(os.getenv('PING_INTERVAL_SECONDS', 30))
    ping_count: int = int(os.getenv('PING_COUNT', 3))
    ping_timeout: int = int(os.getenv('PING_TIMEOUT_SECONDS', 2))
    probe_backend: str = os.getenv('PROBE_BACKEND', 'ping').lower()
    probe_workers: int = int(os.getenv('PROBE_WORKERS', 1))

    # Verdict
    success_policy: str = os.getenv('SUCCESS_POLICY', 'ALL').upper()
    min_successful_targets: int = int(os.getenv('MIN_SUCCESSFUL_TARGETS', 1))
    latency_threshold_ms: Optional[int] = _optional_int(os.getenv('LATENCY_THRESHOLD_MS', '100'))

    # Persistence
    event_log_file: str = os.getenv('EVENT_LOG_FILE', '/var/lib/hop-monitor/outages.csv')
    event_log_max_bytes: int = int(os.getenv('EVENT_LOG_MAX_BYTES', 10 * 1024 * 1024))
    state_file: str = os.getenv('STATE_FILE', '/var/lib/hop-monitor/state')
    lock_file: str = os.getenv('LOCK_FILE', '/tmp/hop_monitor.lock')
    verbose: bool = os.getenv('VERBOSE', 'false').lower() == 'true'

    # Upload hook
    upload_enabled: bool = os.getenv('UPLOAD_ENABLED', 'false').lower() == 'true'
    rclone_remote: str = os.getenv('RCLONE_REMOTE', 'protondrive')
    rclone_path: str = os.getenv('RCLONE_PATH', 'monitoring/')
    upload_interval: int = int(os.getenv('UPLOAD_INTERVAL_SECONDS', 3600))

    # Notification hooks
    notify_webhook_url: Optional[str] = os.getenv('NOTIFY_WEBHOOK_URL') or None
    notify_timeout: int = int(os.getenv('NOTIFY_TIMEOUT_SECONDS', 10))
    smtp_host: Optional[str] = os.getenv('SMTP_HOST') or None
    smtp_port: int = int(os.getenv('SMTP_PORT', 587))
    smtp_user: Optional[str] = os.getenv('SMTP_USER') or None
    smtp_password: Optional[str] = os.getenv('SMTP_PASSWORD') or None
    notify_email_from: Optional[str] = os.getenv('NOTIFY_EMAIL_FROM') or None
    notify_email_to: Optional[str] = os.getenv('NOTIFY_EMAIL_TO') or None
    hook_failure_threshold: int = int(os.getenv('HOOK_FAILURE_THRESHOLD', 3))
    hook_cooldown: int = int(os.getenv('HOOK_COOLDOWN_SECONDS', 600))

    # Runtime control
    max_consecutive_errors: int = int(os.getenv('MAX_CONSECUTIVE_ERRORS', 10))

    targets: Tuple[Target, ...] = field(init=False, repr=False)

    def __post_init__(self):
        """Parse the hop list once; the instance stays immutable afterwards."""
        object.__setattr__(self, 'targets', parse_targets(self.targets_spec))

    @property
    def policy(self) -> SuccessPolicy:
        if self.success_policy == PolicyKind.THRESHOLD.value:
            return SuccessPolicy.threshold(self.min_successful_targets)
        return SuccessPolicy.all_required()


# Validation ranges for numeric environment-provided values
NUMERIC_RANGES = {
    'ping_interval': ('PING_INTERVAL_SECONDS', 1, 3600),
    'ping_count': ('PING_COUNT', 1, 20),
    'ping_timeout': ('PING_TIMEOUT_SECONDS', 1, 60),
    'probe_workers': ('PROBE_WORKERS', 1, 32),
    'min_successful_targets': ('MIN_SUCCESSFUL_TARGETS', 1, 100),
    'event_log_max_bytes': ('EVENT_LOG_MAX_BYTES', 1024, 1073741824),  # 1 KB to 1 GB
    'log_max_bytes': ('LOG_MAX_BYTES', 1024, 1073741824),
    'log_backup_count': ('LOG_BACKUP_COUNT', 1, 100),
    'upload_interval': ('UPLOAD_INTERVAL_SECONDS', 60, 86400),
    'notify_timeout': ('NOTIFY_TIMEOUT_SECONDS', 1, 300),
    'hook_failure_threshold': ('HOOK_FAILURE_THRESHOLD', 1, 50),
    'hook_cooldown': ('HOOK_COOLDOWN_SECONDS', 1, 86400),
    'max_consecutive_errors': ('MAX_CONSECUTIVE_ERRORS', 1, 1000),
}

VALID_BACKENDS = ('ping', 'ping3')


def is_valid_address(address: str) -> bool:
    """True for a literal IPv4/IPv6 address or a syntactically valid hostname."""
    try:
        ipaddress.ip_address(address)
        return True
    except ValueError:
        return bool(_HOSTNAME_RE.match(address))


def validate_configuration(cfg: Config) -> list[str]:
    """
    Validates the loaded configuration for completeness and consistency.

    Args:
        cfg (Config): Parsed and populated configuration object.

    Returns:
        list[str]: Human-readable error strings. Empty list means validation passed.
    """
    errors: list[str] = []

    if not cfg.targets:
        errors.append("TARGETS must list at least one address")

    seen = set()
    for target in cfg.targets:
        if not is_valid_address(target.address):
            errors.append(f"Invalid target address: '{target.address}'")
        if target.address in seen:
            errors.append(f"Duplicate target address: {target.address}")
        seen.add(target.address)

    for attr, (var, mn, mx) in NUMERIC_RANGES.items():
        val = getattr(cfg, attr)
        if val < mn or val > mx:
            errors.append(f"{var} must be between {mn} and {mx}, got {val}")

    if cfg.success_policy not in {kind.value for kind in PolicyKind}:
        errors.append(f"SUCCESS_POLICY must be ALL or THRESHOLD, got '{cfg.success_policy}'")
    elif cfg.success_policy == PolicyKind.THRESHOLD.value and cfg.targets \
            and cfg.min_successful_targets > len(cfg.targets):
        errors.append(f"MIN_SUCCESSFUL_TARGETS ({cfg.min_successful_targets}) cannot exceed "
                      f"the number of targets ({len(cfg.targets)})")

    if cfg.probe_backend not in VALID_BACKENDS:
        errors.append(f"PROBE_BACKEND must be one of {', '.join(VALID_BACKENDS)}, got '{cfg.probe_backend}'")

    if cfg.latency_threshold_ms is not None and cfg.latency_threshold_ms > 60000:
        errors.append(f"LATENCY_THRESHOLD_MS must be at most 60000, got {cfg.latency_threshold_ms}")

    paths = {'EVENT_LOG_FILE': cfg.event_log_file, 'STATE_FILE': cfg.state_file, 'LOCK_FILE': cfg.lock_file}
    for var, path in paths.items():
        if not path:
            errors.append(f"{var} must not be empty")
    if cfg.event_log_file and cfg.event_log_file == cfg.state_file:
        errors.append("EVENT_LOG_FILE and STATE_FILE must be different files")

    if cfg.notify_email_to and not cfg.smtp_host:
        errors.append("NOTIFY_EMAIL_TO is set but SMTP_HOST is missing")

    return errors
