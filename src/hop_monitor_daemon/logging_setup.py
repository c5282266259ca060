import os
import json
import logging
from logging.handlers import RotatingFileHandler, SysLogHandler


class StructuredFormatter(logging.Formatter):
    """
    Formatter that outputs one compact JSON object per structured event
    and falls back to the regular format for everything else.
    """
    def format(self, record):
        if hasattr(record, 'json_fields') and record.json_fields.get('structured_event'):
            return json.dumps(record.json_fields, separators=(',', ':'), default=str)
        return super().format(record)


class StructuredFilter(logging.Filter):
    """
    Filter that only allows structured log events to pass through.
    """
    def filter(self, record):
        return (hasattr(record, 'json_fields') and
                record.json_fields.get('structured_event', False))


class NonStructuredFilter(logging.Filter):
    """
    Filter that only allows non-structured log events to pass through.
    """
    def filter(self, record):
        return not (hasattr(record, 'json_fields') and
                    record.json_fields.get('structured_event', False))


def _ensure_parent(path: str) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)


def setup_logger(name: str, level: str, log_file: str | None, max_bytes: int, backup_count: int,
                 enable_syslog: bool = False, syslog_address: str = '/dev/log',
                 enable_structured_console: bool = False, enable_structured_file: bool = False,
                 structured_log_file: str | None = None):
    """
    Build the daemon's diagnostic logger.

    Human-readable messages go to the console and, optionally, a rotating
    text file and syslog. Structured events either replace the console
    output (enable_structured_console) or go to a separate JSON-lines file.

    Args:
        name (str): Logger name shared by every module.
        level (str): Level name such as "INFO".
        log_file (str): Rotating plain-text operational log, or None.
        max_bytes / backup_count: Rotation settings for file handlers.
        enable_syslog (bool): Mirror warnings and errors to the system log.
        syslog_address (str): Socket path or "host:port" for syslog.
        enable_structured_console (bool): Output JSON to console for structured events.
        enable_structured_file (bool): Output JSON to a separate structured log file.
        structured_log_file (str): Path to the structured JSON-lines log file.

    Structured records pass through the same level as everything else, so
    the DEBUG-level events (successful probes, heartbeats) only reach the
    structured file when level is "DEBUG".
    """
    logger_name = name or os.getenv("LOGGER_NAME", "HOP_MONITOR_DAEMON")
    logger = logging.getLogger(logger_name)
    logger.setLevel(getattr(logging, level, logging.INFO))
    logger.propagate = False

    # Calling setup twice (tests, reloads) must not duplicate output
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    regular_formatter = logging.Formatter('%(asctime)s %(levelname)s [%(name)s] %(message)s')
    structured_formatter = StructuredFormatter()

    ch = logging.StreamHandler()
    ch.setLevel(getattr(logging, level, logging.INFO))
    if enable_structured_console:
        ch.setFormatter(structured_formatter)
        ch.addFilter(StructuredFilter())
    else:
        ch.setFormatter(regular_formatter)
        ch.addFilter(NonStructuredFilter())
    logger.addHandler(ch)

    if log_file:
        try:
            _ensure_parent(log_file)
            fh = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count)
            fh.setLevel(getattr(logging, level, logging.INFO))
            fh.setFormatter(regular_formatter)
            fh.addFilter(NonStructuredFilter())
            logger.addHandler(fh)
            logger.info(f"Regular file logging enabled: {log_file}")
        except Exception as e:
            logger.warning(f"Could not setup regular file logging at {log_file}: {e}")

    if enable_syslog:
        try:
            if ':' in syslog_address:
                host, port = syslog_address.rsplit(':', 1)
                address = (host, int(port))
            else:
                address = syslog_address
            sh = SysLogHandler(address=address)
            sh.setLevel(logging.WARNING)
            sh.setFormatter(logging.Formatter('hop-monitor[%(process)d]: %(levelname)s %(message)s'))
            sh.addFilter(NonStructuredFilter())
            logger.addHandler(sh)
            logger.info(f"Syslog logging enabled: {syslog_address}")
        except Exception as e:
            logger.warning(f"Could not setup syslog logging at {syslog_address}: {e}")

    if enable_structured_file and structured_log_file:
        try:
            _ensure_parent(structured_log_file)
            sfh = RotatingFileHandler(structured_log_file, maxBytes=max_bytes, backupCount=backup_count)
            sfh.setLevel(getattr(logging, level, logging.INFO))
            sfh.setFormatter(structured_formatter)
            sfh.addFilter(StructuredFilter())
            logger.addHandler(sfh)
            logger.info(f"Structured JSON file logging enabled: {structured_log_file}")
        except Exception as e:
            logger.warning(f"Could not setup structured file logging at {structured_log_file}: {e}")

    return logger
