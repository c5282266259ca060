"""
Append-only CSV evidentiary log with size-based rotation.

Record schema (field order is fixed; new fields may only be appended):

    timestamp,status,latency_ms,duration,failed_targets,error_details
    2025-03-14 02:11:09,DOWN,N/A,N/A,10.4.40.1(CPE):TIMEOUT|8.8.8.8:TIMEOUT,TIMEOUT
    2025-03-14 02:14:39,UP,12,00:03:30,,

failed_targets entries are joined with "|". serialize_event() is the only
place rows are built, and it replaces the delimiter and line breaks inside
values so a row always has exactly six columns.

Rotation renames the active file to <stem>-YYYYmmdd_HHMMSS<suffix> and
starts a fresh file holding only the header. It runs before the append it
protects, never in the middle of one.
"""

import logging
import os
from datetime import datetime
from typing import Callable, Optional

from .models import OutageEvent, RecordKind

logger = logging.getLogger(os.getenv("LOGGER_NAME", "HOP_MONITOR_DAEMON"))

DELIMITER = ","
DELIMITER_SUBSTITUTE = ";"
LIST_SEPARATOR = "|"
NOT_AVAILABLE = "N/A"
FIELDS = ("timestamp", "status", "latency_ms", "duration", "failed_targets", "error_details")
HEADER = DELIMITER.join(FIELDS) + "\n"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
ARCHIVE_SUFFIX_FORMAT = "%Y%m%d_%H%M%S"


def clean_field(value: str) -> str:
    """Make a value safe for a single CSV column."""
    return (str(value)
            .replace(DELIMITER, DELIMITER_SUBSTITUTE)
            .replace("\r", " ")
            .replace("\n", " "))


def serialize_event(event: OutageEvent) -> str:
    """Render one event as a newline-terminated row."""
    status = event.status.value
    if event.kind is RecordKind.HEARTBEAT:
        status = f"HEARTBEAT:{status}"
    failed = LIST_SEPARATOR.join(
        f"{clean_field(target.display).replace(LIST_SEPARATOR, '/')}:{reason.value}"
        for target, reason in event.failed_targets
    )
    values = (
        event.timestamp.strftime(TIMESTAMP_FORMAT),
        status,
        NOT_AVAILABLE if event.latency_ms is None else str(event.latency_ms),
        event.duration or NOT_AVAILABLE,
        failed,
        event.error_details or "",
    )
    return DELIMITER.join(clean_field(v) for v in values) + "\n"


class EventLog:
    """
    Owns the CSV log file for the lifetime of the process.

    Args:
        path: Active log file.
        max_bytes: Size above which check_rotation() archives the file.
        clock: Source of the archive timestamp (injectable for tests).
    """

    def __init__(self, path: str, max_bytes: int, clock: Optional[Callable[[], datetime]] = None):
        self.path = path
        self.max_bytes = max_bytes
        self._clock = clock or datetime.now

    def _write_header(self, mode: str = "x") -> None:
        with open(self.path, mode, encoding="utf-8") as f:
            f.write(HEADER)
            f.flush()
            os.fsync(f.fileno())

    def ensure_exists(self) -> None:
        """Create the log (and its directory) with a header row if absent."""
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        if not os.path.exists(self.path):
            try:
                self._write_header()
                logger.info(f"Created event log {self.path}")
            except FileExistsError:
                pass

    def append(self, event: OutageEvent) -> None:
        """
        Append one record.

        Raises:
            OSError: the file could not be created or written.
        """
        self.ensure_exists()
        row = serialize_event(event)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(row)
            f.flush()
            os.fsync(f.fileno())

    def _archive_path(self) -> str:
        stem, suffix = os.path.splitext(self.path)
        base = f"{stem}-{self._clock().strftime(ARCHIVE_SUFFIX_FORMAT)}"
        candidate = f"{base}{suffix}"
        n = 1
        while os.path.exists(candidate):
            candidate = f"{base}-{n}{suffix}"
            n += 1
        return candidate

    def check_rotation(self, structured_logger=None) -> Optional[str]:
        """
        Archive the log if it has grown past max_bytes.

        Returns:
            The archive path if a rotation happened, otherwise None. A
            failed rotation is logged and returns None; appends then go on
            to the oversized file so no record is lost.
        """
        try:
            size = os.path.getsize(self.path)
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error(f"Could not stat event log {self.path}: {e}")
            return None
        if size <= self.max_bytes:
            return None

        archive = self._archive_path()
        try:
            os.rename(self.path, archive)
        except OSError as e:
            logger.error(f"Event log rotation failed, continuing with oversized file {self.path}: {e}")
            if structured_logger is not None:
                structured_logger.log_rotation(self.path, None, size, error_message=str(e))
            return None

        try:
            self._write_header()
        except FileExistsError:
            pass
        except OSError as e:
            # The archive holds every record; append() recreates the file later
            logger.error(f"Could not start fresh event log {self.path}: {e}")

        logger.info(f"Event log rotated ({size} bytes): {archive}")
        if structured_logger is not None:
            structured_logger.log_rotation(self.path, archive, size)
        return archive
