"""
Crash-consistent persistence of the monitor's {status, since} pair.

File format (text, UTF-8):

    DOWN
    2025-03-14T02:11:09+01:00
    pid=4211
    written=2025-03-14T02:11:09+01:00

Only the first two lines are read back; anything after them is free-form
metadata. The file is replaced atomically (temp file in the same directory,
fsync, os.replace, then fsync of the directory), so a crash mid-write
leaves either the old or the new content, never a torn file.
"""

import logging
import os
import tempfile
from datetime import datetime
from typing import Callable, Optional

from .models import MonitorState, Status

logger = logging.getLogger(os.getenv("LOGGER_NAME", "HOP_MONITOR_DAEMON"))


class StateWriteError(Exception):
    """Raised when the state file could not be replaced."""


def parse_timestamp(raw: str) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as local time."""
    try:
        value = datetime.fromisoformat(raw.strip())
    except (ValueError, AttributeError):
        return None
    if value.tzinfo is None:
        value = value.astimezone()
    return value


def fsync_directory(directory: str) -> None:
    """Flush a directory entry so a completed rename survives power loss."""
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class StateStore:
    """Loads and atomically saves the persisted MonitorState."""

    def __init__(self, path: str, clock: Optional[Callable[[], datetime]] = None):
        self.path = path
        self._clock = clock or (lambda: datetime.now().astimezone().replace(microsecond=0))

    def _default(self, why: str) -> MonitorState:
        state = MonitorState.default(self._clock())
        logger.warning(f"State file {self.path} {why}; starting from {state.status.value} since "
                       f"{state.since.isoformat()}")
        return state

    def load(self) -> MonitorState:
        """
        Read the persisted state.

        Never raises: a missing, unreadable or malformed file yields the
        default {UP, now}.
        """
        if not os.path.exists(self.path):
            state = MonitorState.default(self._clock())
            logger.info(f"No state file at {self.path}; assuming {state.status.value} since "
                        f"{state.since.isoformat()}")
            return state
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                lines = f.read().splitlines()
        except (OSError, UnicodeDecodeError) as e:
            return self._default(f"is unreadable ({e})")

        if len(lines) < 2:
            return self._default("is truncated")
        try:
            status = Status(lines[0].strip())
        except ValueError:
            return self._default(f"has unknown status token '{lines[0].strip()}'")
        since = parse_timestamp(lines[1])
        if since is None:
            return self._default(f"has unparsable timestamp '{lines[1].strip()}'")

        logger.info(f"Loaded state {status.value} since {since.isoformat()} from {self.path}")
        return MonitorState(status=status, since=since)

    def save(self, state: MonitorState) -> None:
        """
        Atomically replace the state file.

        Raises:
            StateWriteError: the file could not be written or replaced.
        """
        since = state.since.isoformat() if state.since else ""
        body = (f"{state.status.value}\n{since}\n"
                f"pid={os.getpid()}\n"
                f"written={datetime.now().astimezone().replace(microsecond=0).isoformat()}\n")

        directory = os.path.dirname(os.path.abspath(self.path))
        tmp_path = None
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".state-", suffix=".tmp", dir=directory)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(body)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
            tmp_path = None
            fsync_directory(directory)
        except OSError as e:
            raise StateWriteError(f"Could not write state file {self.path}: {e}") from e
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
        logger.debug(f"Saved state {state.status.value} since {since} to {self.path}")
