"""PID file handling used as an advisory single-instance guard."""

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_PID_FILE = "claude-bot.pid"


@dataclass
class DaemonStatus:
    """State of the daemon as seen through its PID file."""

    is_running: bool
    pid: Optional[int]
    pid_file: Path

    @property
    def is_stale(self) -> bool:
        return self.pid is not None and not self.is_running


class PidManager:
    """Write, read and act on the daemon's PID file."""

    def __init__(self, pid_file: str | Path = DEFAULT_PID_FILE):
        self.pid_file = Path(pid_file).expanduser().resolve()

    def write_pid_file(self, pid: Optional[int] = None) -> int:
        pid = pid or os.getpid()
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.pid_file.write_text(str(pid), encoding="utf-8")
        logger.info("PID file written: %s (pid %d)", self.pid_file, pid)
        return pid

    def read_pid_file(self) -> Optional[int]:
        """PID stored in the file, or None if missing or invalid."""
        try:
            content = self.pid_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None

        try:
            return int(content)
        except ValueError:
            logger.warning("PID file %s contains an invalid PID: %r", self.pid_file, content)
            return None

    def remove_pid_file(self) -> None:
        try:
            self.pid_file.unlink()
            logger.info("PID file removed: %s", self.pid_file)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error("Failed to remove PID file %s: %s", self.pid_file, e)

    @staticmethod
    def is_process_running(pid: int) -> bool:
        """Probe a process with signal 0."""
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but belongs to another user
            return True
        return True

    def get_daemon_status(self) -> DaemonStatus:
        pid = self.read_pid_file()
        return DaemonStatus(
            is_running=pid is not None and self.is_process_running(pid),
            pid=pid,
            pid_file=self.pid_file,
        )

    async def stop_daemon(self, timeout: float = 10.0, interval: float = 0.5) -> bool:
        """Send SIGTERM to the daemon, escalating to SIGKILL after ``timeout``.

        Returns:
            True if the daemon is no longer running.
        """
        pid = self.read_pid_file()
        if pid is None:
            logger.info("No PID file found; daemon is not running")
            return False

        if not self.is_process_running(pid):
            logger.warning("PID file exists but process %d is not running; removing stale file", pid)
            self.remove_pid_file()
            return False

        try:
            logger.info("Sending SIGTERM to daemon (pid %d)", pid)
            os.kill(pid, signal.SIGTERM)

            elapsed = 0.0
            while elapsed < timeout:
                await asyncio.sleep(interval)
                elapsed += interval
                if not self.is_process_running(pid):
                    logger.info("Daemon stopped (pid %d)", pid)
                    self.remove_pid_file()
                    return True

            logger.warning("Daemon did not stop within %.1fs, sending SIGKILL (pid %d)", timeout, pid)
            os.kill(pid, signal.SIGKILL)
            await asyncio.sleep(1.0)

        except ProcessLookupError:
            logger.info("Process %d already exited", pid)
            self.remove_pid_file()
            return True
        except PermissionError:
            logger.error("Not permitted to stop process %d", pid)
            return False

        if self.is_process_running(pid):
            logger.error("Failed to stop daemon (pid %d)", pid)
            return False

        logger.info("Daemon killed (pid %d)", pid)
        self.remove_pid_file()
        return True
