#!/usr/bin/env python3
"""
Base Daemon Infrastructure

Lifecycle plumbing shared by the bridge daemons:
- SingleInstance: lock file so only one bridge runs per account
- BaseDaemon: CLI, signals, startup/shutdown hooks, journald-friendly logging
- Systemd notify/watchdog integration driven by the daemon's health_check()

Usage:
    from services.base import BaseDaemon

    class MyDaemon(BaseDaemon):
        name = "my-service"
        description = "My service daemon"

        async def run_daemon(self):
            await self._shutdown_event.wait()

    if __name__ == "__main__":
        MyDaemon.main()

When mixing in DaemonDBusBase, list it BEFORE BaseDaemon so its
start_dbus/stop_dbus are found by startup()/shutdown():

    class MyDaemon(DaemonDBusBase, BaseDaemon): ...
"""

import argparse
import asyncio
import fcntl
import logging
import os
import signal
import socket
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import IO, Optional

from badnews.paths import LOCK_DIR

logger = logging.getLogger(__name__)


# =============================================================================
# SYSTEMD NOTIFY SUPPORT
# =============================================================================


def sd_notify(state: str) -> bool:
    """
    Send a notification to systemd (Type=notify services).

    Args:
        state: Notification string (e.g., "READY=1", "WATCHDOG=1", "STATUS=...")

    Returns:
        True if notification was sent, False if NOTIFY_SOCKET not set
    """
    notify_socket = os.environ.get("NOTIFY_SOCKET")
    if not notify_socket:
        return False

    # Abstract namespace sockets are given with a leading @
    if notify_socket.startswith("@"):
        notify_socket = "\0" + notify_socket[1:]

    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM) as sock:
            sock.connect(notify_socket)
            sock.sendall(state.encode())
        return True
    except OSError as e:
        logger.warning(f"Failed to send sd_notify({state}): {e}")
        return False


def get_watchdog_interval() -> float:
    """
    Interval for watchdog pings: half of WatchdogSec, or 0 when disabled.
    """
    watchdog_usec = os.environ.get("WATCHDOG_USEC")
    if not watchdog_usec:
        return 0

    try:
        return int(watchdog_usec) / 1_000_000 / 2
    except ValueError:
        return 0


class SingleInstance:
    """
    Ensures only one instance of a daemon runs at a time.

    Uses fcntl.flock on a lock file; the PID file next to it serves
    --status and --stop.

    Args:
        name: Daemon name used for lock/pid file paths
        lock_dir: Directory for lock files (default: $XDG_RUNTIME_DIR or /tmp)
    """

    def __init__(self, name: str, lock_dir: Path | str = LOCK_DIR):
        self.name = name
        self.lock_dir = Path(lock_dir)
        self._lock_file: Optional[IO] = None
        self._acquired = False

    @property
    def lock_path(self) -> Path:
        return self.lock_dir / f"{self.name}-daemon.lock"

    @property
    def pid_path(self) -> Path:
        return self.lock_dir / f"{self.name}-daemon.pid"

    def acquire(self) -> bool:
        """
        Try to acquire the lock.

        Returns:
            True if lock acquired, False if another instance is running.
        """
        try:
            self._lock_file = open(self.lock_path, "w")
            fcntl.flock(self._lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            if self._lock_file:
                self._lock_file.close()
                self._lock_file = None
            return False

        self.pid_path.write_text(str(os.getpid()))
        self._acquired = True
        return True

    def release(self):
        """Release the lock and remove the PID file."""
        if self._lock_file:
            try:
                fcntl.flock(self._lock_file.fileno(), fcntl.LOCK_UN)
            finally:
                self._lock_file.close()
                self._lock_file = None
        if self._acquired:
            self.pid_path.unlink(missing_ok=True)
        self._acquired = False

    def get_running_pid(self) -> Optional[int]:
        """PID of the running instance, or None."""
        try:
            pid = int(self.pid_path.read_text().strip())
            os.kill(pid, 0)
            return pid
        except (ValueError, OSError):
            return None

    @property
    def is_acquired(self) -> bool:
        return self._acquired


class BaseDaemon(ABC):
    """
    Base class for bridge daemons.

    Provides:
    - Single instance enforcement via lock files
    - Standard CLI arguments (--status, --stop, --verbose, --dbus)
    - SIGTERM/SIGINT -> graceful shutdown via `_shutdown_event`
    - Logging configuration for systemd/journald
    - READY/STATUS/STOPPING notifications and watchdog pings gated on
      health_check()

    Subclasses must:
    - Set `name` and `description` class attributes
    - Implement `run_daemon()`
    """

    name: str = ""
    description: str = ""

    def __init__(self, verbose: bool = False, enable_dbus: bool = False):
        if not self.name:
            raise ValueError("Daemon 'name' must be set")

        self.verbose = verbose
        self.enable_dbus = enable_dbus
        self._shutdown_event = asyncio.Event()
        self._single_instance = SingleInstance(self.name)
        self._watchdog_task: Optional[asyncio.Task] = None
        self._watchdog_healthy = True

    @property
    def lock_file(self) -> Path:
        return self._single_instance.lock_path

    @property
    def pid_file(self) -> Path:
        return self._single_instance.pid_path

    @abstractmethod
    async def run_daemon(self):
        """
        Main daemon logic.

        Must return once `self._shutdown_event` is set.
        """

    async def startup(self):
        """Called before run_daemon(). Starts D-Bus when enabled."""
        if self.enable_dbus and hasattr(self, "start_dbus"):
            await self.start_dbus()

    async def shutdown(self):
        """Called after run_daemon() exits, even on error. Stops D-Bus."""
        if self.enable_dbus and hasattr(self, "stop_dbus"):
            await self.stop_dbus()

    async def health_check(self) -> dict:
        """Report health; the watchdog only pings while this says healthy."""
        return {"healthy": True, "message": "ok"}

    def request_shutdown(self):
        """Request graceful shutdown of the daemon."""
        logger.info(f"Shutdown requested for {self.name}")
        self._shutdown_event.set()

    def _setup_signal_handlers(self):
        loop = asyncio.get_running_loop()

        def signal_handler(sig):
            logger.info(f"Received signal {sig.name}")
            self.request_shutdown()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler, sig)

    async def _watchdog_loop(self):
        """
        Ping the systemd watchdog while health_check() passes.

        If the daemon turns unhealthy the pings stop and systemd restarts it
        once WatchdogSec expires.
        """
        interval = get_watchdog_interval()
        if interval <= 0:
            logger.debug("Watchdog not enabled (WATCHDOG_USEC not set)")
            return

        logger.info(f"Watchdog enabled, pinging every {interval:.1f}s")

        while not self._shutdown_event.is_set():
            healthy = await self._verify_health()
            if healthy:
                sd_notify("WATCHDOG=1")
                if not self._watchdog_healthy:
                    logger.info("Watchdog: Service recovered, resuming pings")
            elif self._watchdog_healthy:
                logger.warning("Watchdog: Health check failed, stopping pings")
            self._watchdog_healthy = healthy

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    async def _verify_health(self) -> bool:
        try:
            result = await self.health_check()
        except Exception as e:
            logger.warning(f"Watchdog: health_check() raised exception: {e}")
            return False

        if not result.get("healthy", True):
            logger.warning(f"Watchdog: Health check failed: {result.get('message', 'unknown')}")
            return False
        return True

    async def _run(self):
        """Internal run method that handles lifecycle."""
        self._setup_signal_handlers()

        try:
            await self.startup()

            sd_notify("READY=1")
            sd_notify(f"STATUS=Running: {self.description or self.name}")
            logger.info(f"Daemon ready: {self.name}")

            self._watchdog_task = asyncio.create_task(self._watchdog_loop())

            await self.run_daemon()
        except asyncio.CancelledError:
            logger.info("Daemon cancelled")
        except Exception as e:
            logger.exception(f"Daemon error: {e}")
            sd_notify(f"STATUS=Error: {e}")
            raise
        finally:
            if self._watchdog_task and not self._watchdog_task.done():
                self._watchdog_task.cancel()
                try:
                    await self._watchdog_task
                except asyncio.CancelledError:
                    pass

            sd_notify("STOPPING=1")
            await self.shutdown()

    def run(self) -> int:
        """Run the daemon (blocking). Returns the process exit code."""
        if not self._single_instance.acquire():
            pid = self._single_instance.get_running_pid()
            print(f"Another instance is already running (PID: {pid})")
            return 1

        try:
            asyncio.run(self._run())
        except Exception:
            # _run() already logged it with the traceback
            return 1
        finally:
            self._single_instance.release()
        return 0

    @classmethod
    def configure_logging(cls, verbose: bool = False):
        """
        Configure logging for systemd/journald.

        Under systemd stderr goes to the journal, which adds its own
        timestamp, so the format leaves it out.
        """
        level = logging.DEBUG if verbose else logging.INFO
        logging.basicConfig(
            level=level,
            format="%(name)s - %(levelname)s - %(message)s",
            handlers=[logging.StreamHandler(sys.stderr)],
        )
        if not verbose:
            # nio logs every sync response at INFO
            logging.getLogger("nio").setLevel(logging.WARNING)

    @classmethod
    def create_argument_parser(cls) -> argparse.ArgumentParser:
        """
        Create the argument parser with standard daemon arguments.

        Subclasses can override to add custom arguments.
        """
        parser = argparse.ArgumentParser(
            prog=cls.name,
            description=cls.description or f"{cls.name} daemon",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument("--status", action="store_true", help="Check if daemon is running")
        parser.add_argument("--stop", action="store_true", help="Stop running daemon")
        parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose output")
        parser.add_argument(
            "--dbus",
            action="store_true",
            dest="enable_dbus",
            default=False,
            help="Enable D-Bus status interface",
        )
        parser.add_argument(
            "--no-dbus",
            action="store_false",
            dest="enable_dbus",
            help="Disable D-Bus status interface (default)",
        )
        return parser

    @classmethod
    def from_args(cls, parsed: argparse.Namespace) -> "BaseDaemon":
        """Build the daemon from parsed CLI arguments."""
        return cls(verbose=parsed.verbose, enable_dbus=parsed.enable_dbus)

    @classmethod
    def handle_status(cls) -> int:
        """Handle --status command. Returns exit code."""
        pid = SingleInstance(cls.name).get_running_pid()
        if pid:
            print(f"{cls.name} is running (PID: {pid})")
            return 0
        print(f"{cls.name} is not running")
        return 1

    @classmethod
    def handle_stop(cls) -> int:
        """Handle --stop command. Returns exit code."""
        pid = SingleInstance(cls.name).get_running_pid()
        if not pid:
            print(f"{cls.name} is not running")
            return 1
        try:
            os.kill(pid, signal.SIGTERM)
        except OSError as e:
            print(f"Failed to stop {cls.name}: {e}")
            return 1
        print(f"Sent SIGTERM to {cls.name} (PID: {pid})")
        return 0

    @classmethod
    def main(cls, args: Optional[list] = None):
        """
        Main entry point for the daemon.

        Args:
            args: Command line arguments (defaults to sys.argv)
        """
        parser = cls.create_argument_parser()
        parsed = parser.parse_args(args)

        if parsed.status:
            sys.exit(cls.handle_status())

        if parsed.stop:
            sys.exit(cls.handle_stop())

        cls.configure_logging(verbose=parsed.verbose)

        daemon = cls.from_args(parsed)
        sys.exit(daemon.run())
