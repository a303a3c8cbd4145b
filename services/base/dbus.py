#!/usr/bin/env python3
# flake8: noqa: F821
# Note: F821 disabled because D-Bus type annotations like "s", "d", "b"
# are valid dbus-next signatures but flake8 misinterprets them as undefined names.
"""
D-Bus status interface for bridge daemons

Exposes a read-mostly session-bus interface so operators (or a desktop
widget) can see whether the bridge is alive, what it has forwarded and
whether it managed to join its room:

    busctl --user call com.badnews.JournalBridge /com/badnews/JournalBridge \
        com.badnews.JournalBridge HealthCheck

Usage:
    from services.base import DaemonDBusBase

    class MyDaemon(DaemonDBusBase, BaseDaemon):
        service_name = "com.badnews.MyService"
        object_path = "/com/badnews/MyService"
        interface_name = "com.badnews.MyService"

        async def get_service_stats(self) -> dict:
            return {"my_stat": 42}
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

from dbus_next.aio import MessageBus
from dbus_next.constants import PropertyAccess
from dbus_next.service import ServiceInterface, dbus_property, method
from dbus_next.service import signal as dbus_signal

logger = logging.getLogger(__name__)


class DaemonDBusBase(ABC):
    """
    Mixin for daemons with a D-Bus status interface.

    Subclasses must define service_name, object_path and interface_name and
    implement get_service_stats(). health_check() defaults to "running".
    """

    service_name: str = ""
    object_path: str = ""
    interface_name: str = ""

    def __init__(self):
        self.is_running = False
        self.start_time: float | None = None

        self._bus: Optional[MessageBus] = None
        self._dbus_interface: Optional[ServiceInterface] = None

        self._last_health_check: float = 0
        self._consecutive_failures: int = 0
        self._last_successful_operation: float = 0

    @abstractmethod
    async def get_service_stats(self) -> dict:
        """Return service-specific statistics."""

    async def get_service_status(self) -> dict:
        """Return detailed service status."""
        return {**self.get_base_stats(), **(await self.get_service_stats())}

    async def health_check(self) -> dict:
        """
        Perform a health check on the service.

        Returns:
            dict with:
                - healthy: bool - overall health status
                - checks: dict - individual check results
                - message: str - human-readable status
                - timestamp: float - when check was performed
        """
        self._last_health_check = time.time()
        checks = {"running": self.is_running}
        healthy = all(checks.values())
        return {
            "healthy": healthy,
            "checks": checks,
            "message": "Service is healthy" if healthy else "Service is unhealthy",
            "timestamp": self._last_health_check,
            "consecutive_failures": self._consecutive_failures,
        }

    def record_successful_operation(self):
        """Record that an operation completed successfully (for health tracking)."""
        self._last_successful_operation = time.time()
        self._consecutive_failures = 0

    def record_failed_operation(self):
        """Record that an operation failed (for health tracking)."""
        self._consecutive_failures += 1

    def get_base_stats(self) -> dict:
        """Get common daemon statistics."""
        return {
            "running": self.is_running,
            "uptime": time.time() - self.start_time if self.start_time else 0,
            "service_name": self.service_name,
            "consecutive_failures": self._consecutive_failures,
        }

    async def start_dbus(self) -> bool:
        """Connect to the session bus and export the status interface."""
        if not self.service_name:
            logger.error("service_name not set on daemon class")
            return False

        try:
            self._bus = await MessageBus().connect()
            self._dbus_interface = create_daemon_interface(self)
            self._bus.export(self.object_path, self._dbus_interface)
            await self._bus.request_name(self.service_name)
        except Exception as e:
            # The bridge works without D-Bus; keep running
            logger.error(f"Failed to start D-Bus: {e}")
            if self._bus:
                self._bus.disconnect()
            self._bus = None
            self._dbus_interface = None
            return False

        logger.info(f"D-Bus service started: {self.service_name}")
        return True

    async def stop_dbus(self):
        """Stop the D-Bus service."""
        if self._bus:
            self._bus.disconnect()
            self._bus = None
            self._dbus_interface = None
            logger.info(f"D-Bus service stopped: {self.service_name}")

    def emit_status_changed(self, status: str):
        """Emit StatusChanged if the interface is exported."""
        if self._dbus_interface is not None:
            self._dbus_interface.StatusChanged(status)

    def emit_event(self, event_type: str, data: str):
        """Emit Event if the interface is exported."""
        if self._dbus_interface is not None:
            self._dbus_interface.Event(event_type, data)


# =============================================================================
# D-BUS INTERFACE FACTORY
# =============================================================================


def create_daemon_interface(daemon: DaemonDBusBase) -> ServiceInterface:
    """
    Create the D-Bus interface object for a daemon.

    The class is built per daemon so the interface carries the daemon's
    interface_name.
    """

    class DaemonStatusInterface(ServiceInterface):
        def __init__(self, daemon_instance: DaemonDBusBase):
            super().__init__(daemon_instance.interface_name)
            self._daemon = daemon_instance

        @dbus_property(access=PropertyAccess.READ)
        def Running(self) -> "b":
            return self._daemon.is_running

        @dbus_property(access=PropertyAccess.READ)
        def Uptime(self) -> "d":
            if self._daemon.start_time:
                return time.time() - self._daemon.start_time
            return 0.0

        @dbus_property(access=PropertyAccess.READ)
        def Stats(self) -> "s":
            """Synchronous base stats; service stats via GetStats."""
            return json.dumps(self._daemon.get_base_stats())

        @method()
        def Ping(self) -> "s":
            return "pong"

        @method()
        async def GetStatus(self) -> "s":
            try:
                return json.dumps(await self._daemon.get_service_status())
            except Exception as e:
                logger.error(f"GetStatus error on {self._daemon.service_name}: {e}")
                return json.dumps({"running": self._daemon.is_running, "error": str(e)})

        @method()
        async def GetStats(self) -> "s":
            try:
                base = self._daemon.get_base_stats()
                service = await self._daemon.get_service_stats()
                return json.dumps({**base, **service})
            except Exception as e:
                logger.error(f"GetStats error: {e}")
                return json.dumps({"error": str(e)})

        @method()
        async def HealthCheck(self) -> "s":
            try:
                return json.dumps(await self._daemon.health_check())
            except Exception as e:
                logger.error(f"HealthCheck error: {e}")
                return json.dumps(
                    {
                        "healthy": False,
                        "checks": {"exception": False},
                        "message": f"Health check failed: {e}",
                        "timestamp": time.time(),
                    }
                )

        @method()
        def Shutdown(self) -> "s":
            self._daemon.request_shutdown()
            return json.dumps({"success": True, "message": "Shutdown initiated"})

        @dbus_signal()
        def StatusChanged(self, status: "s") -> "s":
            return status

        @dbus_signal()
        def Event(self, event_type: "s", data: "s") -> "ss":
            return [event_type, data]

    return DaemonStatusInterface(daemon)
