"""
Base infrastructure for bridge daemons.

- BaseDaemon: Base class with CLI, signals, systemd notify and lifecycle
- SingleInstance: Lock file management for single-instance enforcement
- DaemonDBusBase: D-Bus status interface mixin
"""

from services.base.daemon import BaseDaemon, SingleInstance, get_watchdog_interval, sd_notify
from services.base.dbus import DaemonDBusBase, create_daemon_interface

__all__ = [
    # daemon.py
    "BaseDaemon",
    "SingleInstance",
    "sd_notify",
    "get_watchdog_interval",
    # dbus.py
    "DaemonDBusBase",
    "create_daemon_interface",
]
