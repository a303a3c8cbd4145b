"""
Bridge services

Daemon implementations, each runnable as a systemd service.

Services:
- journal_bridge: forwards systemd journal lines into a Matrix room
"""

__version__ = "0.2.0"
