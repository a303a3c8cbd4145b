"""Journal to Matrix bridge service."""

from services.journal_bridge.daemon import JournalBridgeDaemon

__all__ = ["JournalBridgeDaemon"]
