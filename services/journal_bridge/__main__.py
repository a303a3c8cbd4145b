#!/usr/bin/env python3
"""Entry point for running the journal bridge as a module."""

from services.journal_bridge.daemon import JournalBridgeDaemon

if __name__ == "__main__":
    JournalBridgeDaemon.main()
