#!/usr/bin/env python3
"""
Journal Bridge Daemon

Forwards systemd journal lines from selected units into a Matrix room.
Designed to run as a systemd service.

Features:
- Live journal tail (no replay of entries older than the daemon)
- Per-unit regex filters
- Autojoin of the configured room with capped exponential backoff
- Declines invitations to any other room
- Session reuse across restarts (no new device per start)
- Single instance enforcement, graceful shutdown, systemd watchdog
- Optional D-Bus status interface

Usage:
    python -m services.journal_bridge                      # Run daemon
    python -m services.journal_bridge --config bridge.yaml # Explicit config
    python -m services.journal_bridge --status             # Check if running
    python -m services.journal_bridge --stop               # Stop running daemon
    python -m services.journal_bridge --dbus               # Enable D-Bus status

Systemd:
    systemctl start badnews
    journalctl -u badnews -f

D-Bus:
    Service: com.badnews.JournalBridge
    Path: /com/badnews/JournalBridge
"""

import argparse
import asyncio
import logging
import time
from concurrent.futures import Future
from pathlib import Path

from badnews.autojoin import InvitationReactor, InviteDecision, JoinAttemptState, JoinRetry
from badnews.config import Config, load_config
from badnews.errors import BadNewsError, TransportError
from badnews.events import Event, MembershipEvent, MessageEvent
from badnews.forwarder import Forwarder, OutboundMessage, UnitFilterTable
from badnews.journal import JournalSource, JournalTailer
from badnews.paths import ensure_state_dir, store_dir
from badnews.protocols import LogSource, is_messaging_sink
from badnews.session import Session, load_or_init_session
from badnews.transport import MatrixTransport
from services.base.daemon import BaseDaemon
from services.base.dbus import DaemonDBusBase

logger = logging.getLogger(__name__)


class JournalBridgeDaemon(DaemonDBusBase, BaseDaemon):
    """Journal -> Matrix bridge daemon."""

    # BaseDaemon configuration
    name = "badnews"
    description = "Journal to Matrix Bridge"

    # D-Bus configuration
    service_name = "com.badnews.JournalBridge"
    object_path = "/com/badnews/JournalBridge"
    interface_name = "com.badnews.JournalBridge"

    def __init__(
        self,
        config: Config,
        verbose: bool = False,
        enable_dbus: bool = False,
        transport: MatrixTransport | None = None,
        log_source: LogSource | None = None,
    ):
        if transport is not None and not is_messaging_sink(transport):
            raise TypeError(f"transport {type(transport).__name__} does not implement the messaging sink")

        BaseDaemon.__init__(self, verbose=verbose, enable_dbus=enable_dbus)
        DaemonDBusBase.__init__(self)

        self.config = config
        self.transport = transport
        self.log_source: LogSource = log_source or JournalSource()
        self.session: Session | None = None

        self.filter_table = UnitFilterTable(config.units)
        self.forwarder = Forwarder(self.filter_table, config.room_id, self.submit_message)
        self.tailer = JournalTailer(self.log_source, self.forwarder.forward, config.wait_timeout)
        self.reactor: InvitationReactor | None = None

        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: dict[str, asyncio.Task] = {}

        self.join_state = "waiting"
        self.messages_sent = 0
        self.send_failures = 0
        self.messages_received = 0

    # ==================== CLI ====================

    @classmethod
    def create_argument_parser(cls) -> argparse.ArgumentParser:
        parser = super().create_argument_parser()
        parser.add_argument(
            "-c",
            "--config",
            type=Path,
            default=None,
            help="Config file (default: $BADNEWS_CONFIG or ~/.config/badnews/config.yaml)",
        )
        return parser

    @classmethod
    def from_args(cls, parsed: argparse.Namespace) -> "JournalBridgeDaemon":
        config = load_config(parsed.config)
        return cls(config, verbose=parsed.verbose, enable_dbus=parsed.enable_dbus)

    # ==================== D-Bus Interface Methods ====================

    async def get_service_stats(self) -> dict:
        """Return bridge-specific statistics."""
        return {
            "room_id": self.config.room_id,
            "join_state": self.join_state,
            "units": self.filter_table.names,
            "records_seen": self.tailer.records_seen,
            "records_failed": self.tailer.records_failed,
            "messages_forwarded": self.forwarder.forwarded,
            "messages_sent": self.messages_sent,
            "send_failures": self.send_failures,
            "messages_received": self.messages_received,
            "invitations_declined": self.reactor.declined if self.reactor else 0,
        }

    async def health_check(self) -> dict:
        """
        Check the bridge can do its job.

        Checks:
        - Logged in
        - Matrix sync loop alive
        - Journal tail thread alive
        """
        self._last_health_check = time.time()

        checks = {
            "running": self.is_running,
            "logged_in": self.session is not None,
            "sync_alive": self._task_alive("sync"),
            "journal_alive": self._task_alive("journal"),
        }
        healthy = all(checks.values())

        if healthy:
            message = "Journal bridge is healthy"
        else:
            failed = [k for k, v in checks.items() if not v]
            message = f"Unhealthy: {', '.join(failed)}"

        return {
            "healthy": healthy,
            "checks": checks,
            "message": message,
            "timestamp": self._last_health_check,
            "join_state": self.join_state,
            "consecutive_failures": self._consecutive_failures,
        }

    def _task_alive(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    # ==================== Lifecycle ====================

    async def startup(self):
        """Log in, open the journal and wire the invitation reactor."""
        await super().startup()
        self._loop = asyncio.get_running_loop()

        ensure_state_dir(self.config.state_dir)
        if self.transport is None:
            self.transport = MatrixTransport(
                self.config.homeserver,
                self.config.username,
                store_path=store_dir(self.config.state_dir),
            )

        self.session = await load_or_init_session(
            self.transport,
            self.config.state_dir,
            self.config.password,
            self.config.device_name,
        )

        self.log_source.open()

        join_retry = JoinRetry(
            self.transport.accept_invitation,
            base_delay=self.config.join_retry.base_delay,
            max_delay=self.config.join_retry.max_delay,
        )
        self.reactor = InvitationReactor(
            self.transport,
            self.config.room_id,
            join_retry,
            on_join_finished=self._on_join_finished,
        )

        self.is_running = True
        self.start_time = time.time()
        logger.info(
            f"Forwarding {len(self.filter_table)} unit(s) to {self.config.room_id}: "
            f"{', '.join(self.filter_table.names)}"
        )

    async def run_daemon(self):
        """
        Run the Matrix sync, the event consumer and the journal tail.

        Returns on shutdown request. A loop ending on its own is fatal: its
        exception is re-raised, or BadNewsError if it returned quietly, so
        the process exits non-zero.
        """
        self._tasks = {
            "sync": asyncio.create_task(self.transport.sync_forever(), name="matrix-sync"),
            "events": asyncio.create_task(self._consume_events(), name="matrix-events"),
            "journal": asyncio.create_task(asyncio.to_thread(self.tailer.run), name="journal-tail"),
        }
        shutdown_waiter = asyncio.create_task(self._shutdown_event.wait(), name="shutdown")

        try:
            done, _ = await asyncio.wait(
                [shutdown_waiter, *self._tasks.values()],
                return_when=asyncio.FIRST_COMPLETED,
            )
            for name, task in self._tasks.items():
                if task in done:
                    error = task.exception()
                    if error is not None:
                        raise error
                    if not self._shutdown_event.is_set():
                        raise BadNewsError(f"{name} loop exited unexpectedly")
        finally:
            shutdown_waiter.cancel()
            await self._stop_loops()

    async def _stop_loops(self):
        self.is_running = False
        self.tailer.stop()

        if self.reactor:
            await self.reactor.close()

        for name in ("events", "sync"):
            task = self._tasks.get(name)
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.warning(f"{name} loop raised during shutdown: {e}")

        # The tail thread notices stop() after its current wait
        journal_task = self._tasks.get("journal")
        if journal_task and not journal_task.done():
            try:
                await journal_task
            except Exception as e:
                logger.warning(f"Journal watcher raised during shutdown: {e}")

    async def shutdown(self):
        """Close the client and the journal."""
        if self.transport is not None:
            await self.transport.close()
        self.log_source.close()
        await super().shutdown()

    # ==================== Events ====================

    async def _consume_events(self):
        while True:
            event = await self.transport.events.get()
            await self.dispatch(event)

    async def dispatch(self, event: Event):
        """Route one transport event to its consumer."""
        if isinstance(event, MembershipEvent):
            decision = await self.reactor.handle(event)
            if decision is not InviteDecision.IGNORED:
                self.emit_event("invitation", f"{event.room_id}:{decision.value}")
        elif isinstance(event, MessageEvent):
            self.on_room_message(event)
        else:
            logger.warning(f"Ignoring unknown event type {type(event).__name__}")

    def on_room_message(self, event: MessageEvent):
        """Log messages posted by others in rooms the bot has joined."""
        if event.sender == self.transport.user_id:
            return
        self.messages_received += 1
        logger.info(f"[{event.room_id}] {event.display_sender}: {event.body}")

    def _on_join_finished(self, state: JoinAttemptState):
        self.join_state = state.outcome.value
        self.emit_status_changed(f"join {self.join_state}: {state.room_id}")

    # ==================== Outbound ====================

    def submit_message(self, message: OutboundMessage) -> Future:
        """Schedule a send on the event loop; safe to call from the tail thread."""
        future = asyncio.run_coroutine_threadsafe(self.send_message(message), self._loop)
        future.add_done_callback(_log_send_crash)
        return future

    async def send_message(self, message: OutboundMessage):
        """Send one message; failures are logged and the message dropped."""
        try:
            await self.transport.send_text(message.room_id, message.text)
        except TransportError as e:
            self.send_failures += 1
            self.record_failed_operation()
            logger.error(f"Failed to send message to {message.room_id}: {e}")
            return
        self.messages_sent += 1
        self.record_successful_operation()


def _log_send_crash(future: Future):
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.error(f"Unexpected error while sending message: {error!r}")


def main():
    """Console script entry point."""
    JournalBridgeDaemon.main()


if __name__ == "__main__":
    main()
