"""Protocol definitions for the bridge's collaborators.

The reactor, forwarder and daemon depend on these narrow interfaces instead
of a concrete Matrix client or journal reader. Tests pass fakes that satisfy
the same protocols.

Usage:
    from badnews.protocols import MessagingSink

    def make_reactor(sink: MessagingSink) -> InvitationReactor:
        ...

    # Runtime validation
    if is_messaging_sink(transport):
        await transport.send_text(room_id, "hello")
"""

import asyncio
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from badnews.events import Event
    from badnews.journal import LogRecord


@runtime_checkable
class MessagingSink(Protocol):
    """Outbound side of the chat transport.

    All methods raise TransportError on failure.
    """

    async def send_text(self, room_id: str, text: str) -> None:
        """Send a plain-text message to a room."""
        ...

    async def accept_invitation(self, room_id: str) -> None:
        """Join a room the account was invited to."""
        ...

    async def decline_invitation(self, room_id: str) -> None:
        """Reject an invitation (leave the room)."""
        ...


@runtime_checkable
class MessagingSource(Protocol):
    """Inbound side of the chat transport.

    events: ordered, at-least-once stream of membership and message events
    for every room the account is invited to or joined in.
    """

    events: "asyncio.Queue[Event]"

    async def sync_forever(self) -> None:
        """Run the sync loop, feeding `events` until cancelled."""
        ...


@runtime_checkable
class LogSource(Protocol):
    """Live, appendable system log."""

    def open(self) -> None:
        """Attach to the log. Raises LogSourceError when it cannot."""
        ...

    def seek_to_end(self) -> None:
        """Skip everything written before now."""
        ...

    def next_record(self) -> "LogRecord | None":
        """Return the next buffered record, or None without blocking."""
        ...

    def wait_for_more(self, timeout: float | None = None) -> Any:
        """Block until new records are available or timeout elapses."""
        ...

    def close(self) -> None:
        """Release the log handle."""
        ...


def is_messaging_sink(obj: Any) -> bool:
    """Check that an object provides the three sink coroutines."""
    for name in ("send_text", "accept_invitation", "decline_invitation"):
        fn = getattr(obj, name, None)
        if fn is None or not callable(fn):
            return False
    return True
