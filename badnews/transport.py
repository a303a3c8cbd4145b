"""
Matrix transport built on matrix-nio.

MatrixTransport is both sides of the chat connection used by the bridge:
- sink: send_text / accept_invitation / decline_invitation
- source: sync_forever() feeding `events`, a queue of MembershipEvent and
  MessageEvent

nio reports request failures as error responses instead of exceptions; every
sink method turns those (and connection failures) into TransportError so the
callers only deal with one exception type.

Usage:
    transport = MatrixTransport(config.homeserver, config.username, store_path)
    await load_or_init_session(transport, config.state_dir, config.password, "bot")
    sync_task = asyncio.create_task(transport.sync_forever())
    event = await transport.events.get()
"""

import asyncio
import logging
from pathlib import Path
from typing import Any

from aiohttp import ClientError
from nio import (
    AsyncClient,
    AsyncClientConfig,
    ErrorResponse,
    InviteMemberEvent,
    LocalProtocolError,
    LoginResponse,
    MatrixInvitedRoom,
    RoomMemberEvent,
    RoomMessageText,
)

from badnews.errors import TransportError
from badnews.events import Event, MembershipEvent, MessageEvent, room_state_for
from badnews.session import Session

logger = logging.getLogger(__name__)

# Long-poll timeout for /sync, in milliseconds
SYNC_TIMEOUT_MS = 30000

# Network-level failures surfaced by nio's HTTP layer
_REQUEST_ERRORS = (ClientError, LocalProtocolError, asyncio.TimeoutError, OSError)


class MatrixTransport:
    """matrix-nio client wrapper implementing the messaging sink and source."""

    def __init__(
        self,
        homeserver: str,
        username: str,
        store_path: Path | None = None,
        client: AsyncClient | None = None,
    ):
        """
        Create the transport. The client is not logged in yet.

        Args:
            homeserver: Homeserver URL
            username: Account localpart or full user id
            store_path: Directory for the nio client store
            client: Pre-built client (tests)
        """
        if client is None:
            client = AsyncClient(
                homeserver,
                username,
                store_path=str(store_path) if store_path else "",
                config=AsyncClientConfig(store_sync_tokens=True),
            )
        self._client = client
        self.events: asyncio.Queue[Event] = asyncio.Queue()

        self._client.add_event_callback(self._on_member, InviteMemberEvent)
        self._client.add_event_callback(self._on_member, RoomMemberEvent)
        self._client.add_event_callback(self._on_message, RoomMessageText)

    @property
    def user_id(self) -> str:
        """The logged-in account id (empty before login)."""
        return self._client.user_id or ""

    # ==================== Authentication ====================

    async def login(self, password: str, device_name: str) -> Session:
        """Log in with a password and return the new session.

        Raises:
            TransportError: if the homeserver rejects the login
        """
        try:
            response = await self._client.login(password=password, device_name=device_name)
        except _REQUEST_ERRORS as e:
            raise TransportError("login", str(e)) from e

        if not isinstance(response, LoginResponse):
            raise TransportError("login", _error_message(response), status_code=_error_code(response))

        return Session(
            access_token=response.access_token,
            user_id=response.user_id,
            device_id=response.device_id,
        )

    def restore_login(self, session: Session) -> None:
        """Reuse a stored session without contacting the homeserver."""
        self._client.restore_login(
            user_id=session.user_id,
            device_id=session.device_id,
            access_token=session.access_token,
        )

    # ==================== Sink ====================

    async def send_text(self, room_id: str, text: str) -> None:
        """Send a plain-text m.room.message."""
        content = {"msgtype": "m.text", "body": text}
        await self._request(
            "send",
            room_id,
            self._client.room_send(
                room_id,
                message_type="m.room.message",
                content=content,
                ignore_unverified_devices=True,
            ),
        )

    async def accept_invitation(self, room_id: str) -> None:
        """Join a room we were invited to."""
        await self._request("join", room_id, self._client.join(room_id))

    async def decline_invitation(self, room_id: str) -> None:
        """Reject an invitation.

        Leaving a room we were invited to is how Matrix rejects an invite.
        """
        await self._request("leave", room_id, self._client.room_leave(room_id))

    async def _request(self, operation: str, room_id: str, coro: Any) -> Any:
        try:
            response = await coro
        except _REQUEST_ERRORS as e:
            raise TransportError(operation, str(e) or type(e).__name__, room_id=room_id) from e

        if isinstance(response, ErrorResponse):
            raise TransportError(
                operation,
                _error_message(response),
                room_id=room_id,
                status_code=_error_code(response),
            )
        return response

    # ==================== Source ====================

    async def sync_forever(self) -> None:
        """Long-poll the homeserver; callbacks push events onto `events`."""
        await self._client.sync_forever(timeout=SYNC_TIMEOUT_MS, full_state=True)

    async def close(self) -> None:
        await self._client.close()

    async def _on_member(self, room: Any, event: Any) -> None:
        self.events.put_nowait(member_to_event(self.user_id, room, event))

    async def _on_message(self, room: Any, event: Any) -> None:
        self.events.put_nowait(message_to_event(room, event))


# ==================== Conversion ====================


def member_to_event(user_id: str, room: Any, event: Any) -> MembershipEvent:
    """Convert an m.room.member event.

    The room type decides the state: nio hands invite-state events over with
    a MatrixInvitedRoom, and timeline events of joined rooms with a plain
    MatrixRoom. A joined room never counts as INVITED, even when a replayed
    event carries membership "invite".
    """
    return MembershipEvent(
        subject_user_id=user_id,
        room_id=room.room_id,
        room_state=room_state_for(getattr(event, "membership", None), isinstance(room, MatrixInvitedRoom)),
        target_state_key=event.state_key,
    )


def message_to_event(room: Any, event: Any) -> MessageEvent:
    """Convert an m.text room message."""
    sender_name = None
    user_name = getattr(room, "user_name", None)
    if callable(user_name):
        sender_name = user_name(event.sender)
    return MessageEvent(
        room_id=room.room_id,
        sender=event.sender,
        body=event.body,
        sender_name=sender_name,
    )


def _error_message(response: Any) -> str:
    return getattr(response, "message", None) or type(response).__name__


def _error_code(response: Any) -> str | None:
    return getattr(response, "status_code", None)
