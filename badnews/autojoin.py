"""
Invitation handling for the bot account.

The bot only lives in one room. Invitations to any other room are declined
right away; the invitation to the authorized room is accepted with capped
exponential backoff, because Synapse can deliver an invite before it lets
the invited user join (https://github.com/matrix-org/synapse/issues/4345).

Join retry:
    attempt -> ok                         -> SUCCEEDED
            -> error, delay > max_delay   -> GAVE_UP
            -> error                      -> wait delay, delay *= 2, attempt
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from badnews.config import DEFAULT_BASE_DELAY, DEFAULT_MAX_DELAY
from badnews.errors import TransportError
from badnews.events import MembershipEvent, RoomState
from badnews.protocols import MessagingSink

logger = logging.getLogger(__name__)


class JoinOutcome(Enum):
    """Terminal state of a join retry loop."""

    SUCCEEDED = "succeeded"
    GAVE_UP = "gave_up"


class InviteDecision(Enum):
    """What the reactor did with a membership event."""

    IGNORED = "ignored"
    DECLINED = "declined"
    ACCEPTING = "accepting"


@dataclass
class JoinAttemptState:
    """Progress of one join retry loop."""

    room_id: str
    delay: float
    attempt_count: int = 0
    last_error: Exception | None = None
    outcome: JoinOutcome | None = None


class JoinRetry:
    """Join a room, doubling the wait after every failure until max_delay."""

    def __init__(
        self,
        accept: Callable[[str], Awaitable[None]],
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.accept = accept
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    async def run(self, room_id: str) -> JoinAttemptState:
        state = JoinAttemptState(room_id=room_id, delay=self.base_delay)

        while True:
            state.attempt_count += 1
            try:
                await self.accept(room_id)
            except TransportError as e:
                state.last_error = e
            else:
                state.outcome = JoinOutcome.SUCCEEDED
                logger.info(f"Successfully joined room {room_id}")
                return state

            if state.delay > self.max_delay:
                state.outcome = JoinOutcome.GAVE_UP
                logger.error(f"Can't join room {room_id} after {state.attempt_count} attempts ({state.last_error})")
                return state

            logger.warning(f"Failed to join room {room_id} ({state.last_error}), retrying in {state.delay:g}s")
            await self._sleep(state.delay)
            state.delay *= 2


class InvitationReactor:
    """
    Decide what to do with the bot's own invitations.

    Join retries run on their own tasks so a long backoff never holds up
    the event stream. At most one retry task runs per room.

    Usage:
        reactor = InvitationReactor(transport, config.room_id, JoinRetry(transport.accept_invitation))
        decision = await reactor.handle(event)
        ...
        await reactor.close()
    """

    def __init__(
        self,
        sink: MessagingSink,
        authorized_room: str,
        join_retry: JoinRetry,
        on_join_finished: Callable[[JoinAttemptState], None] | None = None,
    ):
        self.sink = sink
        self.authorized_room = authorized_room
        self.join_retry = join_retry
        self.on_join_finished = on_join_finished
        self._join_tasks: dict[str, asyncio.Task] = {}
        self.declined = 0

    @property
    def join_tasks(self) -> dict[str, asyncio.Task]:
        """In-flight join retry tasks by room id."""
        return dict(self._join_tasks)

    async def handle(self, event: MembershipEvent) -> InviteDecision:
        if not event.is_self or event.room_state is not RoomState.INVITED:
            return InviteDecision.IGNORED

        room_id = event.room_id
        logger.info(f"Received invitation for room {room_id}")

        if room_id != self.authorized_room:
            logger.info(f"Bot isn't authorized to join room {room_id}, declining invitation")
            await self._decline(room_id)
            return InviteDecision.DECLINED

        if room_id in self._join_tasks:
            logger.info(f"Already joining room {room_id}, ignoring repeated invitation")
            return InviteDecision.ACCEPTING

        logger.info(f"Autojoining room {room_id}")
        task = asyncio.create_task(self.join_retry.run(room_id), name=f"join:{room_id}")
        self._join_tasks[room_id] = task
        task.add_done_callback(lambda t: self._join_done(room_id, t))
        return InviteDecision.ACCEPTING

    async def _decline(self, room_id: str) -> None:
        try:
            await self.sink.decline_invitation(room_id)
            self.declined += 1
        except TransportError as e:
            logger.error(f"Failed to decline invitation to {room_id}: {e}")

    def _join_done(self, room_id: str, task: asyncio.Task) -> None:
        self._join_tasks.pop(room_id, None)
        if task.cancelled():
            logger.info(f"Join of room {room_id} cancelled")
            return
        if task.exception() is not None:
            logger.error(f"Join of room {room_id} failed unexpectedly: {task.exception()!r}")
            return
        if self.on_join_finished:
            self.on_join_finished(task.result())

    async def close(self) -> None:
        """Cancel in-flight join retries."""
        tasks = list(self._join_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
