"""Event types produced by the Matrix transport.

The transport converts matrix-nio callbacks into this small tagged union and
puts them on a queue. Each consumer dispatches on the event type in a single
function; new kinds of events are added here, not as new callbacks.
"""

from dataclasses import dataclass
from enum import Enum


class RoomState(Enum):
    """Membership state of a room as seen by the bot account."""

    INVITED = "invited"
    JOINED = "joined"
    LEFT = "left"
    OTHER = "other"


# m.room.member "membership" values that take the bot out of a room
_LEFT_MEMBERSHIPS = ("leave", "ban")


def room_state_for(membership: str | None, invited: bool) -> RoomState:
    """Room state of a member event, as seen by the bot.

    Only a room from the invited section of a sync is INVITED. Member events
    replayed from a joined room's timeline keep the room JOINED (or LEFT)
    whatever their membership value.

    Args:
        membership: The event's membership value
        invited: Whether the room is one the bot is invited to
    """
    if invited:
        return RoomState.INVITED if membership == "invite" else RoomState.OTHER
    if membership in _LEFT_MEMBERSHIPS:
        return RoomState.LEFT
    return RoomState.JOINED


@dataclass(frozen=True)
class MembershipEvent:
    """A change in some account's membership of a room.

    Attributes:
        subject_user_id: The bot's own user id at the time of the event
        room_id: Room the event belongs to
        room_state: Membership state carried by the event
        target_state_key: User id the membership change applies to
    """

    subject_user_id: str
    room_id: str
    room_state: RoomState
    target_state_key: str

    @property
    def is_self(self) -> bool:
        """Whether the event is about the bot's own membership."""
        return self.target_state_key == self.subject_user_id


@dataclass(frozen=True)
class MessageEvent:
    """A plain-text message received in a joined room."""

    room_id: str
    sender: str
    body: str
    sender_name: str | None = None

    @property
    def display_sender(self) -> str:
        return self.sender_name or self.sender


Event = MembershipEvent | MessageEvent
