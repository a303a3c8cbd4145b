"""
Record filtering and forwarding.

Forwarder turns journal records into chat messages:

    [nginx] upstream timed out (110: Connection timed out)

Only records from configured units are forwarded; a unit may carry a regex
that the message has to match. Sending is delegated to a submit callable
that must not block (the daemon schedules the send on its event loop).
"""

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from badnews.config import Unit
from badnews.journal import LogRecord

logger = logging.getLogger(__name__)

# Unit suffixes dropped from the message prefix
KNOWN_UNIT_SUFFIXES = (".service",)

EMPTY_MESSAGE = "<EMPTY MESSAGE>"


@dataclass(frozen=True)
class OutboundMessage:
    """A message ready to be sent to a room."""

    room_id: str
    text: str


class UnitFilterTable:
    """Read-only lookup of watched units by name."""

    def __init__(self, units: Mapping[str, Unit] | Iterable[Unit]):
        if isinstance(units, Mapping):
            table = dict(units)
        else:
            table = {}
            for unit in units:
                table[unit.name] = unit
        self._units = MappingProxyType(table)

    def __len__(self) -> int:
        return len(self._units)

    def __contains__(self, name: object) -> bool:
        return name in self._units

    def get(self, name: str) -> Unit | None:
        return self._units.get(name)

    @property
    def names(self) -> list[str]:
        return sorted(self._units)

    def is_eligible(self, record: LogRecord) -> bool:
        """Whether a record comes from a watched unit and passes its filter."""
        if record.source_unit is None:
            return False
        unit = self._units.get(record.source_unit)
        if unit is None:
            return False
        return unit.matches(record.message)


def display_unit_name(unit: str) -> str:
    """Unit name without its type suffix (nginx.service -> nginx)."""
    for suffix in KNOWN_UNIT_SUFFIXES:
        if unit.endswith(suffix):
            return unit[: -len(suffix)]
    return unit


def format_record(record: LogRecord) -> str:
    """Chat text for a record; the placeholder only stands in for a missing MESSAGE field."""
    message = record.message if record.message is not None else EMPTY_MESSAGE
    return f"[{display_unit_name(record.source_unit or '')}] {message}"


class Forwarder:
    """Forward eligible records to the authorized room."""

    def __init__(
        self,
        table: UnitFilterTable,
        room_id: str,
        submit: Callable[[OutboundMessage], None],
    ):
        self.table = table
        self.room_id = room_id
        self.submit = submit
        self.forwarded = 0

    def forward(self, record: LogRecord) -> OutboundMessage | None:
        """Submit a message for the record if it is eligible.

        Returns:
            The submitted message, or None if the record was ignored
        """
        if not self.table.is_eligible(record):
            return None

        message = OutboundMessage(room_id=self.room_id, text=format_record(record))
        self.submit(message)
        self.forwarded += 1
        return message
