"""
Journal tail-follow.

JournalSource wraps systemd.journal.Reader behind the small LogSource
interface; JournalTailer runs the blocking drain-then-wait loop on a
dedicated thread and hands every record to a callback.

The wait must use the journal's own wait primitive: sleeping and polling
can miss entries appended between polls.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from badnews.errors import LogSourceError
from badnews.protocols import LogSource

logger = logging.getLogger(__name__)

KEY_UNIT = "_SYSTEMD_UNIT"
KEY_MESSAGE = "MESSAGE"


@dataclass(frozen=True)
class LogRecord:
    """One journal entry."""

    source_unit: str | None
    message: str | None
    fields: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_entry(cls, entry: dict[str, Any]) -> "LogRecord":
        return cls(
            source_unit=_as_text(entry.get(KEY_UNIT)),
            message=_as_text(entry.get(KEY_MESSAGE)),
            fields=entry,
        )


def _as_text(value: Any) -> str | None:
    # Fields the reader could not decode come back as bytes
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def open_system_journal() -> Any:
    """Open a reader on the system journal (not the user's)."""
    from systemd import journal

    return journal.Reader(flags=journal.SYSTEM)


class JournalSource:
    """System journal reader implementing the LogSource protocol."""

    def __init__(self, reader_factory: Callable[[], Any] | None = None):
        self._reader_factory = reader_factory or open_system_journal
        self._reader: Any = None

    @property
    def is_open(self) -> bool:
        return self._reader is not None

    def open(self) -> None:
        """Open the system journal.

        Raises:
            LogSourceError: if the journal cannot be opened
        """
        try:
            self._reader = self._reader_factory()
        except ImportError as e:
            raise LogSourceError(f"systemd-python is required to read the journal: {e}") from e
        except OSError as e:
            raise LogSourceError(f"Could not open journal: {e}") from e
        logger.debug("Journal opened")

    def seek_to_end(self) -> None:
        """Move past every entry written before now.

        seek_tail() alone can still leave old entries behind the cursor, so
        whatever is readable right after it is read and discarded.
        """
        reader = self._require_reader()
        try:
            reader.seek_tail()
        except OSError as e:
            raise LogSourceError(f"Could not seek to end of journal: {e}") from e

        skipped = 0
        while self.next_record() is not None:
            skipped += 1
        if skipped:
            logger.debug(f"Skipped {skipped} journal entries left after seek_tail")

    def next_record(self) -> LogRecord | None:
        """Return the next entry, or None when nothing more is buffered."""
        entry = self._require_reader().get_next()
        if not entry:
            return None
        return LogRecord.from_entry(entry)

    def wait_for_more(self, timeout: float | None = None) -> Any:
        """Block until the journal changes or timeout (seconds) elapses."""
        return self._require_reader().wait(timeout)

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()
            self._reader = None

    def _require_reader(self) -> Any:
        if self._reader is None:
            raise LogSourceError("Journal is not open")
        return self._reader


class JournalTailer:
    """
    Drain-then-wait loop over a LogSource.

    The inner loop forwards every buffered record before blocking, so a
    burst never leaves the tailer lagging; the outer loop blocks only once
    the buffer is empty. A bounded wait lets stop() be observed between
    waits; a timeout just drains again, so nothing is skipped or repeated.

    Usage:
        tailer = JournalTailer(JournalSource(), forwarder.forward)
        await asyncio.to_thread(tailer.run)   # on a worker thread
        tailer.stop()                         # from any thread
    """

    def __init__(
        self,
        source: LogSource,
        handle_record: Callable[[LogRecord], Any],
        wait_timeout: float | None = 1.0,
    ):
        self.source = source
        self.handle_record = handle_record
        self.wait_timeout = wait_timeout
        self._stop = threading.Event()
        self.records_seen = 0
        self.records_failed = 0

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Ask the loop to exit after its current wait."""
        self._stop.set()

    def run(self) -> None:
        """Tail the log until stop() is called.

        The source must already be open. Errors from the source propagate;
        errors from handle_record are logged per record.
        """
        self.source.seek_to_end()
        logger.info("Watching journal")

        while not self._stop.is_set():
            self.drain()
            if self._stop.is_set():
                break
            self.source.wait_for_more(self.wait_timeout)

        logger.info("Journal watcher stopped")

    def drain(self) -> int:
        """Hand every currently buffered record to the callback."""
        count = 0
        while True:
            record = self.source.next_record()
            if record is None:
                return count
            count += 1
            self.records_seen += 1
            try:
                self.handle_record(record)
            except Exception as e:
                self.records_failed += 1
                logger.exception(f"Failed to handle journal record from {record.source_unit}: {e}")
