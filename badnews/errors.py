"""Exception hierarchy for the journal bridge.

Fatal errors (configuration, session, journal, login) propagate out of the
daemon and end the process. Transport errors raised after startup are caught
and logged by the component that issued the call.

Usage:
    from badnews.errors import ConfigError, TransportError

    try:
        await transport.send_text(room_id, text)
    except TransportError as e:
        logger.error(f"Failed to send message: {e}")
"""


class BadNewsError(Exception):
    """Base class for all bridge errors."""


class ConfigError(BadNewsError):
    """Raised when the configuration file is missing or invalid."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Config validation failed: {'; '.join(errors)}")


class SessionError(BadNewsError):
    """Raised when the stored session cannot be read, restored or written."""


class LogSourceError(BadNewsError):
    """Raised when the system journal cannot be opened or read."""


class TransportError(BadNewsError):
    """Raised when a Matrix request fails.

    Attributes:
        operation: Name of the failed operation (e.g. "join", "send")
        room_id: Room the request targeted, if any
        status_code: Matrix error code returned by the homeserver, if any
    """

    def __init__(
        self,
        operation: str,
        message: str,
        room_id: str | None = None,
        status_code: str | None = None,
    ):
        self.operation = operation
        self.room_id = room_id
        self.status_code = status_code
        detail = f"{operation} failed"
        if room_id:
            detail += f" for {room_id}"
        detail += f": {message}"
        if status_code:
            detail += f" [{status_code}]"
        super().__init__(detail)
