"""Login session persistence.

The bot logs in with its password only once. The resulting access token,
user id and device id are written to <state_dir>/session.yaml and restored
on every later start, so restarts never create new devices.
"""

import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Protocol

import yaml

from badnews.errors import SessionError
from badnews.paths import ensure_state_dir, session_file

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Session:
    """Credentials of a logged-in device."""

    access_token: str
    user_id: str
    device_id: str

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        missing = [k for k in ("access_token", "user_id", "device_id") if not data.get(k)]
        if missing:
            raise SessionError(f"Session data missing keys: {', '.join(missing)}")
        return cls(
            access_token=str(data["access_token"]),
            user_id=str(data["user_id"]),
            device_id=str(data["device_id"]),
        )


class SessionClient(Protocol):
    """The part of the transport used to authenticate."""

    async def login(self, password: str, device_name: str) -> Session: ...

    def restore_login(self, session: Session) -> None: ...


def read_session(path: Path) -> Session | None:
    """Read a stored session, or None if the file does not exist.

    Raises:
        SessionError: if the file exists but cannot be read or parsed
    """
    if not path.is_file():
        return None

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise SessionError(f"Cannot read session file {path}: {e}") from e

    if not isinstance(data, dict):
        raise SessionError(f"Session file {path} must contain a map")
    return Session.from_dict(data)


def write_session(path: Path, session: Session) -> None:
    """Write the session file, readable by the owner only."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        # Owner-only from creation; the umask never widens it
        tmp_path.unlink(missing_ok=True)
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w") as f:
            yaml.safe_dump(asdict(session), f, default_flow_style=False)
        tmp_path.replace(path)
    except OSError as e:
        raise SessionError(f"Cannot write session file {path}: {e}") from e


async def load_or_init_session(
    client: SessionClient,
    state_dir: Path,
    password: str,
    device_name: str,
) -> Session:
    """
    Restore the stored session, or log in and store a new one.

    Args:
        client: Transport used to log in or restore credentials
        state_dir: Directory holding session.yaml
        password: Account password (only used when no session is stored)
        device_name: Display name of the device created on login

    Returns:
        The active Session

    Raises:
        SessionError: if a stored session is unreadable or cannot be saved
        TransportError: if the login request fails
    """
    ensure_state_dir(state_dir)
    path = session_file(state_dir)

    session = read_session(path)
    if session is not None:
        client.restore_login(session)
        logger.info(f"Reused session: {session.user_id}, {session.device_id}")
        return session

    session = await client.login(password, device_name)
    logger.info(f"Logged in as {session.user_id} (device {session.device_id})")
    write_session(path, session)
    return session
