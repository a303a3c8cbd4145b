"""Tests for badnews/session.py - session reuse across restarts."""

import os
import stat
from unittest.mock import patch

import pytest
import yaml

from badnews.errors import SessionError
from badnews.paths import session_file
from badnews.session import Session, load_or_init_session, read_session, write_session
from tests.fakes import BOT_USER_ID, FakeTransport

STORED = Session(access_token="syt_stored", user_id=BOT_USER_ID, device_id="OLDDEVICE")


class TestSessionFile:
    def test_read_missing_returns_none(self, tmp_path):
        assert read_session(tmp_path / "session.yaml") is None

    def test_write_then_read(self, tmp_path):
        path = tmp_path / "state" / "session.yaml"
        write_session(path, STORED)
        assert read_session(path) == STORED

    def test_written_file_is_private(self, tmp_path):
        path = tmp_path / "session.yaml"
        write_session(path, STORED)
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert not path.with_suffix(".tmp").exists()

    def test_token_private_while_being_written(self, tmp_path):
        path = tmp_path / "session.yaml"
        path.with_suffix(".tmp").write_text("left over from a crash")
        path.with_suffix(".tmp").chmod(0o644)
        modes = []
        real_dump = yaml.safe_dump

        def dump(data, stream, **kwargs):
            modes.append(stat.S_IMODE(os.fstat(stream.fileno()).st_mode))
            return real_dump(data, stream, **kwargs)

        old_umask = os.umask(0)
        try:
            with patch("badnews.session.yaml.safe_dump", side_effect=dump):
                write_session(path, STORED)
        finally:
            os.umask(old_umask)

        assert modes == [0o600]
        assert read_session(path) == STORED

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "session.yaml"
        path.write_text("access_token: [unclosed\n")
        with pytest.raises(SessionError, match="Cannot read session file"):
            read_session(path)

    def test_not_a_map(self, tmp_path):
        path = tmp_path / "session.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(SessionError, match="must contain a map"):
            read_session(path)

    def test_missing_keys(self, tmp_path):
        path = tmp_path / "session.yaml"
        path.write_text(yaml.safe_dump({"access_token": "syt", "user_id": BOT_USER_ID}))
        with pytest.raises(SessionError, match="device_id"):
            read_session(path)


class TestLoadOrInitSession:
    """Tests for load_or_init_session()."""

    @pytest.mark.asyncio
    async def test_first_start_logs_in_and_stores(self, tmp_path):
        transport = FakeTransport()
        state_dir = tmp_path / "state"

        session = await load_or_init_session(transport, state_dir, "hunter2", "autojoin bot")

        assert transport.logins == [("hunter2", "autojoin bot")]
        assert transport.restored == []
        assert session.device_id == "NEWDEVICE"
        assert read_session(session_file(state_dir)) == session

    @pytest.mark.asyncio
    async def test_restart_reuses_stored_session(self, tmp_path):
        transport = FakeTransport()
        write_session(session_file(tmp_path), STORED)

        session = await load_or_init_session(transport, tmp_path, "hunter2", "autojoin bot")

        assert session == STORED
        assert transport.logins == []
        assert transport.restored == [STORED]

    @pytest.mark.asyncio
    async def test_second_start_uses_first_session(self, tmp_path):
        first = FakeTransport()
        second = FakeTransport()

        created = await load_or_init_session(first, tmp_path, "hunter2", "autojoin bot")
        reused = await load_or_init_session(second, tmp_path, "hunter2", "autojoin bot")

        assert reused == created
        assert second.logins == []

    @pytest.mark.asyncio
    async def test_corrupt_session_is_fatal(self, tmp_path):
        transport = FakeTransport()
        session_file(tmp_path).write_text("{{{")

        with pytest.raises(SessionError):
            await load_or_init_session(transport, tmp_path, "hunter2", "autojoin bot")
        assert transport.logins == []

    @pytest.mark.asyncio
    async def test_creates_state_dir(self, tmp_path):
        state_dir = tmp_path / "a" / "b"
        await load_or_init_session(FakeTransport(), state_dir, "hunter2", "autojoin bot")
        assert (state_dir / "store").is_dir()
