"""Pytest configuration and shared fixtures."""

import os
import re
import sys
from pathlib import Path

import pytest

# Add project root so `badnews`, `services` and `tests.fakes` import without installing
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from badnews.config import Unit, parse_config  # noqa: E402
from tests.fakes import ROOM_ID, FakeTransport  # noqa: E402

ENV_KEYS = ("BADNEWS_HOMESERVER", "BADNEWS_USERNAME", "BADNEWS_PASSWORD", "BADNEWS_CONFIG", "NOTIFY_SOCKET", "WATCHDOG_USEC")


@pytest.fixture(autouse=True)
def setup_env():
    """Isolate tests from the caller's environment overrides."""
    original_env = dict(os.environ)

    for key in ENV_KEYS:
        os.environ.pop(key, None)

    yield

    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def raw_config(tmp_path):
    """A valid raw config mapping."""
    return {
        "homeserver": "https://matrix.example.org",
        "username": "badnews",
        "password": "hunter2",
        "state_dir": str(tmp_path / "state"),
        "room_id": ROOM_ID,
        "units": [
            "nginx.service",
            {"name": "sshd.service", "filter": "Failed password"},
        ],
    }


@pytest.fixture
def config(raw_config):
    return parse_config(raw_config)


@pytest.fixture
def units():
    return {
        "nginx.service": Unit("nginx.service"),
        "sshd.service": Unit("sshd.service", re.compile("Failed password")),
    }


@pytest.fixture
def fake_transport():
    return FakeTransport()
