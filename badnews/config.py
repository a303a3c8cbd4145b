"""Configuration loading for the journal bridge.

The configuration is a YAML file read once at startup. Credentials may be
overridden from the environment (or a .env file), which keeps the password
out of the config file when running under systemd.

Example config.yaml:

    homeserver: https://matrix.example.org
    username: badnews
    password: hunter2
    state_dir: /var/lib/badnews
    room_id: "!abcdefgh:example.org"
    units:
      - nginx.service
      - name: sshd.service
        filter: "Failed password|Invalid user"
    join_retry:
      base_delay: 2
      max_delay: 3600

Usage:
    from badnews.config import load_config

    config = load_config(Path("/etc/badnews/config.yaml"))
    unit = config.units["sshd.service"]

Priority for credentials: environment variable > config file.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml
from dotenv import load_dotenv

from badnews.errors import ConfigError
from badnews.paths import DEFAULT_CONFIG_FILE, DEFAULT_ENV_FILE

logger = logging.getLogger(__name__)

# Environment overrides for top-level keys
ENV_OVERRIDES = {
    "homeserver": "BADNEWS_HOMESERVER",
    "username": "BADNEWS_USERNAME",
    "password": "BADNEWS_PASSWORD",
}

CONFIG_ENV_VAR = "BADNEWS_CONFIG"

DEFAULT_DEVICE_NAME = "autojoin bot"

# Join retry defaults: first wait and the ceiling above which the bot gives up
DEFAULT_BASE_DELAY = 2.0
DEFAULT_MAX_DELAY = 3600.0

# Blocking journal wait; bounded so shutdown is observed by the tail thread
DEFAULT_WAIT_TIMEOUT = 1.0

REQUIRED_KEYS = ["homeserver", "username", "password", "state_dir", "room_id", "units"]

ROOM_ID_RE = re.compile(r"^![^:\s]+:\S+$")


# ==================== Units ====================


@dataclass(frozen=True, eq=False)
class Unit:
    """A watched journal unit.

    Identity is the unit name only: two Units with the same name compare
    equal whatever their filters.
    """

    name: str
    filter: re.Pattern | None = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Unit):
            return NotImplemented
        return self.name == other.name

    def __hash__(self) -> int:
        return hash(self.name)

    def matches(self, message: str | None) -> bool:
        """Whether a message passes this unit's filter."""
        if self.filter is None:
            return True
        if message is None:
            return False
        return self.filter.search(message) is not None


@dataclass(frozen=True)
class BareUnit:
    """Unit given as a plain string in the config."""

    name: str


@dataclass(frozen=True)
class FilteredUnit:
    """Unit given as a {name, filter} map in the config."""

    name: str
    pattern: str | None


UnitSpec = BareUnit | FilteredUnit


def parse_unit_spec(raw: Any, index: int) -> UnitSpec:
    """Turn one raw `units` entry into its config variant.

    Raises:
        ConfigError: if the entry is neither a string nor a {name, filter} map
    """
    if isinstance(raw, str):
        if not raw.strip():
            raise ConfigError([f"units[{index}]: unit name must not be empty"])
        return BareUnit(raw.strip())

    if isinstance(raw, dict):
        name = raw.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ConfigError([f"units[{index}]: missing or invalid 'name'"])
        unknown = set(raw) - {"name", "filter"}
        if unknown:
            raise ConfigError([f"units[{index}]: unknown keys {sorted(unknown)}"])
        pattern = raw.get("filter")
        if pattern is not None and not isinstance(pattern, str):
            raise ConfigError([f"units[{index}]: 'filter' must be a string"])
        return FilteredUnit(name.strip(), pattern)

    raise ConfigError([f"units[{index}]: expected string or map, got {type(raw).__name__}"])


def normalize_unit(spec: UnitSpec) -> Unit:
    """Normalize a config variant into a Unit, compiling its filter.

    Raises:
        ConfigError: if the filter is not a valid regular expression
    """
    if isinstance(spec, BareUnit):
        return Unit(spec.name)

    if spec.pattern is None:
        return Unit(spec.name)

    try:
        return Unit(spec.name, re.compile(spec.pattern))
    except re.error as e:
        raise ConfigError([f"unit '{spec.name}': invalid filter {spec.pattern!r}: {e}"]) from e


def build_unit_table(raw_units: list[Any]) -> dict[str, Unit]:
    """Build the unit lookup table from the raw `units` list.

    Duplicate names keep the last configured entry.
    """
    table: dict[str, Unit] = {}
    for index, raw in enumerate(raw_units):
        unit = normalize_unit(parse_unit_spec(raw, index))
        if unit.name in table:
            logger.warning(f"Unit '{unit.name}' configured more than once, using the last entry")
        table[unit.name] = unit
    return table


# ==================== Config ====================


@dataclass(frozen=True)
class JoinRetrySettings:
    """Backoff parameters for joining the authorized room."""

    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY


@dataclass(frozen=True)
class Config:
    """Bridge configuration.

    Attributes:
        homeserver: Homeserver URL to connect to
        username: Bot account username (localpart or full user id)
        password: Bot account password, used only when no session is stored
        state_dir: Directory for the session file and client store
        room_id: The only room the bot joins and posts into
        units: Watched units keyed by name
        device_name: Device display name used on first login
        join_retry: Backoff settings for the autojoin
        wait_timeout: Upper bound of one blocking journal wait, in seconds
    """

    homeserver: str
    username: str
    password: str
    state_dir: Path
    room_id: str
    units: dict[str, Unit] = field(default_factory=dict)
    device_name: str = DEFAULT_DEVICE_NAME
    join_retry: JoinRetrySettings = field(default_factory=JoinRetrySettings)
    wait_timeout: float = DEFAULT_WAIT_TIMEOUT


def validate_config(data: dict[str, Any]) -> list[str]:
    """Validate the raw config mapping.

    Returns:
        List of validation error messages (empty if valid)
    """
    errors: list[str] = []

    for key in REQUIRED_KEYS:
        if data.get(key) in (None, ""):
            errors.append(f"Missing required key: {key}")

    for key in ("homeserver", "username", "password", "state_dir", "room_id"):
        value = data.get(key)
        if value is not None and not isinstance(value, str):
            errors.append(f"Invalid type for {key}: expected str, got {type(value).__name__}")

    homeserver = data.get("homeserver")
    if isinstance(homeserver, str) and homeserver:
        parsed = urlparse(homeserver)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            errors.append(f"Invalid homeserver URL: {homeserver}")

    room_id = data.get("room_id")
    if isinstance(room_id, str) and room_id and not ROOM_ID_RE.match(room_id):
        errors.append(f"Invalid room id: {room_id}")

    units = data.get("units")
    if units is not None and not isinstance(units, list):
        errors.append(f"'units' must be a list, got {type(units).__name__}")

    join_retry = data.get("join_retry", {})
    if not isinstance(join_retry, dict):
        errors.append("'join_retry' must be a map")
    else:
        for key in ("base_delay", "max_delay"):
            value = join_retry.get(key)
            if value is not None and (not isinstance(value, (int, float)) or value <= 0):
                errors.append(f"join_retry.{key} must be a positive number")

    journal = data.get("journal", {})
    if not isinstance(journal, dict):
        errors.append("'journal' must be a map")
    else:
        value = journal.get("wait_timeout")
        if value is not None and (not isinstance(value, (int, float)) or value <= 0):
            errors.append("journal.wait_timeout must be a positive number")

    return errors


def apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of the config with environment overrides applied."""
    merged = dict(data)
    for key, env_var in ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value:
            merged[key] = value
    return merged


def parse_config(data: dict[str, Any]) -> Config:
    """Validate a raw config mapping and build the Config.

    Raises:
        ConfigError: if validation fails
    """
    errors = validate_config(data)
    if errors:
        raise ConfigError(errors)

    join_retry = data.get("join_retry") or {}
    journal = data.get("journal") or {}

    return Config(
        homeserver=data["homeserver"].rstrip("/"),
        username=data["username"],
        password=data["password"],
        state_dir=Path(data["state_dir"]).expanduser(),
        room_id=data["room_id"],
        units=build_unit_table(data["units"]),
        device_name=data.get("device_name") or DEFAULT_DEVICE_NAME,
        join_retry=JoinRetrySettings(
            base_delay=float(join_retry.get("base_delay", DEFAULT_BASE_DELAY)),
            max_delay=float(join_retry.get("max_delay", DEFAULT_MAX_DELAY)),
        ),
        wait_timeout=float(journal.get("wait_timeout", DEFAULT_WAIT_TIMEOUT)),
    )


def resolve_config_path(path: Path | None = None) -> Path:
    """Pick the config file: explicit path > BADNEWS_CONFIG > default."""
    if path is not None:
        return path
    env_path = os.getenv(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_FILE


def load_config(path: Path | None = None, env_file: Path | None = None) -> Config:
    """
    Load and validate the YAML configuration.

    Args:
        path: Config file (defaults to BADNEWS_CONFIG or ~/.config/badnews/config.yaml)
        env_file: .env file with credential overrides (defaults to ~/.config/badnews/.env)

    Returns:
        Validated Config

    Raises:
        ConfigError: if the file is missing, unreadable or invalid
    """
    load_dotenv(env_file or DEFAULT_ENV_FILE)
    load_dotenv()

    config_path = resolve_config_path(path)
    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError([f"Cannot read config file {config_path}: {e}"]) from e
    except yaml.YAMLError as e:
        raise ConfigError([f"Cannot parse config file {config_path}: {e}"]) from e

    if not isinstance(data, dict):
        raise ConfigError([f"Config file {config_path} must contain a map"])

    config = parse_config(apply_env_overrides(data))
    logger.debug(f"Loaded config from {config_path}: {len(config.units)} unit(s), room {config.room_id}")
    return config
