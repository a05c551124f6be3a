"""Connection config, per-operation option structs and profile storage.

Profiles are stored as JSON under ``~/.sshbridge/``.  Passwords are never
written to disk — they are delegated to ``keyring``.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import socket
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Literal, Optional

import keyring
import keyring.errors

from sshbridge.errors import InvalidArgumentError, LocalNotFoundError
from sshbridge.utils.path_helpers import PathPredicate, is_visible

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_PORT = 22
DEFAULT_TIMEOUT = 15.0
DEFAULT_KEYRING_SERVICE = "sshbridge"
DEFAULT_MAX_AT_ONCE = 5

TickCallback = Callable[[str, str, Optional[BaseException]], None]
ProgressCallback = Callable[[int, int], None]
StreamName = Literal["stdout", "stderr", "both"]


def _noop_tick(local_path: str, remote_path: str, error: BaseException | None) -> None:
    return None


# ---------------------------------------------------------------------------
# ConnectConfig
# ---------------------------------------------------------------------------


@dataclass
class ConnectConfig:
    """Parameters for establishing an SSH connection.

    ``private_key`` may be either the key material itself or a path to a key
    file; :func:`normalize_config` reads the file in the latter case.
    """

    host: str | None = None
    port: int = DEFAULT_PORT
    username: str | None = None
    password: str | None = None
    private_key: str | None = None
    passphrase: str | None = None
    sock: socket.socket | Any | None = None
    timeout: float = DEFAULT_TIMEOUT
    keyring_service: str = DEFAULT_KEYRING_SERVICE
    look_for_keys: bool = False
    allow_agent: bool = True

    @property
    def profile_key(self) -> str:
        """Keyring account key for this connection (user@host)."""
        return f"{self.username or ''}@{self.host or ''}"

    def to_profile(self) -> dict[str, Any]:
        """Serialisable view without secrets or live objects.

        Only a key *path* is kept; inline key material is dropped.
        """
        skip = {"password", "passphrase", "sock"}
        data = {f.name: getattr(self, f.name) for f in fields(self) if f.name not in skip}
        key = data.get("private_key")
        if isinstance(key, str) and _looks_like_key_material(key):
            data["private_key"] = None
        return data

    @classmethod
    def from_profile(cls, data: dict[str, Any]) -> "ConnectConfig":
        """Build a config from a stored profile, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def _looks_like_key_material(value: str) -> bool:
    return "BEGIN" in value and "KEY" in value


def store_password(config: ConnectConfig, password: str) -> None:
    """Store *password* in the OS keyring for *config*'s user@host."""
    keyring.set_password(config.keyring_service, config.profile_key, password)
    logger.debug("Password stored in keyring for %s", config.profile_key)


def delete_password(config: ConnectConfig) -> None:
    """Remove the stored password for *config* from the OS keyring."""
    try:
        keyring.delete_password(config.keyring_service, config.profile_key)
    except keyring.errors.PasswordDeleteError:
        pass
    logger.debug("Password deleted from keyring for %s", config.profile_key)


def normalize_config(config: ConnectConfig) -> ConnectConfig:
    """Validate *config* and return a normalised copy.

    Raises:
        InvalidArgumentError: On a missing host/sock or a wrongly typed field.
        LocalNotFoundError: If ``private_key`` names a file that does not exist.
    """
    if not isinstance(config, ConnectConfig):
        raise InvalidArgumentError("config must be a ConnectConfig")

    sock = config.sock
    config = copy.copy(config)

    if config.username is not None and not isinstance(config.username, str):
        raise InvalidArgumentError("config.username must be a valid string")

    if config.host is not None:
        if not isinstance(config.host, str) or not config.host:
            raise InvalidArgumentError("config.host must be a valid string")
    elif sock is None:
        raise InvalidArgumentError("config.host or config.sock must be provided")

    if not isinstance(config.port, int) or not 0 < config.port < 65536:
        raise InvalidArgumentError(f"config.port must be a valid port, got {config.port!r}")

    if config.private_key:
        private_key = config.private_key
        if not isinstance(private_key, str):
            raise InvalidArgumentError("config.private_key must be a string")
        if not _looks_like_key_material(private_key):
            key_path = Path(private_key).expanduser()
            try:
                config.private_key = key_path.read_text(encoding="utf-8")
            except FileNotFoundError as exc:
                raise LocalNotFoundError(
                    f"config.private_key does not exist at {private_key}"
                ) from exc
    elif config.password is not None and not isinstance(config.password, str):
        raise InvalidArgumentError("config.password must be a string")

    return config


# ---------------------------------------------------------------------------
# Per-operation options
# ---------------------------------------------------------------------------


@dataclass
class ExecOptions:
    """Channel options used when opening an exec channel."""

    pty: bool = False
    term: str = "vt100"
    env: dict[str, str] | None = None

    def validate(self) -> None:
        if not isinstance(self.pty, bool):
            raise InvalidArgumentError("exec_options.pty must be a boolean")
        if self.env is not None and not isinstance(self.env, dict):
            raise InvalidArgumentError("exec_options.env must be a dict")


# Shells need a pseudo-terminal so sudo and the prompt behave interactively.
SHELL_EXEC_OPTIONS = ExecOptions(pty=True)


@dataclass
class ExecCommandOptions:
    """Options for :meth:`SSHSession.exec_command`."""

    cwd: str | None = None
    stdin: str | None = None
    use_sudo: bool = False
    exec_options: ExecOptions = field(default_factory=ExecOptions)

    def validate(self) -> None:
        if self.cwd is not None and not isinstance(self.cwd, str):
            raise InvalidArgumentError("options.cwd must be a string")
        if self.stdin is not None and not isinstance(self.stdin, str):
            raise InvalidArgumentError("options.stdin must be a string")
        if not isinstance(self.use_sudo, bool):
            raise InvalidArgumentError("options.use_sudo must be a boolean")
        if not isinstance(self.exec_options, ExecOptions):
            raise InvalidArgumentError("options.exec_options must be ExecOptions")
        self.exec_options.validate()


@dataclass
class RunOptions:
    """Options for :meth:`SSHSession.exec`."""

    cwd: str | None = None
    stdin: str | None = None
    stream: StreamName = "stdout"
    exec_options: ExecOptions = field(default_factory=ExecOptions)

    def validate(self) -> None:
        if self.stream not in ("stdout", "stderr", "both"):
            raise InvalidArgumentError(
                'options.stream must be among "stdout", "stderr" and "both"'
            )
        self.to_command_options().validate()

    def to_command_options(self) -> ExecCommandOptions:
        return ExecCommandOptions(
            cwd=self.cwd, stdin=self.stdin, exec_options=self.exec_options
        )


@dataclass
class TransferOptions:
    """Options forwarded to ``SFTPClient.put``/``get``.

    ``callback`` receives ``(bytes_so_far, total_bytes)``.  ``confirm``
    applies to uploads only: stat the remote file afterwards and compare
    sizes.
    """

    callback: ProgressCallback | None = None
    confirm: bool = True

    def validate(self) -> None:
        if self.callback is not None and not callable(self.callback):
            raise InvalidArgumentError("opts.callback must be callable")


@dataclass
class PutDirectoryOptions:
    """Options for :meth:`SSHSession.put_directory`."""

    recursive: bool = True
    validate: PathPredicate = is_visible
    tick: TickCallback = _noop_tick

    def check(self) -> None:
        if not callable(self.tick):
            raise InvalidArgumentError("config.tick must be a function")
        if not callable(self.validate):
            raise InvalidArgumentError("config.validate must be a function")
        self.recursive = bool(self.recursive)


# ---------------------------------------------------------------------------
# ProfileStore
# ---------------------------------------------------------------------------


class ProfileStore:
    """Manages saved connection profiles.

    Writes atomically (write-to-temp, then rename) to prevent corruption on
    unexpected exit.  A corrupt file triggers a warning and a safe reset —
    it never raises to the caller.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        """Initialise, creating ``~/.sshbridge/`` if necessary."""
        self._base = base_dir or Path.home() / ".sshbridge"
        self._profiles_path = self._base / "profiles.json"

        self._base.mkdir(parents=True, exist_ok=True)
        self._profiles: dict[str, dict[str, Any]] = self._load()

    def _atomic_write(self, path: Path, data: Any) -> None:
        """Serialise *data* as JSON and write atomically to *path*."""
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc)
            raise

    def _load(self) -> dict[str, dict[str, Any]]:
        if not self._profiles_path.exists():
            return {}
        try:
            loaded = json.loads(self._profiles_path.read_text(encoding="utf-8"))
            if not isinstance(loaded, list):
                raise ValueError("Profiles root must be a JSON array")
            return {p["name"]: p for p in loaded if isinstance(p, dict) and p.get("name")}
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning("Corrupt profiles.json (%s) — resetting to empty list", exc)
            self._atomic_write(self._profiles_path, [])
            return {}

    def _flush(self) -> None:
        self._atomic_write(self._profiles_path, list(self._profiles.values()))

    def get_profiles(self) -> list[str]:
        """Return the names of all saved profiles."""
        return list(self._profiles)

    def get_profile(self, name: str) -> ConnectConfig | None:
        """Return the config saved as *name*, or ``None`` if not found."""
        profile = self._profiles.get(name)
        if profile is None:
            return None
        return ConnectConfig.from_profile(profile)

    def save_profile(self, name: str, config: ConnectConfig) -> None:
        """Upsert *config* under *name*.

        Secrets are never written to the profile file: a password goes to the
        OS keyring, keyed by user@host.
        """
        if not name:
            raise InvalidArgumentError("Profile must have a non-empty name")
        self._profiles[name] = {"name": name, **config.to_profile()}
        self._flush()
        if config.password:
            store_password(config, config.password)
        logger.info("Profile saved: %s", name)

    def delete_profile(self, name: str) -> bool:
        """Delete the profile identified by *name*.

        Returns ``True`` if a profile was deleted, ``False`` if not found.
        """
        if self._profiles.pop(name, None) is None:
            logger.warning("delete_profile: profile not found: %s", name)
            return False
        self._flush()
        logger.info("Profile deleted: %s", name)
        return True
