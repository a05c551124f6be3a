"""SSH connection lifecycle for sshbridge.

One :class:`SSHConnection` owns at most one paramiko client at a time and is
reference counted: every :meth:`SSHConnection.acquire` must be balanced by a
:meth:`SSHConnection.release`, and the client is torn down only when the
count returns to zero.  Channels and SFTP handles are opened on demand.
"""

from __future__ import annotations

import io
import logging
import threading
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Optional

import keyring
import paramiko

from sshbridge.config import ConnectConfig, ExecOptions, normalize_config
from sshbridge.errors import (
    ChannelFailureError,
    InvalidArgumentError,
    NotConnectedError,
    UnknownHostError,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

StateChangeCallback = Callable[["ConnectionState", Optional[str]], None]

_KEY_CLASSES: tuple[type[paramiko.PKey], ...] = (
    paramiko.Ed25519Key,
    paramiko.ECDSAKey,
    paramiko.RSAKey,
)


# ---------------------------------------------------------------------------
# Host-key policy
# ---------------------------------------------------------------------------


class _CapturingPolicy(paramiko.MissingHostKeyPolicy):
    """Raises UnknownHostError with fingerprint info instead of silently rejecting."""

    def missing_host_key(
        self,
        client: paramiko.SSHClient,
        hostname: str,
        key: paramiko.PKey,
    ) -> None:
        raw = key.get_fingerprint()
        fingerprint = ":".join(f"{b:02x}" for b in raw)
        raise UnknownHostError(
            f"Host '{hostname}' is not in known_hosts.\n"
            f"Key type: {key.get_name()}\n"
            f"Fingerprint (MD5): {fingerprint}",
            hostname=hostname,
            key_type=key.get_name(),
            fingerprint=fingerprint,
            key=key,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _known_hosts_path() -> Path:
    return Path.home() / ".ssh" / "known_hosts"


def _close_client_safely(client: paramiko.SSHClient) -> None:
    """Close *client*, logging instead of raising on cleanup noise."""
    try:
        client.close()
    except (paramiko.SSHException, OSError) as exc:
        logger.debug("Ignoring error while closing client: %s", exc)


def accept_host_key(hostname: str, key: paramiko.PKey) -> None:
    """Append *key* for *hostname* to ``~/.ssh/known_hosts`` and save.

    Creates the file and ``.ssh/`` directory if they do not exist.
    """
    known_hosts_path = _known_hosts_path()
    known_hosts_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    host_keys = paramiko.HostKeys(str(known_hosts_path)) if known_hosts_path.exists() else paramiko.HostKeys()
    host_keys.add(hostname, key.get_name(), key)
    host_keys.save(str(known_hosts_path))
    logger.info("Saved host key for %s to known_hosts", hostname)


def load_private_key(material: str, passphrase: str | None = None) -> paramiko.PKey:
    """Parse PEM/OpenSSH key *material*, trying each supported key type.

    Raises:
        InvalidArgumentError: If no key type accepts the material.
    """
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(material), password=passphrase)
        except paramiko.SSHException:
            continue
    raise InvalidArgumentError("config.private_key is not a supported private key")


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class ConnectionState(Enum):
    """States for the SSH connection lifecycle."""

    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    ERROR = auto()


# ---------------------------------------------------------------------------
# SSHConnection
# ---------------------------------------------------------------------------


class SSHConnection:
    """Reference-counted owner of one paramiko SSH client.

    Thread-safety: ``_lock`` protects the state, the reference count and the
    client handle.  Channel and SFTP operations themselves are not locked.
    """

    def __init__(
        self,
        config: ConnectConfig | None = None,
        on_state_change: StateChangeCallback | None = None,
    ) -> None:
        """Initialise connection parameters (does NOT connect yet)."""
        self.config = config
        self._on_state_change = on_state_change

        self._client: paramiko.SSHClient | None = None
        self._state = ConnectionState.DISCONNECTED
        self._references = 0
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        """Current connection state (thread-safe read)."""
        with self._lock:
            return self._state

    @property
    def references(self) -> int:
        with self._lock:
            return self._references

    def _set_state(self, new_state: ConnectionState, message: str | None = None) -> None:
        """Update state and fire the state-change callback (must hold lock)."""
        self._state = new_state
        logger.debug(
            "Connection state → %s%s",
            new_state.name,
            f" ({message})" if message else "",
        )
        if self._on_state_change:
            try:
                self._on_state_change(new_state, message)
            except Exception:
                logger.exception("Exception in on_state_change callback")

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    def acquire(self, config: ConnectConfig | None = None) -> None:
        """Take a reference, connecting first if no client is active.

        Raises:
            InvalidArgumentError: No config was given here or at construction.
            UnknownHostError: Host key is not in known_hosts (carries fingerprint).
            paramiko.AuthenticationException: Wrong credentials.
            OSError: Network-level failure.
        """
        with self._lock:
            self._references += 1
            if self._client_alive():
                return
            if config is not None:
                self.config = config
            if self.config is None:
                self._references -= 1
                raise InvalidArgumentError("No connection config provided")
            self._set_state(ConnectionState.CONNECTING)
            try:
                self._client = self._do_connect(normalize_config(self.config))
            except Exception as exc:
                self._references -= 1
                self._set_state(ConnectionState.ERROR, str(exc))
                raise
            self._set_state(ConnectionState.CONNECTED)

    def release(self) -> None:
        """Drop a reference; close the client when the last one is released."""
        with self._lock:
            if self._references > 0:
                self._references -= 1
            if self._references == 0 and self._client is not None:
                _close_client_safely(self._client)
                self._client = None
                self._set_state(ConnectionState.DISCONNECTED)
                logger.info("Disconnected from %s", self.config.host if self.config else "socket")

    def _client_alive(self) -> bool:
        """True if a client exists and its transport is active (must hold lock).

        A dead transport is dropped here so the next acquire reconnects.
        """
        if self._client is None:
            return False
        transport = self._client.get_transport()
        if transport is not None and transport.is_active():
            return True
        logger.warning("Connection ended by the remote side")
        _close_client_safely(self._client)
        self._client = None
        self._set_state(ConnectionState.DISCONNECTED, "connection ended")
        return False

    def _do_connect(self, config: ConnectConfig) -> paramiko.SSHClient:
        logger.info("Connecting to %s@%s:%d", config.username, config.host, config.port)

        client = paramiko.SSHClient()
        known_hosts_path = _known_hosts_path()
        if known_hosts_path.exists():
            client.load_host_keys(str(known_hosts_path))
        client.set_missing_host_key_policy(_CapturingPolicy())

        connect_kwargs: dict = {
            "hostname": config.host or "",
            "port": config.port,
            "username": config.username,
            "timeout": config.timeout,
            "allow_agent": config.allow_agent,
            "look_for_keys": config.look_for_keys,
        }
        if config.sock is not None:
            connect_kwargs["sock"] = config.sock

        if config.private_key:
            connect_kwargs["pkey"] = load_private_key(config.private_key, config.passphrase)
        elif config.password is not None:
            connect_kwargs["password"] = config.password
        else:
            password = keyring.get_password(config.keyring_service, config.profile_key)
            if password:
                connect_kwargs["password"] = password

        try:
            client.connect(**connect_kwargs)
        except UnknownHostError:
            _close_client_safely(client)
            raise
        except paramiko.BadHostKeyException as exc:
            _close_client_safely(client)
            raise UnknownHostError(
                f"Host key mismatch for {config.host} — check ~/.ssh/known_hosts",
                hostname=config.host or "",
            ) from exc
        except (paramiko.SSHException, OSError):
            _close_client_safely(client)
            raise

        logger.info("Connected to %s", config.host)
        return client

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        with self._lock:
            return self._client_alive()

    def get_transport(self) -> paramiko.Transport:
        """Return the active paramiko Transport.

        Raises:
            NotConnectedError: If not currently connected.
        """
        with self._lock:
            if not self._client_alive():
                raise NotConnectedError("Not connected to server")
            transport = self._client.get_transport()
        if transport is None:
            raise NotConnectedError("SSH transport unavailable")
        return transport

    def open_channel(self, command: str, exec_options: ExecOptions | None = None) -> paramiko.Channel:
        """Open a session channel and start *command* on it.

        Raises:
            NotConnectedError: If not connected.
            ChannelFailureError: If the server refuses the channel or command.
        """
        exec_options = exec_options or ExecOptions()
        transport = self.get_transport()
        try:
            channel = transport.open_session()
            if exec_options.env:
                channel.update_environment(exec_options.env)
            if exec_options.pty:
                channel.get_pty(term=exec_options.term)
            channel.exec_command(command)
        except paramiko.SSHException as exc:
            logger.error("Could not open channel for %r: %s", command, exc)
            raise ChannelFailureError(str(exc)) from exc
        return channel

    def open_sftp(self) -> paramiko.SFTPClient:
        """Open a fresh SFTP handle; the caller closes it.

        Raises:
            NotConnectedError: If not connected.
            ChannelFailureError: If the SFTP subsystem cannot be started.
        """
        transport = self.get_transport()
        try:
            sftp = paramiko.SFTPClient.from_transport(transport)
        except paramiko.SSHException as exc:
            raise ChannelFailureError(f"Could not open SFTP channel: {exc}") from exc
        if sftp is None:
            raise ChannelFailureError("Could not open SFTP channel")
        return sftp
