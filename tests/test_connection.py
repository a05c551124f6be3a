"""Tests for sshbridge/connection.py — SSHConnection and key/host helpers."""

from __future__ import annotations

import io
from pathlib import Path
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from sshbridge.config import ConnectConfig, ExecOptions
from sshbridge.connection import (
    ConnectionState,
    SSHConnection,
    _CapturingPolicy,
    accept_host_key,
    load_private_key,
)
from sshbridge.errors import (
    ChannelFailureError,
    InvalidArgumentError,
    NotConnectedError,
    UnknownHostError,
)


@pytest.fixture()
def known_hosts(tmp_path: Path):
    path = tmp_path / ".ssh" / "known_hosts"
    with patch("sshbridge.connection._known_hosts_path", return_value=path):
        yield path


@pytest.fixture()
def ssh_client(known_hosts: Path):
    """Patch paramiko.SSHClient; every instance reports an active transport."""
    with patch("sshbridge.connection.paramiko.SSHClient") as client_cls:
        client_cls.return_value.get_transport.return_value.is_active.return_value = True
        yield client_cls


@pytest.fixture()
def no_keyring():
    with patch("sshbridge.connection.keyring.get_password", return_value=None) as get:
        yield get


@pytest.fixture()
def config() -> ConnectConfig:
    return ConnectConfig(host="10.0.0.5", username="deploy", password="pw")


class TestReferenceCounting:
    def test_connects_once_and_closes_on_last_release(
        self, ssh_client: MagicMock, config: ConnectConfig
    ) -> None:
        states: list[ConnectionState] = []
        conn = SSHConnection(config, on_state_change=lambda s, _m: states.append(s))

        conn.acquire()
        conn.acquire()
        assert ssh_client.call_count == 1
        assert conn.references == 2

        conn.release()
        ssh_client.return_value.close.assert_not_called()
        conn.release()
        ssh_client.return_value.close.assert_called_once_with()

        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
        ]

    def test_release_without_acquire_is_harmless(self) -> None:
        conn = SSHConnection()
        conn.release()
        assert conn.references == 0

    def test_missing_config(self) -> None:
        conn = SSHConnection()
        with pytest.raises(InvalidArgumentError):
            conn.acquire()
        assert conn.references == 0

    def test_failed_connect_leaves_no_reference(
        self, ssh_client: MagicMock, config: ConnectConfig
    ) -> None:
        """A failed connect does not count as a reference and closes the client."""
        ssh_client.return_value.connect.side_effect = paramiko.AuthenticationException("denied")
        conn = SSHConnection(config)

        with pytest.raises(paramiko.AuthenticationException):
            conn.acquire()

        assert conn.references == 0
        assert conn.state is ConnectionState.ERROR
        ssh_client.return_value.close.assert_called_once_with()

    def test_dead_transport_reconnects(
        self, ssh_client: MagicMock, config: ConnectConfig
    ) -> None:
        conn = SSHConnection(config)
        conn.acquire()
        ssh_client.return_value.get_transport.return_value.is_active.return_value = False

        assert conn.is_connected is False
        conn.acquire()
        assert ssh_client.call_count == 2


class TestAuthentication:
    def test_explicit_password(self, ssh_client: MagicMock, config: ConnectConfig) -> None:
        SSHConnection(config).acquire()
        kwargs = ssh_client.return_value.connect.call_args.kwargs
        assert kwargs["password"] == "pw"
        assert kwargs["hostname"] == "10.0.0.5"
        assert "pkey" not in kwargs

    def test_keyring_password_used_when_none_given(self, ssh_client: MagicMock) -> None:
        config = ConnectConfig(host="h", username="u")
        with patch("sshbridge.connection.keyring.get_password", return_value="from-keyring") as get:
            SSHConnection(config).acquire()
        get.assert_called_once_with("sshbridge", "u@h")
        assert ssh_client.return_value.connect.call_args.kwargs["password"] == "from-keyring"

    def test_no_password_anywhere(self, ssh_client: MagicMock, no_keyring: MagicMock) -> None:
        SSHConnection(ConnectConfig(host="h", username="u")).acquire()
        assert "password" not in ssh_client.return_value.connect.call_args.kwargs

    def test_private_key_takes_precedence(self, ssh_client: MagicMock) -> None:
        key = paramiko.RSAKey.generate(bits=1024)
        buf = io.StringIO()
        key.write_private_key(buf)
        config = ConnectConfig(host="h", password="pw", private_key=buf.getvalue())

        SSHConnection(config).acquire()

        kwargs = ssh_client.return_value.connect.call_args.kwargs
        assert isinstance(kwargs["pkey"], paramiko.RSAKey)
        assert "password" not in kwargs


class TestKeys:
    def test_load_private_key_rejects_garbage(self) -> None:
        with pytest.raises(InvalidArgumentError):
            load_private_key("-----BEGIN NONSENSE KEY-----\nxx\n-----END NONSENSE KEY-----\n")

    def test_unknown_host_carries_fingerprint(self) -> None:
        key = MagicMock()
        key.get_fingerprint.return_value = b"\x01\xab"
        key.get_name.return_value = "ssh-ed25519"

        with pytest.raises(UnknownHostError) as info:
            _CapturingPolicy().missing_host_key(MagicMock(), "box", key)

        assert info.value.fingerprint == "01:ab"
        assert info.value.key is key
        assert info.value.hostname == "box"

    def test_accept_host_key_writes_known_hosts(self, known_hosts: Path) -> None:
        key = paramiko.RSAKey.generate(bits=1024)
        accept_host_key("box", key)
        assert known_hosts.exists()
        assert paramiko.HostKeys(str(known_hosts)).lookup("box") is not None


class TestChannels:
    def test_not_connected(self) -> None:
        with pytest.raises(NotConnectedError):
            SSHConnection().get_transport()

    def test_open_channel_applies_exec_options(
        self, ssh_client: MagicMock, config: ConnectConfig
    ) -> None:
        conn = SSHConnection(config)
        conn.acquire()
        session = ssh_client.return_value.get_transport.return_value.open_session.return_value

        channel = conn.open_channel("ls", ExecOptions(pty=True, env={"A": "1"}))

        assert channel is session
        session.update_environment.assert_called_once_with({"A": "1"})
        session.get_pty.assert_called_once_with(term="vt100")
        session.exec_command.assert_called_once_with("ls")

    def test_open_channel_without_pty(self, ssh_client: MagicMock, config: ConnectConfig) -> None:
        conn = SSHConnection(config)
        conn.acquire()
        session = ssh_client.return_value.get_transport.return_value.open_session.return_value
        conn.open_channel("ls")
        session.get_pty.assert_not_called()

    def test_refused_channel(self, ssh_client: MagicMock, config: ConnectConfig) -> None:
        conn = SSHConnection(config)
        conn.acquire()
        transport = ssh_client.return_value.get_transport.return_value
        transport.open_session.side_effect = paramiko.ChannelException(1, "refused")
        with pytest.raises(ChannelFailureError):
            conn.open_channel("ls")
