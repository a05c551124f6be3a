"""sshbridge — retrying, bulk and interactive operations over SSH/SFTP."""

from __future__ import annotations

import logging

from sshbridge.config import (
    ConnectConfig,
    ExecCommandOptions,
    ExecOptions,
    ProfileStore,
    PutDirectoryOptions,
    RunOptions,
    TransferOptions,
    delete_password,
    store_password,
)
from sshbridge.connection import ConnectionState, SSHConnection, accept_host_key
from sshbridge.errors import (
    ChannelFailureError,
    CommandFailureError,
    InvalidArgumentError,
    LocalNotFoundError,
    NotConnectedError,
    PartialTransferError,
    RemoteMissingAncestorError,
    RemoteNotADirectoryError,
    SSHBridgeError,
    UnknownHostError,
)
from sshbridge.session import ExecResult, SSHSession
from sshbridge.shell import Command, ShellChannel, ShellDriver
from sshbridge.transfer import LocalRemotePair, SFTPTransfer

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "ChannelFailureError",
    "Command",
    "CommandFailureError",
    "ConnectConfig",
    "ConnectionState",
    "ExecCommandOptions",
    "ExecOptions",
    "ExecResult",
    "InvalidArgumentError",
    "LocalNotFoundError",
    "LocalRemotePair",
    "NotConnectedError",
    "PartialTransferError",
    "ProfileStore",
    "PutDirectoryOptions",
    "RemoteMissingAncestorError",
    "RemoteNotADirectoryError",
    "RunOptions",
    "SFTPTransfer",
    "SSHBridgeError",
    "SSHConnection",
    "SSHSession",
    "ShellChannel",
    "ShellDriver",
    "TransferOptions",
    "UnknownHostError",
    "accept_host_key",
    "delete_password",
    "store_password",
]
