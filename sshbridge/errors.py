"""Exception taxonomy for sshbridge.

Every error raised by the library derives from :class:`SSHBridgeError`.
Where a built-in exception type describes the same condition, the library
error subclasses it too so callers can keep catching ``FileNotFoundError``
or ``ValueError``.
"""

from __future__ import annotations

import errno

import paramiko

# Message paramiko attaches to SFTP_NO_SUCH_FILE status responses.
_NO_SUCH_FILE = "No such file"


class SSHBridgeError(Exception):
    """Base class for all sshbridge errors."""


class NotConnectedError(SSHBridgeError):
    """Raised when an operation is attempted without an active connection."""


class InvalidArgumentError(SSHBridgeError, ValueError):
    """Raised eagerly, before any I/O, when an option is malformed."""


class LocalNotFoundError(SSHBridgeError, FileNotFoundError):
    """Raised when a local file or directory does not exist."""


class RemoteMissingAncestorError(SSHBridgeError, FileNotFoundError):
    """Raised when a remote operation fails because a parent directory is missing."""


class RemoteNotADirectoryError(SSHBridgeError, NotADirectoryError):
    """Raised when a remote path exists but is not a directory."""


class ChannelFailureError(SSHBridgeError):
    """Raised when the transport refuses to open a channel."""


class CommandFailureError(SSHBridgeError):
    """Raised when a command run in simple-output mode writes to stderr."""

    def __init__(self, stderr: str) -> None:
        super().__init__(stderr)
        self.stderr = stderr


class PartialTransferError(SSHBridgeError):
    """Raised by ``put_files`` when a file fails.

    ``transferred`` lists the ``(local, remote)`` pairs uploaded before the
    failing window, so the caller can resume from there.  The original error
    is chained as ``__cause__``.
    """

    def __init__(self, message: str, transferred: list[tuple[str, str]]) -> None:
        super().__init__(message)
        self.transferred = transferred


class UnknownHostError(SSHBridgeError):
    """Raised when the remote host key is not in known_hosts.

    Carries the fingerprint and key so the caller can confirm with the user
    and save it via :func:`sshbridge.connection.accept_host_key`.
    """

    def __init__(
        self,
        message: str,
        hostname: str = "",
        key_type: str = "",
        fingerprint: str = "",
        key: paramiko.PKey | None = None,
    ) -> None:
        super().__init__(message)
        self.hostname = hostname
        self.key_type = key_type
        self.fingerprint = fingerprint
        self.key = key


def is_missing_ancestor(exc: BaseException) -> bool:
    """Return True if *exc* is the "no such file" signal of an SFTP server.

    Both ``errno.ENOENT`` and the bare ``"No such file"`` message are
    accepted; servers differ in which one they populate.
    """
    if isinstance(exc, RemoteMissingAncestorError):
        return True
    if not isinstance(exc, OSError):
        return False
    if exc.errno == errno.ENOENT:
        return True
    return str(exc) == _NO_SUCH_FILE or exc.strerror == _NO_SUCH_FILE
