"""High-level SSH session: command execution, shells and file transfer.

:class:`SSHSession` is the public entry point.  It shares one reference-
counted :class:`~sshbridge.connection.SSHConnection` between any number of
logical users and layers retrying, bulk and interactive operations on top
of plain channels and SFTP handles.
"""

from __future__ import annotations

import base64
import logging
import shlex
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Literal, Sequence, Union

import paramiko

from sshbridge.config import (
    DEFAULT_MAX_AT_ONCE,
    SHELL_EXEC_OPTIONS,
    ConnectConfig,
    ExecCommandOptions,
    ExecOptions,
    PutDirectoryOptions,
    RunOptions,
    TransferOptions,
)
from sshbridge.connection import SSHConnection, StateChangeCallback
from sshbridge.errors import (
    ChannelFailureError,
    CommandFailureError,
    InvalidArgumentError,
    NotConnectedError,
)
from sshbridge.shell import CommandLike, OutputListener, ShellChannel, ShellDriver, to_command
from sshbridge.stream import ShellEventType
from sshbridge.transfer import (
    LocalRemotePair,
    SFTPTransfer,
    check_directory_arguments,
    check_file_arguments,
    check_max_at_once,
    to_pairs,
)
from sshbridge.utils.path_helpers import validate_remote_path

logger = logging.getLogger(__name__)

_SHELL_COMMAND = " stty -echo; bash"
_SUDO_SHELL_COMMAND = " stty -echo; sudo -i"


@dataclass
class ExecResult:
    """Outcome of one command: trimmed output plus exit code/signal as reported."""

    stdout: str
    stderr: str
    code: int | None
    signal: str | None = None


class SSHSession:
    """A shareable SSH session.

    Every :meth:`connect` takes a reference on the underlying connection and
    every :meth:`dispose` drops one; the connection closes at zero.

    Example::

        session = SSHSession(ConnectConfig(host="10.0.0.5", username="deploy"))
        with session:
            session.put_directory("build", "/srv/app")
            print(session.exec("ls", ["-la", "/srv/app"]))
    """

    def __init__(
        self,
        config: ConnectConfig | None = None,
        connection: SSHConnection | None = None,
        on_state_change: StateChangeCallback | None = None,
    ) -> None:
        """Wrap *connection*, or a new one built from *config*.

        *on_state_change* receives every ConnectionState transition of a new
        connection, with an optional message.
        """
        self._connection = connection or SSHConnection(config, on_state_change)
        self._sudo_password: str | None = None
        self._sudo_user: str | None = None
        self._listeners: list[OutputListener] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def connect(self, config: ConnectConfig | None = None) -> "SSHSession":
        """Take a reference on the connection, connecting if none is active."""
        self._connection.acquire(config)
        return self

    def dispose(self) -> None:
        """Drop a reference; the connection closes when none remain."""
        self._connection.release()

    def __enter__(self) -> "SSHSession":
        return self.connect()

    def __exit__(self, *_: object) -> None:
        self.dispose()

    @property
    def connection(self) -> SSHConnection:
        return self._connection

    @property
    def is_connected(self) -> bool:
        return self._connection.is_connected

    def _require_connection(self) -> None:
        if not self._connection.is_connected:
            raise NotConnectedError("Not connected to server")

    # ------------------------------------------------------------------
    # Sudo mode
    # ------------------------------------------------------------------

    @property
    def sudo_mode_enabled(self) -> bool:
        return self._sudo_password is not None

    def enable_sudo_mode(self, password: str, user: str | None = None) -> None:
        """Answer sudo password prompts with *password*; run as *user* (root if None)."""
        if not isinstance(password, str):
            raise InvalidArgumentError("sudo password must be a string")
        self._sudo_password = password
        self._sudo_user = user

    def disable_sudo_mode(self) -> None:
        self._sudo_password = None
        self._sudo_user = None

    def _sudo_target(self) -> str:
        return f" -u {shlex.quote(self._sudo_user)}" if self._sudo_user else ""

    # ------------------------------------------------------------------
    # Output hooks
    # ------------------------------------------------------------------

    def add_output_listener(self, listener: OutputListener) -> None:
        """Receive ``(stream_name, text)`` for all output of wrapped channels."""
        self._listeners.append(listener)

    def remove_output_listener(self, listener: OutputListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit_output(self, stream: str, text: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(stream, text)
            except Exception:
                logger.exception("Exception in output listener")

    def open_channel(
        self,
        command: str,
        exec_options: ExecOptions | None = None,
    ) -> paramiko.Channel:
        """Start *command* on a raw exec channel; the caller owns it."""
        self._require_connection()
        return self._connection.open_channel(command, exec_options)

    def _wrap(self, channel: paramiko.Channel, password: str | None = None) -> ShellChannel:
        return ShellChannel(channel, password=password, on_output=self._emit_output)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def exec_command(
        self,
        command: str,
        options: ExecCommandOptions | None = None,
    ) -> ExecResult:
        """Run *command* on a new channel and collect its output.

        The exit code is reported verbatim; a non-zero code is not an error.

        Raises:
            NotConnectedError: If not connected.
            InvalidArgumentError: On malformed options.
            ChannelFailureError: If the channel cannot be opened or fails.
        """
        options = options or ExecCommandOptions()
        if not isinstance(command, str) or not command:
            raise InvalidArgumentError("command must be a non-empty string")
        options.validate()
        self._require_connection()

        if options.cwd:
            # Hide "no such directory" noise from cd
            command = f"cd {shlex.quote(options.cwd)} 1> /dev/null 2> /dev/null; {command}"

        password = self._sudo_password if options.use_sudo else None
        channel = self._wrap(self._connection.open_channel(command, options.exec_options), password)

        if options.stdin:
            channel.write(options.stdin)
            channel.end()

        stdout: list[str] = []
        stderr: list[str] = []
        code: int | None = None
        try:
            for event in channel.events():
                if event.type is ShellEventType.PASSWORD_REQUESTED:
                    channel.answer_password()
                elif event.type is ShellEventType.DATA:
                    (stderr if event.stream == "stderr" else stdout).append(event.text)
                elif event.type is ShellEventType.CLOSED:
                    code = event.exit_status
                elif event.type is ShellEventType.ERRORED:
                    logger.error("exec_command(%r) failed: %s", command, event.error)
                    raise ChannelFailureError(str(event.error)) from event.error
        finally:
            channel.close()

        return ExecResult(
            stdout="".join(stdout).strip(),
            stderr="".join(stderr).strip(),
            code=code,
        )

    def exec(
        self,
        command: str,
        parameters: Sequence[str] = (),
        options: RunOptions | None = None,
    ) -> Union[str, ExecResult]:
        """Run *command* with shell-escaped *parameters*.

        Returns stdout by default (raising :class:`CommandFailureError` if
        anything reached stderr), stderr for ``stream="stderr"`` or the full
        :class:`ExecResult` for ``stream="both"``.
        """
        options = options or RunOptions()
        options.validate()
        if isinstance(parameters, str) or not all(isinstance(p, str) for p in parameters):
            raise InvalidArgumentError("parameters must be a list of strings")

        full_command = " ".join([command, *(shlex.quote(p) for p in parameters)])
        output = self.exec_command(full_command, options.to_command_options())

        if options.stream == "stdout":
            if output.stderr:
                raise CommandFailureError(output.stderr)
            return output.stdout
        if options.stream == "stderr":
            return output.stderr
        return output

    def exec_sudo_command(self, command: str) -> ExecResult:
        """Run *command* through ``sudo -i`` when sudo mode is on, else plainly.

        The command travels base64-encoded so no quoting survives into the
        sudo shell.
        """
        if not self.sudo_mode_enabled:
            return self.exec_command(command)

        encoded = base64.b64encode(command.encode("utf-8")).decode("ascii")
        return self.exec_command(
            f"echo '{encoded}' | base64 -d | sudo -i{self._sudo_target()} bash",
            ExecCommandOptions(use_sudo=True, exec_options=ExecOptions(pty=True)),
        )

    # ------------------------------------------------------------------
    # Shells
    # ------------------------------------------------------------------

    def shell(self) -> ShellChannel:
        """Open an interactive bash on a PTY with echo disabled."""
        self._require_connection()
        return self._wrap(self._connection.open_channel(_SHELL_COMMAND, SHELL_EXEC_OPTIONS))

    def sudo_shell(self) -> ShellChannel:
        """Open a login shell through sudo, answering its password prompt.

        Falls back to :meth:`shell` when sudo mode is not enabled.
        """
        if not self.sudo_mode_enabled:
            return self.shell()
        self._require_connection()
        channel = self._connection.open_channel(
            _SUDO_SHELL_COMMAND + self._sudo_target(), SHELL_EXEC_OPTIONS
        )
        return self._wrap(channel, password=self._sudo_password)

    def run_commands_in_shell(
        self,
        commands: Iterable[CommandLike],
        sudo: bool = False,
    ) -> str:
        """Feed *commands* to one shell, a prompt at a time.

        Returns:
            Trimmed stdout of the commands marked ``output=True``.

        Raises:
            CommandFailureError: If a captured command wrote to stderr.
        """
        queue = [to_command(c) for c in commands]
        channel = self.sudo_shell() if sudo else self.shell()
        try:
            return ShellDriver(channel, queue).run()
        finally:
            channel.close()

    # ------------------------------------------------------------------
    # SFTP
    # ------------------------------------------------------------------

    def request_sftp(self) -> paramiko.SFTPClient:
        """Open a new SFTP handle; the caller must close it."""
        self._require_connection()
        return self._connection.open_sftp()

    @contextmanager
    def _sftp_scope(self, sftp: paramiko.SFTPClient | None) -> Iterator[paramiko.SFTPClient]:
        """Yield *sftp*, or a fresh handle that is closed afterwards."""
        self._require_connection()
        if sftp is not None:
            yield sftp
            return
        handle = self.request_sftp()
        try:
            yield handle
        finally:
            handle.close()

    def mkdir(
        self,
        path: str,
        method: Literal["sftp", "exec"] = "sftp",
        sftp: paramiko.SFTPClient | None = None,
    ) -> None:
        """Create *path* (and missing parents) on the remote host.

        ``"exec"`` runs ``mkdir -p``; ``"sftp"`` uses the SFTP protocol.
        """
        if method not in ("sftp", "exec"):
            raise InvalidArgumentError("method should either be sftp or exec")
        if method == "exec":
            self.exec("mkdir", ["-p", path])
            return
        if not validate_remote_path(path):
            raise InvalidArgumentError(f"Invalid remote path: {path!r}")
        with self._sftp_scope(sftp) as handle:
            SFTPTransfer(handle).mkdir(path)

    def get_file(
        self,
        local_file: str,
        remote_file: str,
        sftp: paramiko.SFTPClient | None = None,
        opts: TransferOptions | None = None,
    ) -> None:
        check_file_arguments(local_file, remote_file, local_must_exist=False)
        with self._sftp_scope(sftp) as handle:
            SFTPTransfer(handle, opts).get_file(local_file, remote_file)

    def put_file(
        self,
        local_file: str,
        remote_file: str,
        sftp: paramiko.SFTPClient | None = None,
        opts: TransferOptions | None = None,
    ) -> None:
        check_file_arguments(local_file, remote_file)
        with self._sftp_scope(sftp) as handle:
            SFTPTransfer(handle, opts).put_file(local_file, remote_file)

    def put_files(
        self,
        files: Iterable[Any],
        sftp: paramiko.SFTPClient | None = None,
        max_at_once: int = DEFAULT_MAX_AT_ONCE,
        opts: TransferOptions | None = None,
    ) -> list[LocalRemotePair]:
        """Upload ``(local, remote)`` pairs, *max_at_once* at a time.

        Raises:
            PartialTransferError: Carries the pairs already transferred.
        """
        check_max_at_once(max_at_once)
        pairs = to_pairs(files)
        with self._sftp_scope(sftp) as handle:
            return SFTPTransfer(handle, opts).put_files(pairs, max_at_once)

    def put_directory(
        self,
        local_directory: str,
        remote_directory: str,
        options: PutDirectoryOptions | None = None,
        sftp: paramiko.SFTPClient | None = None,
        opts: TransferOptions | None = None,
        max_at_once: int = DEFAULT_MAX_AT_ONCE,
    ) -> bool:
        """Mirror a local tree onto the remote host.

        Individual file failures do not raise: they are reported through
        ``options.tick`` and make the result False.
        """
        options = check_directory_arguments(
            local_directory, remote_directory, options, max_at_once
        )
        with self._sftp_scope(sftp) as handle:
            return SFTPTransfer(handle, opts).put_directory(
                local_directory, remote_directory, options, max_at_once
            )
