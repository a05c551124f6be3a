"""Interactive shell driving over a PTY channel.

:class:`ShellChannel` wraps a paramiko channel with a
:class:`~sshbridge.stream.PromptDetector` and exposes its traffic as a
blocking iterator of :class:`~sshbridge.stream.ShellEvent` values.
:class:`ShellDriver` consumes those events as a small state machine that
feeds queued commands to the shell, one per observed prompt.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Iterable, Iterator, Mapping, Union

import paramiko

from sshbridge.errors import ChannelFailureError, CommandFailureError, InvalidArgumentError
from sshbridge.stream import PromptDetector, ShellEvent, ShellEventType

logger = logging.getLogger(__name__)

READ_SIZE = 32 * 1024
# Wait between polls when neither stream has data yet.
POLL_INTERVAL = 0.05

OutputListener = Callable[[str, str], None]


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Command:
    """A queued shell command.  Only ``output=True`` commands are captured."""

    cmd: str
    output: bool = False


CommandLike = Union[str, Command, Mapping[str, Any]]


def to_command(item: CommandLike) -> Command:
    """Normalise a bare string, a :class:`Command` or a ``{"cmd", "output"}`` mapping."""
    if isinstance(item, Command):
        return item
    if isinstance(item, str):
        return Command(item)
    if isinstance(item, Mapping) and isinstance(item.get("cmd"), str):
        return Command(item["cmd"], bool(item.get("output", False)))
    raise InvalidArgumentError(f"Invalid shell command: {item!r}")


# ---------------------------------------------------------------------------
# ShellChannel
# ---------------------------------------------------------------------------


class ShellChannel:
    """A paramiko channel viewed as a stream of shell events.

    Stdout passes through the prompt detector; stderr is forwarded as-is.
    When *password* is set, the first password request is answered with it.
    """

    def __init__(
        self,
        channel: paramiko.Channel,
        password: str | None = None,
        on_output: OutputListener | None = None,
    ) -> None:
        self._channel = channel
        self._detector = PromptDetector()
        self._password = password
        self._password_sent = False
        self._on_output = on_output
        self._eof = False
        self.closed = False

    @property
    def channel(self) -> paramiko.Channel:
        return self._channel

    def write(self, text: str) -> None:
        """Send *text* to the remote side."""
        self._channel.sendall(text.encode("utf-8"))

    def end(self) -> None:
        """Signal EOF on our side of the channel (no more input)."""
        self._channel.shutdown_write()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._channel.close()

    def answer_password(self) -> bool:
        """Write the configured credential once.  Returns True if it was sent."""
        if self._password is None or self._password_sent:
            return False
        self._password_sent = True
        self.write(f"{self._password}\n")
        logger.debug("Answered sudo password request")
        return True

    def _emit(self, stream: str, text: str) -> None:
        if self._on_output is None:
            return
        try:
            self._on_output(stream, text)
        except Exception:
            logger.exception("Exception in output listener")

    def _drain_stderr(self) -> Iterator[ShellEvent]:
        while self._channel.recv_stderr_ready():
            data = self._channel.recv_stderr(READ_SIZE)
            if not data:
                break
            text = data.decode("utf-8", errors="replace")
            self._emit("stderr", text)
            yield ShellEvent(ShellEventType.DATA, text=text, stream="stderr")

    def _stdout_events(self, events: list[ShellEvent]) -> Iterator[ShellEvent]:
        for event in events:
            if event.type is ShellEventType.DATA:
                self._emit("stdout", event.text)
            yield event

    def _stdout_readable(self) -> bool:
        """True if a stdout read returns without blocking (data or end of stream)."""
        channel = self._channel
        return channel.recv_ready() or bool(channel.eof_received) or bool(channel.closed)

    def events(self) -> Iterator[ShellEvent]:
        """Yield events until the channel closes; CLOSED or ERRORED is always last.

        stdout is only read once it is readable, so a command flooding stderr
        keeps being drained and never stalls on a full channel window.
        """
        while not self.closed and not self._eof:
            yield from self._drain_stderr()
            try:
                if not self._stdout_readable():
                    time.sleep(POLL_INTERVAL)
                    continue
                data = self._channel.recv(READ_SIZE)
            except (paramiko.SSHException, OSError) as exc:
                logger.warning("Channel read failed: %s", exc)
                yield ShellEvent(ShellEventType.ERRORED, error=exc)
                return
            if not data:
                break
            yield from self._stdout_events(self._detector.feed(data))

        self._eof = True
        yield from self._stdout_events(self._detector.flush())
        yield from self._drain_stderr()
        yield ShellEvent(ShellEventType.CLOSED, exit_status=self._channel.recv_exit_status())


# ---------------------------------------------------------------------------
# ShellDriver
# ---------------------------------------------------------------------------


class DriverState(Enum):
    """States of :class:`ShellDriver`."""

    AWAITING_PROMPT = auto()
    DISPATCHING = auto()
    CLOSED = auto()


class ShellDriver:
    """Run a queue of commands against one shell channel.

    A command is written only after a prompt has been observed, so commands
    run strictly one at a time in queue order.  Output between dispatching a
    capturing command and the next prompt is recorded; everything else is
    observed for prompts and password requests, then discarded.  When the
    queue is empty at a prompt the channel is closed.
    """

    def __init__(self, channel: ShellChannel, commands: Iterable[CommandLike]) -> None:
        self._channel = channel
        self._queue: deque[Command] = deque(to_command(c) for c in commands)
        self._recording = False
        self._stdout: list[str] = []
        self._stderr: list[str] = []
        self.state = DriverState.AWAITING_PROMPT

    @property
    def recording(self) -> bool:
        return self._recording

    def run(self) -> str:
        """Drive the channel to completion.

        Returns:
            The trimmed, concatenated stdout of every capturing command.

        Raises:
            CommandFailureError: If any capturing command wrote to stderr.
            ChannelFailureError: If the channel errored mid-session.
        """
        for event in self._channel.events():
            self.handle(event)
            if self.state is DriverState.CLOSED:
                break
        return self.result()

    def handle(self, event: ShellEvent) -> None:
        """Advance the state machine by one event."""
        if event.type is ShellEventType.PROMPT:
            self._dispatch()
        elif event.type is ShellEventType.PASSWORD_REQUESTED:
            self._channel.answer_password()
        elif event.type is ShellEventType.DATA:
            if self._recording:
                target = self._stderr if event.stream == "stderr" else self._stdout
                target.append(event.text)
        elif event.type is ShellEventType.CLOSED:
            self.state = DriverState.CLOSED
        elif event.type is ShellEventType.ERRORED:
            self.state = DriverState.CLOSED
            raise ChannelFailureError(f"Shell channel failed: {event.error}") from event.error

    def _dispatch(self) -> None:
        self.state = DriverState.DISPATCHING
        self._recording = False

        if not self._queue:
            logger.debug("Command queue empty — closing shell channel")
            self._channel.close()
            self.state = DriverState.CLOSED
            return

        command = self._queue.popleft()
        self._recording = command.output
        logger.debug("Command: %s", command.cmd)
        self._channel.write(f"{command.cmd}\n")
        self.state = DriverState.AWAITING_PROMPT

    def result(self) -> str:
        if self._stderr:
            raise CommandFailureError("".join(self._stderr).strip())
        return "".join(self._stdout).strip()


def run_commands(
    channel: ShellChannel,
    commands: Iterable[CommandLike],
) -> str:
    """Convenience wrapper: drive *commands* through *channel* and return the output."""
    return ShellDriver(channel, commands).run()
