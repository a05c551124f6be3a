"""Prompt-detecting transformer for remote pseudo-terminal output.

A PTY gives us one unframed byte stream in which shell prompts and sudo
password requests are mixed with ordinary command output.  The
:class:`PromptDetector` splits every chunk on ``\\r\\n`` boundaries,
classifies each piece, and turns the stream into a sequence of typed
:class:`ShellEvent` values that a single-threaded driver can consume.
"""

from __future__ import annotations

import codecs
import logging
import re
from dataclasses import dataclass
from enum import Enum, auto

logger = logging.getLogger(__name__)

# Line separator emitted by a PTY; kept as its own piece by the split.
LINE_TERMINATOR = "\r\n"

_SPLIT_RE = re.compile(r"(\r\n)")
_PASSWORD_RE = re.compile(r"\[sudo\] password for.*")
_PROMPT_SUFFIX = "$ "


class ShellEventType(Enum):
    """Kinds of event produced from a shell channel."""

    PROMPT = auto()
    PASSWORD_REQUESTED = auto()
    DATA = auto()
    CLOSED = auto()
    ERRORED = auto()


@dataclass(frozen=True)
class ShellEvent:
    """One event read from a wrapped channel.

    ``stream`` is ``"stdout"`` or ``"stderr"`` for DATA events.  CLOSED
    carries the exit status when known; ERRORED carries the exception.
    """

    type: ShellEventType
    text: str = ""
    stream: str = "stdout"
    exit_status: int | None = None
    error: BaseException | None = None


PROMPT = ShellEvent(ShellEventType.PROMPT)
PASSWORD_REQUESTED = ShellEvent(ShellEventType.PASSWORD_REQUESTED)


def is_password_request(piece: str) -> bool:
    """True if *piece* is a sudo password prompt line.

    Any line beginning with ``[sudo] password for`` qualifies, whatever
    command produced it.
    """
    return _PASSWORD_RE.fullmatch(piece) is not None


def is_prompt(piece: str) -> bool:
    """True if *piece* ends with the shell prompt marker ``"$ "``."""
    return piece.endswith(_PROMPT_SUFFIX)


class PromptDetector:
    """Stateful stdout transformer for one channel.

    Feed decoded or raw chunks with :meth:`feed`; the returned events are in
    stream order.  After a password request the next bare ``\\r\\n`` piece is
    swallowed once, since it is the echo of the newline that follows the
    credential.  A genuine blank line arriving at that moment is
    indistinguishable and is dropped too.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self.ignore_chunk: str | None = None

    def feed(self, chunk: bytes | str) -> list[ShellEvent]:
        """Classify *chunk* and return the resulting events."""
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)

        events: list[ShellEvent] = []
        for piece in _SPLIT_RE.split(chunk):
            if not piece:
                continue
            if is_password_request(piece):
                logger.debug("Password request detected: %r", piece)
                events.append(PASSWORD_REQUESTED)
                self.ignore_chunk = LINE_TERMINATOR
            elif is_prompt(piece):
                events.append(PROMPT)
            elif self.ignore_chunk == piece:
                self.ignore_chunk = None
            else:
                events.append(ShellEvent(ShellEventType.DATA, text=piece))
        return events

    def flush(self) -> list[ShellEvent]:
        """Emit whatever the decoder still buffers (an incomplete sequence)."""
        tail = self._decoder.decode(b"", final=True)
        return self.feed(tail) if tail else []
