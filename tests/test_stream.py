"""Tests for sshbridge/stream.py — PromptDetector."""

from __future__ import annotations

import pytest

from sshbridge.stream import (
    PromptDetector,
    ShellEventType,
    is_password_request,
    is_prompt,
)


@pytest.fixture()
def detector() -> PromptDetector:
    return PromptDetector()


def _types(events) -> list[ShellEventType]:
    return [e.type for e in events]


def _text(events) -> str:
    return "".join(e.text for e in events if e.type is ShellEventType.DATA)


class TestClassifiers:
    def test_password_request_matches_any_user(self) -> None:
        assert is_password_request("[sudo] password for alice:")
        assert is_password_request("[sudo] password for deploy: ")

    def test_password_request_must_start_the_piece(self) -> None:
        assert not is_password_request("note: [sudo] password for alice:")

    def test_prompt_requires_trailing_dollar_space(self) -> None:
        assert is_prompt("user@host:~$ ")
        assert not is_prompt("user@host:~$")
        assert not is_prompt("costs 5$")


class TestFeed:
    def test_plain_output_is_forwarded_unchanged(self, detector: PromptDetector) -> None:
        events = detector.feed(b"hello\r\nworld\r\n")
        assert _types(events) == [ShellEventType.DATA] * 4
        assert _text(events) == "hello\r\nworld\r\n"

    def test_prompt_emits_event_and_is_not_forwarded(self, detector: PromptDetector) -> None:
        events = detector.feed(b"output\r\nuser@host:~$ ")
        assert _types(events) == [
            ShellEventType.DATA,
            ShellEventType.DATA,
            ShellEventType.PROMPT,
        ]
        assert "$" not in _text(events)

    def test_password_line_is_swallowed_with_following_newline(
        self, detector: PromptDetector
    ) -> None:
        events = detector.feed(b"[sudo] password for alice:")
        assert _types(events) == [ShellEventType.PASSWORD_REQUESTED]
        assert detector.ignore_chunk == "\r\n"

        events = detector.feed(b"\r\nresult\r\n")
        assert _text(events) == "result\r\n"
        assert detector.ignore_chunk is None

    def test_only_one_newline_is_swallowed(self, detector: PromptDetector) -> None:
        detector.feed(b"[sudo] password for alice:")
        events = detector.feed(b"\r\n\r\n")
        assert _text(events) == "\r\n"

    def test_str_chunks_are_accepted(self, detector: PromptDetector) -> None:
        events = detector.feed("abc")
        assert _text(events) == "abc"

    def test_split_multibyte_sequence_is_reassembled(self, detector: PromptDetector) -> None:
        data = "héllo".encode("utf-8")
        first = detector.feed(data[:2])
        second = detector.feed(data[2:])
        assert _text(first) + _text(second) == "héllo"

    def test_empty_chunk_yields_nothing(self, detector: PromptDetector) -> None:
        assert detector.feed(b"") == []
        assert detector.flush() == []
