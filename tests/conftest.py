"""Shared fixtures: fake HTTP responses, scripted transports and input readers."""

import json
import logging
from unittest.mock import MagicMock

import pytest

from hey import SessionConfig


def fake_response(status=200, body=None, lines=None, text=None):
    """A stand-in for requests.Response covering what the transport touches."""
    resp = MagicMock()
    resp.status_code = status
    resp.ok = status < 400
    if body is not None:
        resp.json.return_value = body
        resp.text = json.dumps(body)
    else:
        resp.json.side_effect = ValueError("not json")
        resp.text = text or ""
    resp.iter_lines.return_value = lines if lines is not None else iter([])
    return resp


def sse(*bodies):
    """Encode dicts as SSE data lines the way requests.iter_lines yields them."""
    lines = []
    for body in bodies:
        lines.append(f"data: {json.dumps(body)}".encode())
        lines.append(b"")
    return lines


def candidate(text):
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


class ScriptedTransport:
    """Replays canned replies; an Exception in the script is raised instead."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.payloads = []

    def _next(self, payload):
        self.payloads.append(payload)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def send_sync(self, payload):
        return self._next(payload)

    def send_stream(self, payload, on_fragment=None):
        reply = self._next(payload)
        if on_fragment is not None:
            on_fragment(reply)
        return reply


def reader(*lines):
    """read_line replacement: yields the given lines, then end of input."""
    it = iter(lines)

    def read_line(prompt):
        try:
            return next(it)
        except StopIteration:
            raise EOFError

    return read_line


@pytest.fixture
def chat_config(tmp_path):
    return SessionConfig(api_key="test-key", model="gemini-test", chat=True,
                         chats_dir=tmp_path / "chats", user_name="alice")


@pytest.fixture(autouse=True)
def _reset_warning_capture():
    yield
    logging.captureWarnings(False)
