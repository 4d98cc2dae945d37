"""
Streaming frame handling for the generation backend.

The backend answers with newline-delimited ``data: <json>`` lines ending in
``data: [DONE]``. Two payload dialects are accepted side by side:

* delta style: ``message_start`` / ``content_block_delta`` / ``message_delta``
* choice-list style: ``choices[0].delta.content`` plus a trailing ``usage``

Each dialect is one interpreter ``frame -> list[TextFragment | UsageUpdate]``;
``FRAME_INTERPRETERS`` is tried in order and the first non-empty result wins.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Union

DONE_SENTINEL = "[DONE]"
_DATA_PREFIX = "data:"


@dataclass(slots=True, frozen=True)
class TextFragment:
    text: str


@dataclass(slots=True, frozen=True)
class UsageUpdate:
    input_tokens: int | None = None
    output_tokens: int | None = None


FrameEvent = Union[TextFragment, UsageUpdate]
FrameInterpreter = Callable[[dict[str, Any]], list[FrameEvent]]


def _as_token_count(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def interpret_delta_frame(frame: dict[str, Any]) -> list[FrameEvent]:
    frame_type = frame.get("type")
    delta = frame.get("delta")

    if frame_type == "content_block_delta" or (not frame_type and isinstance(delta, dict)):
        if isinstance(delta, dict) and isinstance(delta.get("text"), str) and delta["text"]:
            return [TextFragment(delta["text"])]
        return []

    if frame_type == "message_start":
        message = frame.get("message")
        usage = message.get("usage") if isinstance(message, dict) else None
        if isinstance(usage, dict):
            input_tokens = _as_token_count(usage.get("input_tokens"))
            if input_tokens is not None:
                return [UsageUpdate(input_tokens=input_tokens)]
        return []

    if frame_type == "message_delta":
        usage = frame.get("usage")
        if isinstance(usage, dict):
            output_tokens = _as_token_count(usage.get("output_tokens"))
            if output_tokens is not None:
                return [UsageUpdate(output_tokens=output_tokens)]
    return []


def interpret_choice_frame(frame: dict[str, Any]) -> list[FrameEvent]:
    events: list[FrameEvent] = []

    choices = frame.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        delta = choices[0].get("delta")
        if isinstance(delta, dict):
            content = delta.get("content")
            if isinstance(content, str) and content:
                events.append(TextFragment(content))

    usage = frame.get("usage")
    if isinstance(usage, dict):
        prompt_tokens = _as_token_count(usage.get("prompt_tokens"))
        completion_tokens = _as_token_count(usage.get("completion_tokens"))
        if prompt_tokens is not None or completion_tokens is not None:
            events.append(UsageUpdate(input_tokens=prompt_tokens, output_tokens=completion_tokens))
    return events


FRAME_INTERPRETERS: tuple[FrameInterpreter, ...] = (
    interpret_delta_frame,
    interpret_choice_frame,
)


def interpret_frame(
    frame: dict[str, Any],
    interpreters: tuple[FrameInterpreter, ...] = FRAME_INTERPRETERS,
) -> list[FrameEvent]:
    for interpreter in interpreters:
        events = interpreter(frame)
        if events:
            return events
    return []


def extract_frame_payload(line: str) -> str | None:
    """Return the JSON text carried by one stream line, or None for noise."""

    stripped = line.strip()
    if not stripped:
        return None
    if stripped.startswith(_DATA_PREFIX):
        return stripped[len(_DATA_PREFIX):].strip()
    # 兼容不带 data: 前缀的 NDJSON 行；event:/id:/注释行忽略
    if stripped.startswith("{"):
        return stripped
    return None


def decode_frame(payload: str) -> dict[str, Any] | None:
    if not payload or payload == DONE_SENTINEL:
        return None
    try:
        frame = json.loads(payload)
    except (ValueError, RecursionError):
        # 超长整数、过深嵌套同样按噪声行丢弃
        return None
    if not isinstance(frame, dict):
        return None
    return frame


class StreamAccumulator:
    """Append-only text plus last-seen usage counters for one stream."""

    def __init__(self, interpreters: tuple[FrameInterpreter, ...] = FRAME_INTERPRETERS) -> None:
        self._interpreters = interpreters
        self._parts: list[str] = []
        self.input_tokens: int | None = None
        self.output_tokens: int | None = None
        self.done = False
        self.frames_seen = 0

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def consume_line(self, line: str) -> None:
        if self.done:
            return
        payload = extract_frame_payload(line)
        if payload is None:
            return
        if payload == DONE_SENTINEL:
            self.done = True
            return
        frame = decode_frame(payload)
        if frame is None:
            return
        self.frames_seen += 1
        for event in interpret_frame(frame, self._interpreters):
            self._apply(event)

    def _apply(self, event: FrameEvent) -> None:
        if isinstance(event, TextFragment):
            self._parts.append(event.text)
            return
        if event.input_tokens is not None:
            self.input_tokens = event.input_tokens
        if event.output_tokens is not None:
            self.output_tokens = event.output_tokens
