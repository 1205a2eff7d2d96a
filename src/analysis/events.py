"""Incremental Server-Sent-Events decoder for the Dify streaming response."""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterable, Callable
from dataclasses import replace
from typing import Any

import httpx

from src.analysis.models import (
    AnswerEvent,
    DoneEvent,
    ErrorEvent,
    MessageEndEvent,
    ProviderEvent,
    StreamEvent,
    StreamState,
)

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

_ANSWER_EVENTS = {"message", "agent_message"}

EventCallback = Callable[[StreamEvent], None]


def feed(state: StreamState, text: str) -> tuple[StreamState, list[str]]:
    """Append decoded text to the buffer and split off every complete line.

    The trailing partial line (if any) stays in the returned state's buffer.
    """
    lines = (state.buffer + text).split("\n")
    rest = lines.pop()
    return replace(state, buffer=rest), [line.rstrip("\r") for line in lines]


def event_from_payload(payload: dict[str, Any]) -> StreamEvent:
    """Build the typed event for a decoded provider payload."""
    name = str(payload.get("event", ""))
    task_id = payload.get("task_id") or None

    if name in _ANSWER_EVENTS:
        return AnswerEvent(answer=payload.get("answer") or "", task_id=task_id, event=name)
    if name == "message_end":
        return MessageEndEvent(metadata=payload.get("metadata") or {}, task_id=task_id)
    if name == "error":
        status = payload.get("status")
        return ErrorEvent(
            message=str(payload.get("message") or "Provider reported an error"),
            status=status if isinstance(status, int) else None,
            code=payload.get("code"),
            task_id=task_id,
        )
    if name == "done":
        return DoneEvent(task_id=task_id)
    return ProviderEvent(event=name, payload=payload, task_id=task_id)


def parse_data_line(line: str) -> StreamEvent | None:
    """Decode one SSE line.

    Returns None for non-``data:`` lines, blank payloads and malformed JSON
    (the latter is logged).
    """
    if not line.startswith(DATA_PREFIX):
        return None
    data = line[len(DATA_PREFIX) :].strip()
    if not data:
        return None
    if data == DONE_SENTINEL:
        return DoneEvent()

    try:
        payload = json.loads(data)
    except json.JSONDecodeError as exc:
        logger.warning("Skipping malformed SSE payload (%s): %.100s", exc, data)
        return None
    if not isinstance(payload, dict):
        logger.warning("Skipping non-object SSE payload: %.100s", data)
        return None
    return event_from_payload(payload)


def _process_lines(
    state: StreamState, lines: list[str], on_event: EventCallback
) -> StreamState:
    for line in lines:
        event = parse_data_line(line)
        if event is None:
            continue

        if state.task_id is None and event.task_id:
            state = replace(state, task_id=event.task_id)
            logger.info("Observed provider task id %s", state.task_id)

        if isinstance(event, DoneEvent):
            on_event(DoneEvent(task_id=state.task_id))
            return replace(state, done=True)
        on_event(event)
    return state


async def decode_stream(
    chunks: AsyncIterable[bytes],
    on_event: EventCallback,
    state: StreamState | None = None,
) -> StreamState:
    """Drain a byte stream, invoking ``on_event`` for every decoded event in order.

    Exactly one ``DoneEvent`` is delivered: either for the ``[DONE]`` sentinel
    (reading stops there) or when the stream ends. A transport error while
    reading produces a single ``ErrorEvent`` instead. Bytes after the last
    newline are discarded at end of stream.
    """
    state = state or StreamState()
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    try:
        async for chunk in chunks:
            state, lines = feed(state, decoder.decode(chunk))
            state = _process_lines(state, lines, on_event)
            if state.done:
                return state
    except httpx.TimeoutException as exc:
        logger.error("Timed out reading analysis stream (task %s): %s", state.task_id, exc)
        on_event(ErrorEvent(message="Timed out waiting for the analysis stream", task_id=state.task_id))
        return state
    except (httpx.HTTPError, httpx.StreamError) as exc:
        logger.error("Analysis stream failed (task %s): %s", state.task_id, exc)
        on_event(ErrorEvent(message=f"Error reading analysis stream: {exc}", task_id=state.task_id))
        return state

    state, lines = feed(state, decoder.decode(b"", final=True))
    state = _process_lines(state, lines, on_event)
    if state.done:
        return state

    if state.buffer.strip():
        logger.warning("Discarding %d undelimited bytes at end of stream", len(state.buffer))
    on_event(DoneEvent(task_id=state.task_id))
    return replace(state, buffer="", done=True)
