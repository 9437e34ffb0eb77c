"""
Chunk processor: fold a provider event stream into response text.

Reasoning is wrapped in <think> markers by a two-state machine; tool traffic is
rendered as <dyad-mcp-tool-call>/<dyad-mcp-tool-result> blocks with their
payloads escaped so they can never forge control tags.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Callable

from ..session_registry import CancellationToken
from ..xml_escape import clean_full_response, escape_dyad_tags, escape_xml_attr
from .events import ReasoningDelta, StreamEvent, TextDelta, ToolCall, ToolResult, parse_mcp_tool_key

logger = logging.getLogger(__name__)

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"

OnUpdate = Callable[[str], Awaitable[None]]


class ThinkingState(Enum):
    NORMAL = "normal"
    IN_THINKING = "in_thinking"


@dataclass
class ChunkResult:
    """Text accumulated by one pass over a stream."""

    full_response: str
    incremental_response: str
    cancelled: bool = False


def _encode_payload(payload: Any) -> str:
    if isinstance(payload, str):
        return escape_dyad_tags(payload)
    return escape_dyad_tags(json.dumps(payload, ensure_ascii=False))


def render_tool_block(tag: str, tool_key: str, payload: Any) -> str:
    """Render a tool call or result as a tagged block."""
    server, tool = parse_mcp_tool_key(tool_key)
    content = _encode_payload(payload)
    return f'<{tag} server="{escape_xml_attr(server)}" tool="{escape_xml_attr(tool)}">\n{content}\n</{tag}>\n'


def transition(state: ThinkingState, event: StreamEvent) -> tuple[ThinkingState, str]:
    """
    Advance the thinking state machine by one event.

    Returns the new state and the text to append. Any non-reasoning event seen
    while thinking closes the block before its own output.
    """
    if isinstance(event, ReasoningDelta):
        prefix = THINK_OPEN if state is ThinkingState.NORMAL else ""
        return ThinkingState.IN_THINKING, prefix + escape_dyad_tags(event.text)

    prefix = THINK_CLOSE if state is ThinkingState.IN_THINKING else ""
    if isinstance(event, TextDelta):
        body = event.text
    elif isinstance(event, ToolCall):
        body = render_tool_block("dyad-mcp-tool-call", event.tool_name, event.input)
    elif isinstance(event, ToolResult):
        body = render_tool_block("dyad-mcp-tool-result", event.tool_name, event.output)
    else:
        body = ""
    return ThinkingState.NORMAL, prefix + body


async def _next_event(iterator: AsyncIterator[StreamEvent]) -> StreamEvent | None:
    return await anext(iterator, None)


async def events_until_cancelled(
    stream: AsyncIterable[StreamEvent],
    token: CancellationToken,
) -> AsyncIterator[StreamEvent]:
    """
    Yield stream events until the stream ends or token is cancelled.

    Each wait for the next event races the token, so a cancel from another
    task stops a stalled provider and drops any event that arrives with it.
    The underlying stream is closed on exit.
    """
    iterator = aiter(stream)
    cancel_wait = asyncio.create_task(token.wait())
    next_event: asyncio.Task | None = None
    try:
        while not token.cancelled:
            next_event = asyncio.create_task(_next_event(iterator))
            await asyncio.wait({next_event, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
            if token.cancelled:
                return
            event = next_event.result()
            if event is None:
                return
            yield event
    finally:
        cancel_wait.cancel()
        if next_event is not None and not next_event.done():
            next_event.cancel()
            # The provider must unwind before its stream can be closed.
            await asyncio.wait({next_event})
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


async def process_stream_chunks(
    stream: AsyncIterable[StreamEvent],
    full_response: str,
    token: CancellationToken,
    on_update: OnUpdate,
    chat_id: int | None = None,
) -> ChunkResult:
    """
    Consume stream, appending rendered output to full_response.

    on_update receives the normalized full text after every non-empty chunk.
    The token is checked before every event is applied; once cancelled the
    stream is closed without closing an open thinking block. Exceptions raised
    by the stream propagate unchanged.
    """
    state = ThinkingState.NORMAL
    incremental = ""

    async with aclosing(events_until_cancelled(stream, token)) as events:
        async for event in events:
            if token.cancelled:
                break
            state, chunk = transition(state, event)
            if chunk:
                full_response += chunk
                incremental += chunk
                full_response = clean_full_response(full_response)
                await on_update(full_response)

    if token.cancelled:
        logger.info(f"Stream for chat {chat_id} was aborted")
    return ChunkResult(full_response, incremental, cancelled=token.cancelled)


async def continue_text_only(
    stream: AsyncIterable[StreamEvent],
    full_response: str,
    token: CancellationToken,
    on_update: OnUpdate,
    chat_id: int | None = None,
) -> ChunkResult:
    """Like process_stream_chunks but only TextDelta events are appended."""
    incremental = ""

    async with aclosing(events_until_cancelled(stream, token)) as events:
        async for event in events:
            if token.cancelled:
                break
            if isinstance(event, TextDelta) and event.text:
                full_response += event.text
                incremental += event.text
                full_response = clean_full_response(full_response)
                await on_update(full_response)

    if token.cancelled:
        logger.info(f"Continuation for chat {chat_id} was aborted")
    return ChunkResult(full_response, incremental, cancelled=token.cancelled)


__all__ = [
    "ChunkResult",
    "OnUpdate",
    "THINK_CLOSE",
    "THINK_OPEN",
    "ThinkingState",
    "continue_text_only",
    "events_until_cancelled",
    "process_stream_chunks",
    "render_tool_block",
    "transition",
]
