"""
Stream events and the chunk processor.
"""

from .chunk_processor import (
    ChunkResult,
    ThinkingState,
    continue_text_only,
    process_stream_chunks,
    render_tool_block,
    transition,
)
from .events import (
    ReasoningDelta,
    StreamEvent,
    TextDelta,
    ToolCall,
    ToolResult,
    parse_mcp_tool_key,
)

__all__ = [
    "ChunkResult",
    "ReasoningDelta",
    "StreamEvent",
    "TextDelta",
    "ThinkingState",
    "ToolCall",
    "ToolResult",
    "continue_text_only",
    "parse_mcp_tool_key",
    "process_stream_chunks",
    "render_tool_block",
    "transition",
]
