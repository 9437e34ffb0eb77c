"""tagstream: streaming and code-mutation pipeline for an AI pair programmer.

A model streams a response containing XML-like action tags. tagstream renders
the stream live, repairs malformed output with bounded retries, and applies the
finished response to the app's working tree under git.

Layers:
- Stream: session registry, chunk processor, model clients
- Repair: continuation, search-replace and auto-fix loops
- Apply: file mutations, dependencies, SQL, edge-function deploys, commit
"""

__version__ = "0.1.0"

# Stream layer
from .session_registry import CancellationToken, SessionRegistry
from .stream import ChunkResult, ReasoningDelta, StreamEvent, TextDelta, ToolCall, ToolResult, process_stream_chunks
from .llm import LLMError, ModelClient, create_model_client

# Tags
from .tags import Tag
from .tag_parser import RegexTagLexer, TagLexer, default_lexer

# Repair layer
from .corrective import CorrectionContext, CorrectionOutcome, CorrectiveLoopController
from .analysis import ProblemReport, SyntaxProblemChecker

# Apply layer
from .mutation import DefaultActionAdapters, MutationApplyEngine, MutationResult

# Pipeline, storage & config
from .pipeline import ChatStreamPipeline, EndEvent, ErrorEvent, ChunkEvent, RecordingSink, StreamOutcome
from .store import JsonChatStore
from .config import TagstreamConfig
from .types import (
    AdapterError,
    ChatMode,
    GitError,
    OutcomeKind,
    SessionAlreadyActiveError,
    TagstreamError,
)

__all__ = [
    # Stream
    "CancellationToken",
    "SessionRegistry",
    "ChunkResult",
    "ReasoningDelta",
    "StreamEvent",
    "TextDelta",
    "ToolCall",
    "ToolResult",
    "process_stream_chunks",
    "LLMError",
    "ModelClient",
    "create_model_client",
    # Tags
    "Tag",
    "RegexTagLexer",
    "TagLexer",
    "default_lexer",
    # Repair
    "CorrectionContext",
    "CorrectionOutcome",
    "CorrectiveLoopController",
    "ProblemReport",
    "SyntaxProblemChecker",
    # Apply
    "DefaultActionAdapters",
    "MutationApplyEngine",
    "MutationResult",
    # Pipeline, storage & config
    "ChatStreamPipeline",
    "ChunkEvent",
    "EndEvent",
    "ErrorEvent",
    "RecordingSink",
    "StreamOutcome",
    "JsonChatStore",
    "TagstreamConfig",
    # Errors & enums
    "AdapterError",
    "ChatMode",
    "GitError",
    "OutcomeKind",
    "SessionAlreadyActiveError",
    "TagstreamError",
]
