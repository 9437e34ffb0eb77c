"""
Model clients.
"""

from .client import (
    AnthropicModelClient,
    LLMError,
    ModelClient,
    OpenAIModelClient,
    Provider,
    ToolExecutor,
    ToolSpec,
    create_model_client,
    resolve_model,
)

__all__ = [
    "AnthropicModelClient",
    "LLMError",
    "ModelClient",
    "OpenAIModelClient",
    "Provider",
    "ToolExecutor",
    "ToolSpec",
    "create_model_client",
    "resolve_model",
]
