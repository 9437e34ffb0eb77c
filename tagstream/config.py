"""
Configuration management for tagstream.

Nested dataclass sections persisted as JSON at ~/.tagstream/config.json.
Unknown keys are ignored on load so older files keep working.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

DEFAULT_CONFIG_PATH = Path.home() / ".tagstream" / "config.json"


def _filter_dataclass_fields(data: dict[str, Any], cls: type) -> dict[str, Any]:
    """Filter dict to only include fields that exist in the dataclass."""
    valid_fields = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in valid_fields}


@dataclass
class ChatConfig:
    """
    Chat behaviour.

    Modes:
    - "build": Model output is applied to the codebase
    - "ask": Read-only, no corrective loops and no apply
    - "agent": Tool-enabled planning pass before the build pass
    """

    chat_mode: Literal["build", "ask", "agent"] = "build"
    auto_approve_changes: bool = True
    max_chat_turns_in_context: int = 5
    app_base_dir: str = "~/tagstream-apps"


@dataclass
class CorrectionConfig:
    """Bounded repair loops run after the primary stream. Attempt limits above 2 are capped."""

    enable_turbo_edits_v2: bool = False
    enable_auto_fix_problems: bool = False
    max_continuation_attempts: int = 2
    max_search_replace_fix_attempts: int = 2
    max_auto_fix_attempts: int = 2


@dataclass
class PersistenceConfig:
    """Where chats live and how often partial text is flushed."""

    persist_throttle_ms: int = 150
    store_dir: str = "~/.tagstream/chats"


@dataclass
class GitConfig:
    """Commit author and message prefix."""

    author_name: str = "tagstream"
    author_email: str = "tagstream@localhost"
    commit_prefix: str = "tagstream"


@dataclass
class SupabaseConfig:
    """Supabase Management API access."""

    enable_write_sql_migration: bool = False
    access_token_env: str = "SUPABASE_ACCESS_TOKEN"
    api_base: str = "https://api.supabase.com"
    timeout_seconds: float = 60.0


@dataclass
class ModelConfig:
    """Model selection and sampling."""

    model: str = "sonnet"
    max_tokens: int = 8192
    # 0.0-0.3 = deterministic, 0.4-0.7 = balanced, 0.8-1.0 = creative
    temperature: float = 0.0
    thinking_budget: int | None = None


@dataclass
class TagstreamConfig:
    """Complete tagstream configuration."""

    chat: ChatConfig = field(default_factory=ChatConfig)
    correction: CorrectionConfig = field(default_factory=CorrectionConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    git: GitConfig = field(default_factory=GitConfig)
    supabase: SupabaseConfig = field(default_factory=SupabaseConfig)
    models: ModelConfig = field(default_factory=ModelConfig)

    @property
    def read_only(self) -> bool:
        return self.chat.chat_mode == "ask"

    @classmethod
    def load(cls, path: Path | None = None) -> "TagstreamConfig":
        """Load configuration from file, then apply TAGSTREAM_* env overrides."""
        if path is None:
            path = DEFAULT_CONFIG_PATH

        data: dict[str, Any] = {}
        if path.exists():
            with open(path) as f:
                data = json.load(f)

        config = cls(
            chat=ChatConfig(**_filter_dataclass_fields(data.get("chat", {}), ChatConfig)),
            correction=CorrectionConfig(
                **_filter_dataclass_fields(data.get("correction", {}), CorrectionConfig)
            ),
            persistence=PersistenceConfig(
                **_filter_dataclass_fields(data.get("persistence", {}), PersistenceConfig)
            ),
            git=GitConfig(**_filter_dataclass_fields(data.get("git", {}), GitConfig)),
            supabase=SupabaseConfig(**_filter_dataclass_fields(data.get("supabase", {}), SupabaseConfig)),
            models=ModelConfig(**_filter_dataclass_fields(data.get("models", {}), ModelConfig)),
        )
        config.apply_env_overrides()
        return config

    def apply_env_overrides(self) -> None:
        """Environment variables win over the file."""
        if "TAGSTREAM_CHAT_MODE" in os.environ:
            self.chat.chat_mode = os.environ["TAGSTREAM_CHAT_MODE"]  # type: ignore[assignment]
        if "TAGSTREAM_MODEL" in os.environ:
            self.models.model = os.environ["TAGSTREAM_MODEL"]
        if "TAGSTREAM_STORE_DIR" in os.environ:
            self.persistence.store_dir = os.environ["TAGSTREAM_STORE_DIR"]
        if "TAGSTREAM_AUTO_APPROVE" in os.environ:
            self.chat.auto_approve_changes = os.environ["TAGSTREAM_AUTO_APPROVE"].lower() == "true"

    def save(self, path: Path | None = None) -> None:
        """Save configuration to file."""
        if path is None:
            path = DEFAULT_CONFIG_PATH

        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            json.dump(
                {
                    "chat": asdict(self.chat),
                    "correction": asdict(self.correction),
                    "persistence": asdict(self.persistence),
                    "git": asdict(self.git),
                    "supabase": asdict(self.supabase),
                    "models": asdict(self.models),
                },
                f,
                indent=2,
            )


__all__ = [
    "ChatConfig",
    "CorrectionConfig",
    "DEFAULT_CONFIG_PATH",
    "GitConfig",
    "ModelConfig",
    "PersistenceConfig",
    "SupabaseConfig",
    "TagstreamConfig",
]
