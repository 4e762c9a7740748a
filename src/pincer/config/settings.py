"""
config/settings.py — Pincer Runtime Settings

Merges config.yaml (structure/defaults) with environment variables and .env
(endpoints, secrets). Pydantic-powered — every field is validated and typed.

  - Per-section field validators reject out-of-range values at parse time
  - validate_all() performs cross-field startup validation and raises
    ConfigError listing every problem found
  - load_settings() respects the PINCER_CONFIG env var when no explicit
    config_path argument is given
  - to_agent_config() / to_context_config() build the immutable runtime
    configs consumed by AgentLoop and ContextManager
"""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Any, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from pincer.agent.types import AgentConfig
from pincer.context.types import CompressionStrategy, ContextConfig, ModelProfile, RoutingPriority


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_APPROVAL_MODES = {"auto", "deny", "prompt"}


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class AgentSettings(BaseModel):
    name: str = "Pincer"
    model: str = "ollama/llama3.1:8b"
    temperature: float = 0.7
    max_tool_calls: int = 5
    max_turns: int = 10
    timeout_ms: int = 120_000
    allow_dangerous_tools: bool = False
    require_approval: bool = True
    max_compaction_retries: int = 1
    session_id: str = "default"

    @field_validator("temperature")
    @classmethod
    def _valid_temperature(cls, v: float) -> float:
        if not (0.0 <= v <= 2.0):
            raise ValueError("agent.temperature must be between 0.0 and 2.0")
        return v

    @field_validator("max_tool_calls", "max_turns")
    @classmethod
    def _positive_limits(cls, v: int) -> int:
        if v < 1:
            raise ValueError("agent.max_tool_calls and agent.max_turns must be >= 1")
        return v

    @field_validator("timeout_ms")
    @classmethod
    def _positive_timeout(cls, v: int) -> int:
        if v < 1:
            raise ValueError("agent.timeout_ms must be >= 1")
        return v


class ContextSettings(BaseModel):
    max_context_tokens: int = 8192
    reserved_tokens: int = 1000
    compression_strategy: CompressionStrategy = CompressionStrategy.HYBRID
    keep_first_last: bool = True
    max_messages_to_keep: int = 20
    summary_max_tokens: int = 256

    @field_validator("max_context_tokens")
    @classmethod
    def _positive_context(cls, v: int) -> int:
        if v < 1:
            raise ValueError("context.max_context_tokens must be >= 1")
        return v

    @field_validator("reserved_tokens")
    @classmethod
    def _non_negative_reserved(cls, v: int) -> int:
        if v < 0:
            raise ValueError("context.reserved_tokens must be >= 0")
        return v


class PlannerSettings(BaseModel):
    enabled: bool = True
    max_steps: int = 6
    length_ratio: float = 0.55

    @field_validator("max_steps")
    @classmethod
    def _positive_steps(cls, v: int) -> int:
        if v < 1:
            raise ValueError("planner.max_steps must be >= 1")
        return v

    @field_validator("length_ratio")
    @classmethod
    def _valid_ratio(cls, v: float) -> float:
        if not (0.0 < v <= 1.0):
            raise ValueError("planner.length_ratio must be in (0.0, 1.0]")
        return v


class SteeringSettings(BaseModel):
    processed_grace_seconds: float = 1.0


class ToolSettings(BaseModel):
    workspace_root: str = "./data/workspace"
    approval_mode: str = "prompt"
    approval_timeout_seconds: float = 120.0
    timeout_seconds: float = 30.0
    max_result_chars: int = 8_000

    @field_validator("approval_mode")
    @classmethod
    def _known_mode(cls, v: str) -> str:
        if v not in _VALID_APPROVAL_MODES:
            raise ValueError(
                f"tools.approval_mode must be one of {sorted(_VALID_APPROVAL_MODES)}, got '{v}'"
            )
        return v


class RoutingSettings(BaseModel):
    priority: RoutingPriority = RoutingPriority.LOCAL
    context_safety_margin: float = 0.2
    extra_models: List[ModelProfile] = Field(default_factory=list)

    @field_validator("context_safety_margin")
    @classmethod
    def _valid_margin(cls, v: float) -> float:
        if not (0.0 <= v < 1.0):
            raise ValueError("routing.context_safety_margin must be in [0.0, 1.0)")
        return v


class MemorySettings(BaseModel):
    enabled: bool = True
    store_dir: str = ""
    search_limit: int = 5
    min_relevance: float = 1.0

    @field_validator("search_limit")
    @classmethod
    def _clamp_limit(cls, v: int) -> int:
        return max(1, min(v, 20))


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 100
    backup_count: int = 5
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    Pincer runtime settings.

    Priority (highest to lowest):
      1. Environment variables
      2. .env file
      3. config.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    # -- Endpoints / secrets from the environment ----------------------------
    ollama_base_url: str = Field(default="http://localhost:11434", alias="OLLAMA_BASE_URL")
    deepseek_api_key: Optional[str] = Field(default=None, alias="DEEPSEEK_API_KEY")
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")

    # -- Structured config (from config.yaml) --------------------------------
    agent: AgentSettings = Field(default_factory=AgentSettings)
    context: ContextSettings = Field(default_factory=ContextSettings)
    planner: PlannerSettings = Field(default_factory=PlannerSettings)
    steering: SteeringSettings = Field(default_factory=SteeringSettings)
    tools: ToolSettings = Field(default_factory=ToolSettings)
    routing: RoutingSettings = Field(default_factory=RoutingSettings)
    memory: MemorySettings = Field(default_factory=MemorySettings)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # -- Convenience properties ----------------------------------------------

    @property
    def ollama_base_url_v1(self) -> str:
        return self.ollama_base_url.rstrip("/") + "/v1"

    @property
    def workspace_root(self) -> Path:
        return Path(self.tools.workspace_root).expanduser()

    @property
    def log_level(self) -> str:
        return self.logging.level

    def to_agent_config(self) -> AgentConfig:
        """Snapshot the agent + context sections as an immutable AgentConfig."""
        a = self.agent
        return AgentConfig(
            model=a.model,
            temperature=a.temperature,
            max_tool_calls=a.max_tool_calls,
            max_turns=a.max_turns,
            timeout_ms=a.timeout_ms,
            allow_dangerous_tools=a.allow_dangerous_tools,
            require_approval=a.require_approval,
            max_context_tokens=self.context.max_context_tokens,
            reserved_tokens=self.context.reserved_tokens,
            compression_strategy=self.context.compression_strategy,
            max_compaction_retries=a.max_compaction_retries,
        )

    def to_context_config(self) -> ContextConfig:
        c = self.context
        return ContextConfig(
            max_context_tokens=c.max_context_tokens,
            reserved_tokens=c.reserved_tokens,
            compression_strategy=c.compression_strategy,
            keep_first_last=c.keep_first_last,
            max_messages_to_keep=c.max_messages_to_keep,
            summary_max_tokens=c.summary_max_tokens,
        )

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Field validators catch type/value errors at parse time; this method
        catches cross-field problems Pydantic can't see on a single field.
        """
        errors: list[str] = []

        # ── Token budget leaves room for history ─────────────────────────────
        if self.context.reserved_tokens >= self.context.max_context_tokens:
            errors.append(
                f"context.reserved_tokens ({self.context.reserved_tokens}) must be "
                f"smaller than context.max_context_tokens "
                f"({self.context.max_context_tokens})."
            )

        # ── Summary fits inside the budget ───────────────────────────────────
        budget = self.context.max_context_tokens - self.context.reserved_tokens
        if self.context.summary_max_tokens > budget > 0:
            errors.append(
                f"context.summary_max_tokens ({self.context.summary_max_tokens}) "
                f"exceeds the usable history budget ({budget})."
            )

        # ── Workspace root must be a directory if it exists ──────────────────
        root = self.workspace_root
        if root.exists() and not root.is_dir():
            errors.append(f"tools.workspace_root '{root}' exists but is not a directory.")

        # ── Memory store dir ─────────────────────────────────────────────────
        if self.memory.store_dir:
            store = Path(self.memory.store_dir).expanduser()
            if store.exists() and not store.is_dir():
                errors.append(f"memory.store_dir '{store}' exists but is not a directory.")

        # ── Cloud models need their keys ─────────────────────────────────────
        model = self.agent.model
        if model.startswith("deepseek/") and not self.deepseek_api_key:
            errors.append(f"agent.model '{model}' requires DEEPSEEK_API_KEY to be set.")
        if model.startswith("openai-codex/") and not self.openai_api_key:
            errors.append(f"agent.model '{model}' requires OPENAI_API_KEY to be set.")

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nPincer startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your environment "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_KNOWN_SECTIONS = {
    "agent", "context", "planner", "steering",
    "tools", "routing", "memory", "logging",
}

_singleton: Optional[Settings] = None
_singleton_lock = threading.Lock()


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. PINCER_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("PINCER_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with the environment."""
    global _singleton
    yaml_data = _load_yaml(_resolve_config_path(config_path))
    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading the default config on
    first use. Guarded by a lock so concurrent first calls load once.
    """
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is not None:
            return _singleton
    return load_settings()


def reset_settings() -> None:
    """Drop the cached singleton (tests, config reload)."""
    global _singleton
    with _singleton_lock:
        _singleton = None
