from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    data_dir: Path = Field(default=Path("./data"))
    log_level: str = Field(default="INFO")


class LLMProviderConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["openai_compatible", "ollama"] = "openai_compatible"
    base_url: str | None = None
    api_key_env: str | None = None


class ChatEndpointConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    provider: str
    model: str
    temperature: float = 0.3
    timeout_s: int = 120
    retries: int = 2
    max_tokens: int | None = None

    @field_validator("temperature")
    @classmethod
    def _temperature_range(cls, value: float) -> float:
        if not 0 <= value <= 2:
            raise ValueError("temperature must be between 0 and 2")
        return value

    @field_validator("timeout_s", "retries")
    @classmethod
    def _non_negative_int(cls, value: int) -> int:
        if value < 0:
            raise ValueError("endpoint integer settings must be non-negative")
        return value

    @field_validator("max_tokens")
    @classmethod
    def _positive_optional_max_tokens(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError("max_tokens must be positive when provided")
        return value


class LLMRoutesConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    memory_chat: str = "memory_default"


class LLMConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    providers: dict[str, LLMProviderConfig]
    chat_endpoints: dict[str, ChatEndpointConfig]
    routes: LLMRoutesConfig = LLMRoutesConfig()

    @model_validator(mode="after")
    def _validate_references(self) -> "LLMConfig":
        if not self.providers:
            raise ValueError("llm.providers cannot be empty")
        if not self.chat_endpoints:
            raise ValueError("llm.chat_endpoints cannot be empty")

        for endpoint_name, endpoint in self.chat_endpoints.items():
            if endpoint.provider not in self.providers:
                raise ValueError(
                    f"chat endpoint '{endpoint_name}' references unknown provider '{endpoint.provider}'"
                )

        if self.routes.memory_chat not in self.chat_endpoints:
            raise ValueError(f"llm.routes.memory_chat not found: {self.routes.memory_chat}")

        return self

    def resolve_chat_route(self) -> tuple[str, ChatEndpointConfig, LLMProviderConfig]:
        endpoint_name = self.routes.memory_chat
        endpoint = self.chat_endpoints[endpoint_name]
        provider = self.providers[endpoint.provider]
        return endpoint_name, endpoint, provider


class MemoryConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Staleness gate for re-summarization on chapter save.
    min_content_chars: int = 500
    staleness_threshold: float = 0.2

    # Deterministic fallback bounds.
    recent_summaries: int = 3
    max_facts: int = 20
    max_worldbuilding: int = 10
    max_open_questions: int = 5
    max_unresolved_setups: int = 5
    max_emotional_beats: int = 5

    # Inventory trimming for the retrieve-context prompt.
    inventory_summary_chars: int = 100
    inventory_max_facts: int = 10
    inventory_max_worldbuilding: int = 10

    @field_validator("min_content_chars")
    @classmethod
    def _non_negative_chars(cls, value: int) -> int:
        if value < 0:
            raise ValueError("min_content_chars must be non-negative")
        return value

    @field_validator("staleness_threshold")
    @classmethod
    def _threshold_range(cls, value: float) -> float:
        if not 0 <= value <= 1:
            raise ValueError("staleness_threshold must be between 0 and 1")
        return value

    @field_validator(
        "recent_summaries",
        "max_facts",
        "max_worldbuilding",
        "max_open_questions",
        "max_unresolved_setups",
        "max_emotional_beats",
        "inventory_summary_chars",
        "inventory_max_facts",
        "inventory_max_worldbuilding",
    )
    @classmethod
    def _non_negative_limit(cls, value: int) -> int:
        if value < 0:
            raise ValueError("memory limits must be non-negative")
        return value


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    sqlite_path: Path = Field(default=Path("./data/story_memory.db"))


class ObservabilityConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    log_json_error_payload: bool = True
    json_error_payload_max_chars: int = 0
    log_retry_attempts: bool = True

    @field_validator("json_error_payload_max_chars")
    @classmethod
    def _non_negative_chars(cls, value: int) -> int:
        if value < 0:
            raise ValueError("json_error_payload_max_chars must be non-negative")
        return value


def default_llm_config() -> LLMConfig:
    return LLMConfig.model_validate(
        {
            "providers": {
                "default": {
                    "kind": "openai_compatible",
                    "base_url": None,
                    "api_key_env": "OPENAI_API_KEY",
                }
            },
            "chat_endpoints": {
                "memory_default": {
                    "provider": "default",
                    "model": "gpt-4.1-mini",
                    "temperature": 0.2,
                    "timeout_s": 120,
                    "retries": 2,
                },
            },
            "routes": {
                "memory_chat": "memory_default",
            },
        }
    )


class AppConfigRoot(BaseModel):
    model_config = ConfigDict(extra="forbid")

    app: AppConfig = AppConfig()
    llm: LLMConfig = Field(default_factory=default_llm_config)
    memory: MemoryConfig = MemoryConfig()
    storage: StorageConfig = StorageConfig()
    observability: ObservabilityConfig = ObservabilityConfig()


def resolve_paths(config: AppConfigRoot, base_dir: Path) -> AppConfigRoot:
    def _resolve(path_value: Path) -> Path:
        return path_value if path_value.is_absolute() else (base_dir / path_value).resolve()

    config.app.data_dir = _resolve(config.app.data_dir)
    config.storage.sqlite_path = _resolve(config.storage.sqlite_path)
    return config
