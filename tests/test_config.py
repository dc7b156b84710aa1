from __future__ import annotations

from pathlib import Path
import textwrap

import pytest
from pydantic import ValidationError

from story_memory.config.loader import load_config, masked_env_snapshot
from story_memory.config.schema import AppConfigRoot, ChatEndpointConfig, LLMConfig, MemoryConfig, resolve_paths


def test_resolve_paths_makes_absolute(tmp_path: Path) -> None:
    config = AppConfigRoot()
    config.app.data_dir = Path("data")
    config.storage.sqlite_path = Path("data/story.db")

    resolved = resolve_paths(config, tmp_path)

    assert resolved.app.data_dir == (tmp_path / "data").resolve()
    assert resolved.storage.sqlite_path == (tmp_path / "data/story.db").resolve()


def test_memory_defaults_match_continuity_rules() -> None:
    memory = AppConfigRoot().memory

    assert memory.min_content_chars == 500
    assert memory.staleness_threshold == 0.2
    assert (memory.recent_summaries, memory.max_facts, memory.max_worldbuilding) == (3, 20, 10)
    assert (memory.max_open_questions, memory.max_unresolved_setups) == (5, 5)


def test_memory_config_validates_ranges() -> None:
    with pytest.raises(ValidationError):
        MemoryConfig(staleness_threshold=1.5)

    with pytest.raises(ValidationError):
        MemoryConfig(max_facts=-1)

    with pytest.raises(ValidationError):
        AppConfigRoot.model_validate({"memory": {"unknown_knob": 1}})


def test_chat_endpoint_validates_temperature() -> None:
    with pytest.raises(ValidationError):
        ChatEndpointConfig(provider="p", model="m", temperature=2.5)


def test_llm_config_validates_references() -> None:
    with pytest.raises(ValidationError):
        LLMConfig.model_validate(
            {
                "providers": {"p1": {"kind": "openai_compatible", "base_url": "https://x", "api_key_env": "KEY"}},
                "chat_endpoints": {"memory_default": {"provider": "missing_provider", "model": "m"}},
                "routes": {"memory_chat": "memory_default"},
            }
        )

    with pytest.raises(ValidationError):
        LLMConfig.model_validate(
            {
                "providers": {"p1": {"kind": "openai_compatible"}},
                "chat_endpoints": {"memory_default": {"provider": "p1", "model": "m"}},
                "routes": {"memory_chat": "memory_fast"},
            }
        )


def test_default_route_resolves() -> None:
    endpoint_name, endpoint, provider = AppConfigRoot().llm.resolve_chat_route()

    assert endpoint_name == "memory_default"
    assert endpoint.retries == 2
    assert provider.api_key_env == "OPENAI_API_KEY"


def test_load_config_merge_order(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    configs_dir = tmp_path / "configs"
    profiles_dir = configs_dir / "profiles"
    profiles_dir.mkdir(parents=True)

    (configs_dir / "default.yaml").write_text(
        textwrap.dedent(
            """
            app:
              data_dir: "./data-default"
              log_level: "INFO"
            llm:
              providers:
                openai:
                  kind: "openai_compatible"
                  base_url: "https://default-llm.example/v1"
                  api_key_env: "OPENAI_API_KEY"
              chat_endpoints:
                memory_default:
                  provider: "openai"
                  model: "gpt-default"
              routes:
                memory_chat: "memory_default"
            memory:
              staleness_threshold: 0.2
              max_facts: 20
            """
        ).strip(),
        encoding="utf-8",
    )
    (profiles_dir / "strict.yaml").write_text(
        textwrap.dedent(
            """
            llm:
              chat_endpoints:
                memory_default:
                  model: "gpt-profile"
            memory:
              staleness_threshold: 0.1
            """
        ).strip(),
        encoding="utf-8",
    )
    (configs_dir / "custom.yaml").write_text(
        textwrap.dedent(
            """
            app:
              log_level: "DEBUG"
            memory:
              max_facts: 12
            """
        ).strip(),
        encoding="utf-8",
    )

    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("STORY_MEMORY_DATA_DIR", str(tmp_path / "env-data"))
    monkeypatch.setenv("STORY_MEMORY_DB_PATH", "env-db/memory.db")
    monkeypatch.setenv("STORY_MEMORY_MODEL", "gpt-env")
    monkeypatch.delenv("STORY_MEMORY_LOG_LEVEL", raising=False)

    config = load_config(
        config_path=configs_dir / "custom.yaml",
        profile="strict",
        overrides={"memory": {"max_facts": 8}},
    )

    assert config.app.data_dir == (tmp_path / "env-data").resolve()
    assert config.app.log_level == "DEBUG"
    assert config.llm.chat_endpoints["memory_default"].model == "gpt-env"
    assert config.llm.providers["openai"].base_url == "https://default-llm.example/v1"
    assert config.storage.sqlite_path == (tmp_path / "env-db/memory.db").resolve()
    assert config.memory.staleness_threshold == 0.1
    assert config.memory.max_facts == 8

    snapshot = masked_env_snapshot(config)
    assert snapshot["STORY_MEMORY_MODEL"] == "gpt-env"
    assert snapshot["llm.routes.memory_chat"] == "memory_default (openai/gpt-env)"
    assert snapshot["llm.providers.openai.base_url"] == "https://default-llm.example/v1"


def test_missing_profile_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(profile="nope", base_dir=tmp_path)


def test_api_keys_are_masked(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-very-secret")

    snapshot = masked_env_snapshot(AppConfigRoot())

    assert snapshot["OPENAI_API_KEY"] == "***"


def test_observability_config_defaults_and_validation() -> None:
    config = AppConfigRoot()
    assert config.observability.log_json_error_payload is True
    assert config.observability.json_error_payload_max_chars == 0
    assert config.observability.log_retry_attempts is True

    with pytest.raises(ValidationError):
        AppConfigRoot.model_validate({"observability": {"json_error_payload_max_chars": -1}})


def test_model_env_follows_memory_route_and_dotenv(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    configs_dir = tmp_path / "configs"
    configs_dir.mkdir()
    (configs_dir / "default.yaml").write_text(
        textwrap.dedent(
            """
            llm:
              providers:
                local:
                  kind: "ollama"
                  base_url: "http://localhost:11434/v1"
              chat_endpoints:
                memory_default:
                  provider: "local"
                  model: "qwen-small"
                memory_large:
                  provider: "local"
                  model: "qwen-large"
              routes:
                memory_chat: "memory_large"
            """
        ).strip(),
        encoding="utf-8",
    )
    (tmp_path / ".env").write_text('# local overrides\nSTORY_MEMORY_MODEL="qwen-tuned"\n', encoding="utf-8")
    # Registered first so the value loaded from .env is undone on teardown.
    monkeypatch.setenv("STORY_MEMORY_MODEL", "unused")
    monkeypatch.delenv("STORY_MEMORY_MODEL")

    config = load_config(base_dir=tmp_path)

    assert config.llm.chat_endpoints["memory_large"].model == "qwen-tuned"
    assert config.llm.chat_endpoints["memory_default"].model == "qwen-small"


def test_model_env_without_llm_section_uses_builtin_route(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STORY_MEMORY_MODEL", "gpt-env")
    monkeypatch.setenv("STORY_MEMORY_LOG_LEVEL", "WARNING")

    config = load_config(base_dir=tmp_path)

    assert config.llm.chat_endpoints["memory_default"].model == "gpt-env"
    assert config.app.log_level == "WARNING"
