"""Configuration loading and schema."""

from story_memory.config.loader import load_config
from story_memory.config.schema import AppConfig, AppConfigRoot, MemoryConfig

__all__ = ["AppConfig", "AppConfigRoot", "MemoryConfig", "load_config"]
