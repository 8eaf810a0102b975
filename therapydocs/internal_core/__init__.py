from .config import AppConfig, ConfigurationError, load_config, validate_config
from .draft_store import InMemoryDraftStore, JsonDirectoryDraftStore

__all__ = [
    "AppConfig",
    "ConfigurationError",
    "load_config",
    "validate_config",
    "InMemoryDraftStore",
    "JsonDirectoryDraftStore",
]
