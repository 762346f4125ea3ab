"""
Configuration for the memory store
Copyright 2025 Jurden Bruce

Values come from environment variables, with command-line flags layered
on top by the CLI.
"""

import os
import dataclasses
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

# Caller-boundary limits
SUBJECT_MAX_LENGTH = 160
QUERY_MAX_LENGTH = 1000
MAX_TAGS = 32
MAX_TOP_K = 20
MAX_LIST_LIMIT = 200
DEFAULT_LIST_LIMIT = 50
MAX_IMPORT_ITEMS = 1000

# Deployment profile -> maximum content length
CONTENT_PROFILES = {
    "standard": 1000,
    "extended": 2000,
}

EMBEDDING_PROVIDERS = ("auto", "openai", "sentence-transformers", "none")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class MemoryConfig:
    db_path: str = "./memory.db"
    default_top_k: int = 6
    profile: str = "standard"
    fts_enabled: bool = True
    embedding_provider: str = "auto"
    embedding_api_key: Optional[str] = None
    embedding_model: Optional[str] = None
    embedding_base_url: str = "https://api.openai.com/v1"
    embedding_cache_size: int = 1000
    log_level: str = "INFO"

    def __post_init__(self):
        if self.profile not in CONTENT_PROFILES:
            raise ValueError(
                f"Unknown profile {self.profile!r}; expected one of {', '.join(CONTENT_PROFILES)}"
            )
        if self.embedding_provider not in EMBEDDING_PROVIDERS:
            raise ValueError(
                f"Unknown embedding provider {self.embedding_provider!r}; "
                f"expected one of {', '.join(EMBEDDING_PROVIDERS)}"
            )
        if not 1 <= self.default_top_k <= MAX_TOP_K:
            raise ValueError(f"default_top_k must be between 1 and {MAX_TOP_K}")

    @property
    def content_max_length(self) -> int:
        return CONTENT_PROFILES[self.profile]

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "MemoryConfig":
        """Build a config from MEMORY_* environment variables"""
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            db_path=env.get("MEMORY_DB", defaults.db_path),
            default_top_k=_env_int(env, "MEMORY_TOPK", defaults.default_top_k),
            profile=env.get("MEMORY_PROFILE", defaults.profile),
            fts_enabled=_env_bool(env, "MEMORY_FTS", defaults.fts_enabled),
            embedding_provider=env.get("MEMORY_EMBEDDING_PROVIDER", defaults.embedding_provider),
            embedding_api_key=env.get("MEMORY_EMBEDDING_KEY") or None,
            embedding_model=env.get("MEMORY_EMBED_MODEL") or None,
            embedding_base_url=env.get("MEMORY_EMBEDDING_BASE_URL", defaults.embedding_base_url),
            embedding_cache_size=_env_int(env, "MEMORY_EMBEDDING_CACHE", defaults.embedding_cache_size),
            log_level=env.get("MEMORY_LOG_LEVEL", defaults.log_level).upper(),
        )

    def override(self, **changes: Any) -> "MemoryConfig":
        """Return a copy with every non-None value in changes applied"""
        applied: Dict[str, Any] = {k: v for k, v in changes.items() if v is not None}
        return dataclasses.replace(self, **applied)


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")
