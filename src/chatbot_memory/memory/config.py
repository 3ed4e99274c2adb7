"""
Memory configuration: sliding window limits, persistence, summarization
and archive settings.
"""

import os
from dataclasses import dataclass, field


class ConfigError(ValueError):
    """Raised when a configuration value is outside its accepted range."""


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() in (
        "1",
        "true",
        "yes",
    )


def _check_range(name: str, value, low, high=None):
    if value < low or (high is not None and value > high):
        bound = f"[{low}, {high}]" if high is not None else f">= {low}"
        raise ConfigError(f"{name} must be {bound}, got {value}")


@dataclass
class PersistenceConfig:
    """Snapshot file settings."""

    enabled: bool = True
    directory: str = "./data/memory"
    save_interval_seconds: int = 300  # 0 = only save at shutdown


@dataclass
class SummarizationConfig:
    """Periodic summary settings."""

    enabled: bool = True
    trigger_turns: int = 10  # turns since last summary before summarizing
    max_summaries: int = 20  # per session, oldest dropped first
    summary_max_tokens: int = 500
    generation_timeout_seconds: float = 60.0  # 0 = no timeout


@dataclass
class ArchiveConfig:
    """Long-term vector archive settings."""

    enabled: bool = False
    directory: str = "./data/knowledge"
    archive_after_days: int = 7
    archive_check_interval_minutes: int = 60
    search_top_k: int = 5
    embedding_model: str = "text-embedding-3-small"
    embedding_base_url: str = ""  # empty = reuse API_BASE_URL
    embedding_api_key: str = ""  # empty = reuse API_KEY
    embedding_timeout_seconds: float = 30.0  # 0 = no timeout


@dataclass
class MemoryConfig:
    """Configuration for the tiered conversation memory."""

    enabled: bool = True

    # Sliding window
    max_turns: int = 20
    max_tokens: int = 8000
    ttl_minutes: int = 60  # 0 = sessions never expire

    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    summarization: SummarizationConfig = field(default_factory=SummarizationConfig)
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)

    def validate(self) -> "MemoryConfig":
        """Check value ranges, raising ConfigError on the first violation."""
        _check_range("max_turns", self.max_turns, 1, 100)
        _check_range("max_tokens", self.max_tokens, 100, 100_000)
        _check_range("ttl_minutes", self.ttl_minutes, 0, 10_080)
        _check_range(
            "persistence.save_interval_seconds",
            self.persistence.save_interval_seconds,
            0,
            3600,
        )
        _check_range(
            "summarization.trigger_turns", self.summarization.trigger_turns, 3, 50
        )
        _check_range(
            "summarization.max_summaries", self.summarization.max_summaries, 1, 100
        )
        _check_range(
            "summarization.summary_max_tokens",
            self.summarization.summary_max_tokens,
            50,
            2000,
        )
        _check_range(
            "summarization.generation_timeout_seconds",
            self.summarization.generation_timeout_seconds,
            0,
        )
        _check_range(
            "archive.archive_after_days", self.archive.archive_after_days, 1, 365
        )
        _check_range(
            "archive.archive_check_interval_minutes",
            self.archive.archive_check_interval_minutes,
            1,
            1440,
        )
        _check_range("archive.search_top_k", self.archive.search_top_k, 1, 50)
        _check_range(
            "archive.embedding_timeout_seconds",
            self.archive.embedding_timeout_seconds,
            0,
        )
        return self

    @classmethod
    def from_env(cls) -> "MemoryConfig":
        """Load configuration from environment variables."""
        config = cls(
            enabled=_env_bool("MEMORY_ENABLED", True),
            max_turns=int(os.getenv("MEMORY_MAX_TURNS", "20")),
            max_tokens=int(os.getenv("MEMORY_MAX_TOKENS", "8000")),
            ttl_minutes=int(os.getenv("MEMORY_TTL_MINUTES", "60")),
            persistence=PersistenceConfig(
                enabled=_env_bool("MEMORY_PERSISTENCE_ENABLED", True),
                directory=os.getenv("MEMORY_PERSISTENCE_DIR", "./data/memory"),
                save_interval_seconds=int(
                    os.getenv("MEMORY_SAVE_INTERVAL_SECONDS", "300")
                ),
            ),
            summarization=SummarizationConfig(
                enabled=_env_bool("MEMORY_SUMMARY_ENABLED", True),
                trigger_turns=int(os.getenv("MEMORY_SUMMARY_TRIGGER_TURNS", "10")),
                max_summaries=int(os.getenv("MEMORY_MAX_SUMMARIES", "20")),
                summary_max_tokens=int(
                    os.getenv("MEMORY_SUMMARY_MAX_TOKENS", "500")
                ),
                generation_timeout_seconds=float(
                    os.getenv("MEMORY_SUMMARY_TIMEOUT_SECONDS", "60")
                ),
            ),
            archive=ArchiveConfig(
                enabled=_env_bool("MEMORY_ARCHIVE_ENABLED", False),
                directory=os.getenv("MEMORY_ARCHIVE_DIR", "./data/knowledge"),
                archive_after_days=int(os.getenv("MEMORY_ARCHIVE_AFTER_DAYS", "7")),
                archive_check_interval_minutes=int(
                    os.getenv("MEMORY_ARCHIVE_CHECK_INTERVAL_MINUTES", "60")
                ),
                search_top_k=int(os.getenv("MEMORY_SEARCH_TOP_K", "5")),
                embedding_model=os.getenv(
                    "MEMORY_EMBEDDING_MODEL", "text-embedding-3-small"
                ),
                embedding_base_url=os.getenv("MEMORY_EMBEDDING_BASE_URL", ""),
                embedding_api_key=os.getenv("MEMORY_EMBEDDING_API_KEY", ""),
                embedding_timeout_seconds=float(
                    os.getenv("MEMORY_EMBEDDING_TIMEOUT_SECONDS", "30")
                ),
            ),
        )
        return config.validate()
