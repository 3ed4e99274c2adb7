"""
Tiered conversation memory with summaries and vector archive.

Composes per-session context from three layers:

- Archive (related history): turns older than N days, embedded into a
  ChromaDB collection and recalled by similarity to the current query
- Summaries: LLM-compressed runs of older turns, bounded per session
- Sliding window (recent dialogue): the most recent turns, verbatim,
  bounded by turn count and token estimate, expiring after inactivity

The window and summaries are snapshotted to a JSON file so they survive
restarts; the archive persists on its own.
"""

from .archive import MessageArchive
from .capabilities import ChatModelGenerator, Embedder, LangChainEmbedder, TextGenerator
from .config import (
    ArchiveConfig,
    ConfigError,
    MemoryConfig,
    PersistenceConfig,
    SummarizationConfig,
)
from .persistence import STORE_VERSION, SnapshotStore
from .session_store import ConversationMemory, MemoryStats
from .summarizer import ConversationSummarizer
from .token_budget import estimate_tokens, estimate_turn_tokens
from .types import (
    ArchivedMessage,
    Conversation,
    ConversationSummary,
    ConversationTurn,
    SearchResult,
    format_attachment_marker,
    get_session_id,
)

__all__ = [
    "ArchiveConfig",
    "ArchivedMessage",
    "ChatModelGenerator",
    "ConfigError",
    "Conversation",
    "ConversationMemory",
    "ConversationSummarizer",
    "ConversationSummary",
    "ConversationTurn",
    "Embedder",
    "LangChainEmbedder",
    "MemoryConfig",
    "MemoryStats",
    "MessageArchive",
    "PersistenceConfig",
    "STORE_VERSION",
    "SearchResult",
    "SnapshotStore",
    "SummarizationConfig",
    "TextGenerator",
    "estimate_tokens",
    "estimate_turn_tokens",
    "format_attachment_marker",
    "get_session_id",
]
