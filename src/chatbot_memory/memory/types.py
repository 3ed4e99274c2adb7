"""
Data model shared by the session store, summarizer and archive.

Records serialize with the camelCase keys of the on-disk snapshot format.
"""

import random
import string
import time
from dataclasses import dataclass, field
from typing import Optional

_ID_ALPHABET = string.digits + string.ascii_lowercase


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def generate_id() -> str:
    """Unique-enough record id: ``<epoch ms>-<7 base36 chars>``."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=7))
    return f"{now_ms()}-{suffix}"


def get_session_id(is_group: bool, target_id: int) -> str:
    """Deterministic session key for a (chat kind, target id) pair."""
    return f"group_{target_id}" if is_group else f"private_{target_id}"


def format_attachment_marker(kind: str, filename: str) -> str:
    """Textual placeholder kept in memory instead of an attachment payload."""
    return f"[{kind}: {filename}]"


@dataclass
class ConversationTurn:
    """One user message paired with the bot response."""

    user_message: str
    bot_response: str
    timestamp: int
    estimated_tokens: int = 0
    attachment_markers: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "userMessage": self.user_message,
            "botResponse": self.bot_response,
            "timestamp": self.timestamp,
            "estimatedTokens": self.estimated_tokens,
            "attachmentMarkers": list(self.attachment_markers),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ConversationTurn":
        return cls(
            user_message=str(data["userMessage"]),
            bot_response=str(data["botResponse"]),
            timestamp=int(data["timestamp"]),
            estimated_tokens=max(0, int(data.get("estimatedTokens", 0))),
            attachment_markers=[str(m) for m in data.get("attachmentMarkers") or []],
        )


@dataclass
class Conversation:
    """Sliding window of recent turns for one session."""

    session_id: str
    is_group: bool
    target_id: int
    turns: list[ConversationTurn] = field(default_factory=list)
    last_active_time: int = 0
    total_tokens: int = 0

    def recompute_tokens(self) -> int:
        """Re-derive ``total_tokens`` from the turns currently held."""
        self.total_tokens = sum(t.estimated_tokens for t in self.turns)
        return self.total_tokens

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "isGroup": self.is_group,
            "targetId": self.target_id,
            "turns": [t.to_dict() for t in self.turns],
            "lastActiveTime": self.last_active_time,
            "totalTokens": self.total_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Conversation":
        conversation = cls(
            session_id=str(data["sessionId"]),
            is_group=bool(data["isGroup"]),
            target_id=int(data["targetId"]),
            turns=[ConversationTurn.from_dict(t) for t in data.get("turns") or []],
            last_active_time=int(data["lastActiveTime"]),
        )
        # The stored total is denormalized; never trust it over the turns.
        conversation.recompute_tokens()
        return conversation


@dataclass
class ConversationSummary:
    """Compaction of a contiguous run of turns."""

    id: str
    session_id: str
    content: str
    start_time: int
    end_time: int
    turn_count: int
    created_at: int
    estimated_tokens: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "content": self.content,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "turnCount": self.turn_count,
            "createdAt": self.created_at,
            "estimatedTokens": self.estimated_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ConversationSummary":
        return cls(
            id=str(data["id"]),
            session_id=str(data["sessionId"]),
            content=str(data["content"]),
            start_time=int(data["startTime"]),
            end_time=int(data["endTime"]),
            turn_count=max(1, int(data["turnCount"])),
            created_at=int(data["createdAt"]),
            estimated_tokens=max(0, int(data.get("estimatedTokens", 0))),
        )


@dataclass
class ArchivedMessage:
    """A turn moved out of the window into the long-term archive."""

    id: str
    session_id: str
    is_group: bool
    target_id: int
    user_message: str
    bot_response: str
    timestamp: int
    vector: Optional[list[float]] = None


@dataclass
class SearchResult:
    """Archive hit with a normalized similarity score in [0, 1]."""

    message: ArchivedMessage
    score: float


@dataclass
class StoreSnapshot:
    """Everything the session store persists between restarts."""

    version: int
    saved_at: int
    conversations: list[Conversation] = field(default_factory=list)
    summaries: list[ConversationSummary] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "savedAt": self.saved_at,
            "conversations": [c.to_dict() for c in self.conversations],
            "summaries": [s.to_dict() for s in self.summaries],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StoreSnapshot":
        return cls(
            version=int(data["version"]),
            saved_at=int(data.get("savedAt", 0)),
            conversations=[
                Conversation.from_dict(c) for c in data.get("conversations") or []
            ],
            summaries=[
                ConversationSummary.from_dict(s) for s in data.get("summaries") or []
            ],
        )
