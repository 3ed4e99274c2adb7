"""
Long-term message archive backed by a persistent ChromaDB collection.

Turns that have aged out of the sliding window are embedded and stored
here, one record per turn, enabling semantic recall of older history.

Architecture:
  - Aged turns → "User: …\\nBot: …" text → batch embedding → one record each
  - Query → query embedding → cosine search (optionally one session) → hits
  - Scores are ``1 - cosine_distance`` clamped to [0, 1]

Every public operation degrades to a no-op result (0 / [] / None) when the
archive is disabled, not initialized, has no embedder, or the backend fails.
"""

import asyncio
import logging
import os
from typing import Optional

import chromadb
from chromadb.config import Settings

from .capabilities import Embedder, with_timeout
from .config import ArchiveConfig
from .summarizer import format_timestamp
from .types import (
    ArchivedMessage,
    ConversationTurn,
    SearchResult,
    generate_id,
    now_ms,
)

logger = logging.getLogger(__name__)

COLLECTION_NAME = "messages"
DAY_MS = 24 * 60 * 60 * 1000


def turn_text(turn: ConversationTurn) -> str:
    """Text that gets embedded for an archived turn."""
    return f"User: {turn.user_message}\nBot: {turn.bot_response}"


def _distance_to_score(distance: Optional[float]) -> float:
    if distance is None:
        return 0.0
    return max(0.0, min(1.0, 1.0 - float(distance)))


class MessageArchive:
    """
    Stores and retrieves archived turns by vector similarity.

    Usage:
        archive = MessageArchive(config, embedder)
        await archive.initialize()
        if archive.is_ready():
            await archive.archive("group_1", True, 1, old_turns)
            hits = await archive.search("what did we say about python", "group_1")
    """

    def __init__(
        self,
        config: Optional[ArchiveConfig] = None,
        embedder: Optional[Embedder] = None,
    ):
        self.config = config or ArchiveConfig()
        self._embedder = embedder
        self._client = None
        self._collection = None
        self._initialized = False

        if self.config.enabled:
            logger.info(
                "Archive created (directory=%s, archive_after_days=%d, top_k=%d)",
                self.config.directory,
                self.config.archive_after_days,
                self.config.search_top_k,
            )

    def set_embedder(self, embedder: Optional[Embedder]):
        self._embedder = embedder

    async def initialize(self):
        """Open (or create) the backing collection. Safe to call repeatedly."""
        if not self.config.enabled or self._initialized:
            return
        if self._embedder is None:
            logger.info("Archive enabled but no embedder attached, skipping init")
            return
        try:
            await asyncio.to_thread(self._open_collection)
            self._initialized = True
            logger.info("Archive initialized at %s", self.config.directory)
        except Exception as e:
            logger.error("Failed to initialize archive: %s", e)

    def _open_collection(self):
        os.makedirs(self.config.directory, exist_ok=True)
        self._client = chromadb.PersistentClient(
            path=self.config.directory,
            settings=Settings(anonymized_telemetry=False),
        )
        self._collection = self._create_collection()

    def _create_collection(self):
        return self._client.get_or_create_collection(
            name=COLLECTION_NAME,
            metadata={"hnsw:space": "cosine"},
            embedding_function=None,
        )

    def is_ready(self) -> bool:
        return (
            self.config.enabled
            and self._initialized
            and self._collection is not None
            and self._embedder is not None
        )

    def get_archive_threshold(self) -> int:
        """Epoch ms before which turns are old enough to archive."""
        return now_ms() - self.config.archive_after_days * DAY_MS

    async def archive(
        self,
        session_id: str,
        is_group: bool,
        target_id: int,
        turns: list[ConversationTurn],
    ) -> int:
        """
        Embed and store ``turns`` as one batch.

        Returns the number of records written; 0 means nothing was written.
        """
        if not self.is_ready() or not turns:
            return 0

        texts = [turn_text(t) for t in turns]
        try:
            vectors = await with_timeout(
                self._embedder.embed_batch(texts),
                self.config.embedding_timeout_seconds,
            )
            if len(vectors) != len(turns) or any(len(v) == 0 for v in vectors):
                logger.warning(
                    "Embedding returned %d vectors for %d turns in session %s, "
                    "skipping batch",
                    len(vectors),
                    len(turns),
                    session_id,
                )
                return 0

            ids = [generate_id() for _ in turns]
            metadatas = [
                {
                    "session_id": session_id,
                    "is_group": is_group,
                    "target_id": target_id,
                    "user_message": t.user_message,
                    "bot_response": t.bot_response,
                    "timestamp": t.timestamp,
                }
                for t in turns
            ]
            await asyncio.to_thread(
                self._collection.add,
                ids=ids,
                embeddings=[[float(x) for x in v] for v in vectors],
                documents=texts,
                metadatas=metadatas,
            )
        except Exception as e:
            logger.error("Failed to archive turns for session %s: %s", session_id, e)
            return 0

        logger.debug("Archived %d turns for session %s", len(turns), session_id)
        return len(turns)

    async def search(
        self,
        query: str,
        session_id: Optional[str] = None,
        top_k: Optional[int] = None,
    ) -> list[SearchResult]:
        """
        Similarity search over archived turns, best match first.

        Args:
            query: Free text to match.
            session_id: Restrict hits to one session when given.
            top_k: Maximum number of hits (defaults to config.search_top_k).
        """
        if not self.is_ready() or not query or not query.strip():
            return []

        limit = top_k or self.config.search_top_k
        try:
            query_vector = await with_timeout(
                self._embedder.embed(query),
                self.config.embedding_timeout_seconds,
            )
            return await asyncio.to_thread(
                self._query, query_vector, session_id, limit
            )
        except Exception as e:
            logger.warning("Archive search failed: %s", e)
            return []

    def _query(
        self, query_vector: list[float], session_id: Optional[str], limit: int
    ) -> list[SearchResult]:
        kwargs = {
            "query_embeddings": [[float(x) for x in query_vector]],
            "include": ["metadatas", "distances"],
        }
        if session_id:
            kwargs["where"] = {"session_id": session_id}
            # n_results must not exceed what the filter can match
            available = len(
                self._collection.get(where=kwargs["where"], include=[])["ids"]
            )
        else:
            available = self._collection.count()
        if available == 0:
            return []
        kwargs["n_results"] = min(limit, available)
        res = self._collection.query(**kwargs)
        results = self._rows_to_results(res)
        results.sort(key=lambda r: r.score, reverse=True)
        return results

    @staticmethod
    def _rows_to_results(res) -> list[SearchResult]:
        """Convert a Chroma query response (single query) to SearchResults."""
        ids = (res.get("ids") or [[]])[0]
        metas = (res.get("metadatas") or [[]])[0] or []
        distances = (res.get("distances") or [[]])[0] or []

        results = []
        for i, record_id in enumerate(ids):
            meta = metas[i] if i < len(metas) and metas[i] else {}
            distance = distances[i] if i < len(distances) else None
            message = ArchivedMessage(
                id=record_id,
                session_id=str(meta.get("session_id", "")),
                is_group=bool(meta.get("is_group", False)),
                target_id=int(meta.get("target_id", 0)),
                user_message=str(meta.get("user_message", "")),
                bot_response=str(meta.get("bot_response", "")),
                timestamp=int(meta.get("timestamp", 0)),
            )
            results.append(SearchResult(message=message, score=_distance_to_score(distance)))
        return results

    async def get_formatted_search_results(
        self, query: str, session_id: Optional[str] = None
    ) -> Optional[str]:
        """Search hits rendered for context injection, or None."""
        results = await self.search(query, session_id)
        if not results:
            return None
        return "\n\n".join(
            f"[{format_timestamp(r.message.timestamp)}]\n"
            f"User: {r.message.user_message}\n"
            f"Bot: {r.message.bot_response}"
            for r in results
        )

    async def delete_session(self, session_id: str):
        """Delete every archived record for ``session_id``."""
        if self._collection is None:
            return
        try:
            await asyncio.to_thread(
                self._collection.delete, where={"session_id": session_id}
            )
            logger.debug("Deleted archived messages for session %s", session_id)
        except Exception as e:
            logger.error(
                "Failed to delete archived messages for session %s: %s",
                session_id,
                e,
            )

    async def clear(self):
        """Delete every archived record, whichever session it belongs to."""
        if self._collection is None:
            return
        try:
            await asyncio.to_thread(self._reset_collection)
            logger.info("Archive cleared")
        except Exception as e:
            logger.error("Failed to clear archive: %s", e)

    def _reset_collection(self):
        self._client.delete_collection(COLLECTION_NAME)
        self._collection = self._create_collection()

    async def get_stats(self) -> Optional[dict]:
        if self._collection is None:
            return None
        try:
            count = await asyncio.to_thread(self._collection.count)
        except Exception as e:
            logger.warning("Failed to count archived messages: %s", e)
            return None
        return {"total_messages": count}

    async def close(self):
        # PersistentClient writes through; nothing to flush
        self._initialized = False
        self._collection = None
        self._client = None
        logger.info("Archive closed")
