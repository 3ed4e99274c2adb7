"""
Tiered conversation memory.

Keeps a bounded sliding window of recent turns per session and composes it
with the two slower layers into one context string:

- Archive (related history): turns older than ``archive_after_days``,
  recalled by similarity to the current query
- Summaries: compressed runs of older turns, oldest first
- Recent dialogue: the full sliding window, verbatim

Every mutation of a session runs under that session's ``asyncio.Lock``, so
``total_tokens`` always equals the sum of the window's turn estimates.
Summarization runs as background tasks that callers never wait on; the
archive sweep and autosave run as periodic tasks started by ``start()``.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from .archive import MessageArchive
from .capabilities import Embedder, TextGenerator
from .config import MemoryConfig
from .persistence import STORE_VERSION, SnapshotStore
from .summarizer import ConversationSummarizer
from .token_budget import estimate_turn_tokens
from .types import (
    Conversation,
    ConversationTurn,
    StoreSnapshot,
    get_session_id,
    now_ms,
)

logger = logging.getLogger(__name__)

# The older half of the window must hold at least this many turns
MIN_TURNS_TO_SUMMARIZE = 3

SECTION_SEPARATOR = "\n\n---\n\n"
RELATED_HISTORY_HEADER = "[Related History]"
SUMMARY_HEADER = "[Conversation Summary]"
RECENT_DIALOGUE_HEADER = "[Recent Dialogue]"


@dataclass
class MemoryStats:
    """Point-in-time counters for status reporting."""

    sessions: int
    turns: int
    total_tokens: int
    summaries: int
    pending_summaries: int
    dirty: bool


def format_recent_dialogue(conversation: Conversation) -> str:
    lines = []
    for turn in conversation.turns:
        lines.append(f"User: {turn.user_message}")
        if turn.attachment_markers:
            lines.append(f"  (Attachments: {', '.join(turn.attachment_markers)})")
        lines.append(f"Bot: {turn.bot_response}")
        lines.append("")
    return "\n".join(lines).strip()


class ConversationMemory:
    """
    Session store and entry point of the memory engine.

    Usage:
        memory = ConversationMemory(config, generator=gen, embedder=emb)
        await memory.start()
        await memory.add_turn(True, 123, "[alice] hi", [], "hello alice")
        context = await memory.get_history(True, 123, query="hi")
        ...
        await memory.shutdown()
    """

    def __init__(
        self,
        config: Optional[MemoryConfig] = None,
        generator: Optional[TextGenerator] = None,
        embedder: Optional[Embedder] = None,
        summarizer: Optional[ConversationSummarizer] = None,
        archive: Optional[MessageArchive] = None,
    ):
        self.config = config or MemoryConfig()
        self.summarizer = summarizer or ConversationSummarizer(
            self.config.summarization, generator
        )
        self.archive = archive or MessageArchive(self.config.archive, embedder)
        self.snapshots = SnapshotStore(self.config.persistence.directory)

        self._store: dict[str, Conversation] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._dirty = False

        # In-flight summarizations, at most one per session
        self._summarizing: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._save_task: Optional[asyncio.Task] = None
        self._archive_task: Optional[asyncio.Task] = None
        self._sweep_lock = asyncio.Lock()

        if not self.config.enabled:
            logger.info("Conversation memory disabled")
            return

        logger.info(
            "Conversation memory initialized (max_turns=%d, max_tokens=%d, "
            "ttl_minutes=%d, persistence=%s, summarization=%s, archive=%s)",
            self.config.max_turns,
            self.config.max_tokens,
            self.config.ttl_minutes,
            self.config.persistence.enabled,
            self.config.summarization.enabled,
            self.config.archive.enabled,
        )
        if self.config.persistence.enabled:
            self._load_from_disk()

    # ── Capabilities ──

    def set_generator(self, generator: Optional[TextGenerator]):
        """Attach the text generator used for summaries."""
        self.summarizer.set_generator(generator)
        logger.debug("Summary generator configured")

    def set_embedder(self, embedder: Optional[Embedder]):
        """Attach the embedder used by the archive."""
        self.archive.set_embedder(embedder)
        logger.debug("Archive embedder configured")

    def is_enabled(self) -> bool:
        return self.config.enabled

    # ── Lifecycle ──

    async def start(self):
        """Start autosave, open the archive and start the archive sweep."""
        if not self.config.enabled:
            return
        persistence = self.config.persistence
        if (
            persistence.enabled
            and persistence.save_interval_seconds > 0
            and self._save_task is None
        ):
            self._save_task = asyncio.create_task(self._autosave_loop())

        await self.archive.initialize()
        if self.archive.is_ready() and self._archive_task is None:
            self._archive_task = asyncio.create_task(self._archive_loop())
            logger.info(
                "Archive sweep started (every %d minutes)",
                self.config.archive.archive_check_interval_minutes,
            )

    async def shutdown(self):
        """Stop periodic tasks, flush summaries and archive, save the snapshot."""
        for task in (self._save_task, self._archive_task):
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._save_task = None
        self._archive_task = None

        await self.wait_for_background_tasks()

        if self.archive.is_ready():
            await self.archive_old_turns()

        if self.config.persistence.enabled and self._dirty:
            self.save_to_disk()

        await self.archive.close()
        logger.info("Conversation memory shutdown complete")

    async def wait_for_background_tasks(self):
        """Wait until every scheduled summarization has finished."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ── Turns ──

    async def add_turn(
        self,
        is_group: bool,
        target_id: int,
        user_message: str,
        attachments: Optional[Iterable[str]],
        bot_response: str,
    ):
        """
        Append one user/bot exchange to the session window.

        Trims the window to ``max_turns`` and then to ``max_tokens`` (always
        keeping the newest turn), and schedules a background summary once
        the session has accumulated ``trigger_turns`` turns.
        """
        if not self.config.enabled:
            return

        session_id = get_session_id(is_group, target_id)
        timestamp = now_ms()
        turn = ConversationTurn(
            user_message=user_message,
            bot_response=bot_response,
            timestamp=timestamp,
            estimated_tokens=estimate_turn_tokens(user_message, bot_response),
            attachment_markers=list(attachments or []),
        )

        async with self._session_lock(session_id):
            conversation = self._store.get(session_id)
            if conversation is None:
                conversation = Conversation(
                    session_id=session_id,
                    is_group=is_group,
                    target_id=target_id,
                    last_active_time=timestamp,
                )
                self._store[session_id] = conversation

            conversation.turns.append(turn)
            conversation.total_tokens += turn.estimated_tokens
            conversation.last_active_time = timestamp
            self._dirty = True

            self._trim(conversation)
            should_summarize = self.summarizer.record_turn(session_id)

            logger.debug(
                "Turn added to %s (turns=%d, tokens=%d)",
                session_id,
                len(conversation.turns),
                conversation.total_tokens,
            )

        if should_summarize:
            self._schedule_summarization(session_id)

    def _trim(self, conversation: Conversation):
        turns = conversation.turns
        overflow = len(turns) - self.config.max_turns
        if overflow > 0:
            for removed in turns[:overflow]:
                conversation.total_tokens -= removed.estimated_tokens
            del turns[:overflow]

        while conversation.total_tokens > self.config.max_tokens and len(turns) > 1:
            removed = turns.pop(0)
            conversation.total_tokens -= removed.estimated_tokens

    # ── Summaries ──

    def _schedule_summarization(self, session_id: str):
        if not self.summarizer.is_enabled():
            return
        if session_id in self._summarizing:
            # One in flight already; the counter stays up so a later turn retries
            logger.debug("Summarization already running for %s, skipping", session_id)
            return

        task = asyncio.create_task(self._summarize(session_id))
        self._summarizing[session_id] = task
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _summarize(self, session_id: str):
        try:
            async with self._session_lock(session_id):
                conversation = self._store.get(session_id)
                if conversation is None:
                    return
                older_half = list(conversation.turns[: len(conversation.turns) // 2])

            if len(older_half) < MIN_TURNS_TO_SUMMARIZE:
                return

            summary = await self.summarizer.create_summary(session_id, older_half)
            if summary is None:
                return

            async with self._session_lock(session_id):
                if self._store.get(session_id) is not conversation:
                    # Cleared or expired (and maybe re-created) during generation
                    logger.debug("Discarding stale summary for %s", session_id)
                    return
                self.summarizer.add_summary(summary)
                self._dirty = True
            logger.info(
                "Summary generated for %s (%d turns)", session_id, summary.turn_count
            )
        except Exception as e:
            logger.error("Background summarization failed for %s: %s", session_id, e)
        finally:
            self._summarizing.pop(session_id, None)

    # ── Reads ──

    async def get_history(
        self,
        is_group: bool,
        target_id: int,
        query: Optional[str] = None,
    ) -> Optional[str]:
        """
        Compose the context for a session.

        Sections, in order: related archived history (only when ``query`` is
        given and the archive is ready), summaries, recent dialogue. Returns
        None when the session has expired or every layer is empty.
        """
        if not self.config.enabled:
            return None

        session_id = get_session_id(is_group, target_id)
        recent = None
        if session_id in self._store:
            async with self._session_lock(session_id):
                conversation = self._store.get(session_id)
                if conversation is not None and self._is_expired(conversation):
                    self._drop_session(session_id)
                    logger.debug("Conversation %s expired", session_id)
                    return None
                if conversation is not None and conversation.turns:
                    recent = format_recent_dialogue(conversation)

        parts = []
        if query and self.archive.is_ready():
            related = await self.archive.get_formatted_search_results(
                query, session_id
            )
            if related:
                parts.append(f"{RELATED_HISTORY_HEADER}\n{related}")

        summaries = self.summarizer.get_formatted_summaries(session_id)
        if summaries:
            parts.append(f"{SUMMARY_HEADER}\n{summaries}")

        if recent:
            parts.append(f"{RECENT_DIALOGUE_HEADER}\n{recent}")

        if not parts:
            return None
        return SECTION_SEPARATOR.join(parts)

    async def search_history(
        self, query: str, is_group: bool, target_id: int
    ) -> Optional[str]:
        """Archive-only search for one session, formatted for an agent tool."""
        if not self.archive.is_ready():
            return None
        session_id = get_session_id(is_group, target_id)
        return await self.archive.get_formatted_search_results(query, session_id)

    def get_conversation(self, is_group: bool, target_id: int) -> Optional[Conversation]:
        """The live window for a session, without applying expiry."""
        return self._store.get(get_session_id(is_group, target_id))

    # ── Clearing ──

    async def clear_conversation(self, is_group: bool, target_id: int):
        """Forget a session in every layer, archive included."""
        session_id = get_session_id(is_group, target_id)
        async with self._session_lock(session_id):
            existed = self._store.pop(session_id, None) is not None
            self.summarizer.clear_session(session_id)
            self._dirty = True
        # Waits out a running sweep so none of its writes outlive the clear
        async with self._sweep_lock:
            await self.archive.delete_session(session_id)
        if existed:
            logger.info("Conversation %s cleared", session_id)

    async def clear_all(self):
        """Forget every session in every layer and empty the archive."""
        session_ids = list(self._store)
        self._store.clear()
        for session_id in session_ids:
            self._discard_idle_lock(session_id)
        self.summarizer.clear_all()
        self._dirty = True
        async with self._sweep_lock:
            await self.archive.clear()
        logger.info("All conversations cleared (%d)", len(session_ids))

    # ── Expiry ──

    def _is_expired(self, conversation: Conversation, now: Optional[int] = None) -> bool:
        ttl_minutes = self.config.ttl_minutes
        if ttl_minutes == 0:
            return False
        now = now_ms() if now is None else now
        return now - conversation.last_active_time > ttl_minutes * 60 * 1000

    def _drop_session(self, session_id: str):
        self._store.pop(session_id, None)
        self.summarizer.clear_session(session_id)
        self._dirty = True
        self._discard_idle_lock(session_id)

    # ── Archiving ──

    async def archive_old_turns(self) -> int:
        """
        Move turns older than the archive threshold out of every window.

        Turns leave a window only after the archive confirmed the write, so
        a failed batch stays in the window and is retried on the next sweep.
        """
        if not self.archive.is_ready():
            return 0
        async with self._sweep_lock:
            return await self._sweep()

    async def _sweep(self) -> int:
        threshold = self.archive.get_archive_threshold()
        total_archived = 0

        for session_id in list(self._store):
            async with self._session_lock(session_id):
                conversation = self._store.get(session_id)
                if conversation is None:
                    continue
                to_archive = [t for t in conversation.turns if t.timestamp < threshold]
            if not to_archive:
                continue

            archived = await self.archive.archive(
                conversation.session_id,
                conversation.is_group,
                conversation.target_id,
                to_archive,
            )
            if archived <= 0:
                continue

            async with self._session_lock(session_id):
                current = self._store.get(session_id)
                if current is not None:
                    archived_ids = {id(t) for t in to_archive}
                    current.turns = [t for t in current.turns if id(t) not in archived_ids]
                    current.recompute_tokens()
                    self._dirty = True
            total_archived += archived

        if total_archived > 0:
            logger.info(
                "Archived %d old turns (older than %d days)",
                total_archived,
                self.config.archive.archive_after_days,
            )
        return total_archived

    async def _archive_loop(self):
        interval = self.config.archive.archive_check_interval_minutes * 60
        while True:
            try:
                await self.archive_old_turns()
            except Exception as e:
                logger.error("Periodic archive sweep failed: %s", e)
            await asyncio.sleep(interval)

    # ── Persistence ──

    def _load_from_disk(self):
        snapshot = self.snapshots.load()
        if snapshot is None:
            return

        now = now_ms()
        expired_ids = set()
        for conversation in snapshot.conversations:
            if self._is_expired(conversation, now):
                expired_ids.add(conversation.session_id)
                continue
            self._store[conversation.session_id] = conversation

        # Keep summaries of loaded sessions only
        summaries = [s for s in snapshot.summaries if s.session_id in self._store]
        self.summarizer.load_summaries(summaries)

        logger.info(
            "Loaded conversations from %s (loaded=%d, expired=%d, summaries=%d, "
            "saved_at=%s)",
            self.snapshots.path,
            len(self._store),
            len(expired_ids),
            len(summaries),
            datetime.fromtimestamp(snapshot.saved_at / 1000).isoformat(),
        )

    def save_to_disk(self) -> bool:
        """Write the snapshot now. Returns False (and stays dirty) on failure."""
        if not self.config.persistence.enabled:
            return False

        now = now_ms()
        for session_id, conversation in list(self._store.items()):
            if self._is_expired(conversation, now):
                self._drop_session(session_id)

        snapshot = StoreSnapshot(
            version=STORE_VERSION,
            saved_at=now,
            conversations=list(self._store.values()),
            summaries=self.summarizer.get_all_summaries(),
        )
        if not self.snapshots.save(snapshot):
            return False

        self._dirty = False
        logger.debug(
            "Saved %d conversations and %d summaries",
            len(snapshot.conversations),
            len(snapshot.summaries),
        )
        return True

    async def _autosave_loop(self):
        interval = self.config.persistence.save_interval_seconds
        while True:
            await asyncio.sleep(interval)
            if self._dirty:
                self.save_to_disk()

    def is_dirty(self) -> bool:
        return self._dirty

    # ── Stats ──

    def get_stats(self) -> MemoryStats:
        conversations = list(self._store.values())
        return MemoryStats(
            sessions=len(conversations),
            turns=sum(len(c.turns) for c in conversations),
            total_tokens=sum(c.total_tokens for c in conversations),
            summaries=len(self.summarizer.get_all_summaries()),
            pending_summaries=len(self._summarizing),
            dirty=self._dirty,
        )

    @contextlib.asynccontextmanager
    async def _session_lock(self, session_id: str):
        """
        Hold the per-session lock.

        Locks are reference counted and discarded once nobody holds or waits
        on them and the session is gone, so the map stays bounded by the
        number of live sessions.
        """
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[session_id] - 1
            if remaining > 0:
                self._lock_users[session_id] = remaining
            else:
                del self._lock_users[session_id]
                if session_id not in self._store:
                    del self._locks[session_id]

    def _discard_idle_lock(self, session_id: str):
        # A held or awaited lock is dropped by _session_lock on release
        if session_id not in self._lock_users:
            self._locks.pop(session_id, None)
