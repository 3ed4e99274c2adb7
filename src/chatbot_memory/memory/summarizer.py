"""
Conversation summarizer for the middle memory layer.

Counts turns per session and, once a session has accumulated enough turns,
compresses a run of them into a short summary through the injected
TextGenerator. Summaries are kept in memory (persisted by the session
store's snapshot), bounded per session.
"""

import logging
from datetime import datetime
from typing import Optional

from .capabilities import TextGenerator, with_timeout
from .config import SummarizationConfig
from .token_budget import estimate_summary_tokens
from .types import ConversationSummary, ConversationTurn, generate_id, now_ms

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = """You are a conversation summarizer. Compress the following multi-turn conversation into one concise summary.
Rules:
- Keep key information: what the user asked and the main points of the bot's answers
- Keep important context: user preferences and key facts that were mentioned
- Describe the conversation in the third person
- Keep it under {max_tokens} tokens
- Leave out greetings and small talk
- Output plain text, do NOT use markdown
Write the summary in the same language as the conversation."""

SUMMARY_USER_PREFIX = "Summarize the following conversation:\n\n"


def format_timestamp(ms: int) -> str:
    """Local time rendering used when summaries are injected into context."""
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


def render_turns(turns: list[ConversationTurn]) -> str:
    """Plain transcript of ``turns``, one exchange per paragraph."""
    return "\n\n".join(
        f"User: {t.user_message}\nBot: {t.bot_response}" for t in turns
    )


class ConversationSummarizer:
    """Decides when to summarize, generates summaries and keeps them ordered."""

    def __init__(
        self,
        config: Optional[SummarizationConfig] = None,
        generator: Optional[TextGenerator] = None,
    ):
        self.config = config or SummarizationConfig()
        self._generator = generator
        # session_id -> summaries in creation order
        self._summaries: dict[str, list[ConversationSummary]] = {}
        # session_id -> turns recorded since the last completed summary
        self._turns_since_summary: dict[str, int] = {}

        if self.config.enabled:
            logger.info(
                "Summarizer initialized (trigger_turns=%d, max_summaries=%d)",
                self.config.trigger_turns,
                self.config.max_summaries,
            )

    def set_generator(self, generator: Optional[TextGenerator]):
        self._generator = generator

    def is_enabled(self) -> bool:
        return self.config.enabled and self._generator is not None

    def record_turn(self, session_id: str) -> bool:
        """
        Count one more turn for ``session_id``.

        Returns True once the count reaches the trigger threshold. The count
        keeps growing until a summary is successfully generated.
        """
        if not self.config.enabled:
            return False
        count = self._turns_since_summary.get(session_id, 0) + 1
        self._turns_since_summary[session_id] = count
        return count >= self.config.trigger_turns

    def turns_since_summary(self, session_id: str) -> int:
        return self._turns_since_summary.get(session_id, 0)

    async def generate_summary(
        self, session_id: str, turns: list[ConversationTurn]
    ) -> Optional[ConversationSummary]:
        """
        Summarize ``turns`` and store the result for ``session_id``.

        Returns None when there is nothing to summarize, no generator is
        attached, or generation fails. Only a successful summary resets the
        session's turn counter.
        """
        summary = await self.create_summary(session_id, turns)
        if summary is not None:
            self.add_summary(summary)
        return summary

    async def create_summary(
        self, session_id: str, turns: list[ConversationTurn]
    ) -> Optional[ConversationSummary]:
        """Like ``generate_summary`` but leaves stored state untouched."""
        if not turns or self._generator is None:
            return None

        system_prompt = SUMMARY_SYSTEM_PROMPT.format(
            max_tokens=self.config.summary_max_tokens
        )
        user_prompt = SUMMARY_USER_PREFIX + render_turns(turns)

        try:
            content = await with_timeout(
                self._generator.generate(system_prompt, user_prompt),
                self.config.generation_timeout_seconds,
            )
        except Exception as e:
            logger.warning(
                "Failed to generate summary for session %s: %s", session_id, e
            )
            return None

        content = (content or "").strip()
        if not content:
            logger.warning("Empty summary returned for session %s", session_id)
            return None

        summary = ConversationSummary(
            id=generate_id(),
            session_id=session_id,
            content=content,
            start_time=turns[0].timestamp,
            end_time=turns[-1].timestamp,
            turn_count=len(turns),
            created_at=now_ms(),
            estimated_tokens=estimate_summary_tokens(content),
        )
        logger.debug(
            "Summary generated for session %s (%d turns, ~%d tokens)",
            session_id,
            summary.turn_count,
            summary.estimated_tokens,
        )
        return summary

    def add_summary(self, summary: ConversationSummary):
        """Store ``summary`` and reset its session's turn counter."""
        self._add_summary(summary)
        self._turns_since_summary[summary.session_id] = 0

    def _add_summary(self, summary: ConversationSummary):
        session_summaries = self._summaries.setdefault(summary.session_id, [])
        session_summaries.append(summary)
        overflow = len(session_summaries) - self.config.max_summaries
        if overflow > 0:
            del session_summaries[:overflow]

    def get_summaries(self, session_id: str) -> list[ConversationSummary]:
        return list(self._summaries.get(session_id, []))

    def get_formatted_summaries(self, session_id: str) -> Optional[str]:
        """Summaries rendered for context injection, oldest first."""
        session_summaries = self._summaries.get(session_id)
        if not session_summaries:
            return None
        return "\n\n".join(
            f"[{format_timestamp(s.created_at)}] {s.content}"
            for s in session_summaries
        )

    def clear_session(self, session_id: str):
        self._summaries.pop(session_id, None)
        self._turns_since_summary.pop(session_id, None)

    def clear_all(self):
        self._summaries.clear()
        self._turns_since_summary.clear()

    def get_all_summaries(self) -> list[ConversationSummary]:
        """Flatten every session's summaries for snapshotting."""
        return [s for summaries in self._summaries.values() for s in summaries]

    def load_summaries(self, summaries: list[ConversationSummary]):
        """Restore summaries from a snapshot, re-applying the per-session cap."""
        for summary in summaries:
            self._add_summary(summary)
        logger.debug("Loaded %d summaries", len(summaries))
