"""
Capability contracts consumed by the memory engine, and LangChain adapters.

The engine only ever talks to ``TextGenerator`` (summaries) and ``Embedder``
(archive vectors). Any backend that implements these two small protocols
can be plugged in; the adapters below wrap LangChain chat models and
embedding models.
"""

import asyncio
from typing import Optional, Protocol, runtime_checkable

from langchain_core.messages import HumanMessage, SystemMessage


@runtime_checkable
class TextGenerator(Protocol):
    """Produces text from a system instruction and a user prompt."""

    async def generate(self, system_instruction: str, user_prompt: str) -> str: ...


@runtime_checkable
class Embedder(Protocol):
    """Turns text into fixed-length vectors."""

    async def embed(self, text: str) -> list[float]: ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]: ...


async def with_timeout(awaitable, timeout: Optional[float]):
    """Await ``awaitable``, bounded by ``timeout`` seconds when it is > 0."""
    if timeout and timeout > 0:
        return await asyncio.wait_for(awaitable, timeout)
    return await awaitable


def _message_text(response) -> str:
    """Extract plain text from a chat model response."""
    content = response.content if hasattr(response, "content") else response
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return str(content)


class ChatModelGenerator:
    """TextGenerator backed by a LangChain chat model."""

    def __init__(self, llm):
        self._llm = llm

    async def generate(self, system_instruction: str, user_prompt: str) -> str:
        response = await self._llm.ainvoke([
            SystemMessage(content=system_instruction),
            HumanMessage(content=user_prompt),
        ])
        return _message_text(response)


class LangChainEmbedder:
    """Embedder backed by a LangChain ``Embeddings`` model."""

    def __init__(self, embeddings):
        self._embeddings = embeddings

    async def embed(self, text: str) -> list[float]:
        return list(await self._embeddings.aembed_query(text))

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        vectors = await self._embeddings.aembed_documents(texts)
        return [list(v) for v in vectors]
