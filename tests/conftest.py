"""
1. Pytest 的插件机制 conftest.py 是 Pytest 的一种特殊配置文件，它会在测试运行时被自动加载。
2. 动态修改模块搜索路径：把 src 目录加入 sys.path，未安装包时也能直接导入 chatbot_memory。
3. 共享的测试替身：FakeGenerator / FakeEmbedder 实现记忆引擎所需的两个能力接口，
    不访问任何网络服务。
"""

import asyncio
import sys
from pathlib import Path

import pytest

# 添加 src 目录到 PYTHONPATH
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from chatbot_memory.memory.config import (  # noqa: E402
    ArchiveConfig,
    MemoryConfig,
    PersistenceConfig,
    SummarizationConfig,
)

# Keyword axes for FakeEmbedder; text about the same topic lands close together
VOCABULARY = ["python", "java", "pizza", "weather", "music", "travel"]


class FakeGenerator:
    """TextGenerator returning a canned summary and recording its prompts."""

    def __init__(self, reply: str = "They talked about Python.", error: Exception = None):
        self.reply = reply
        self.error = error
        self.calls: list[tuple[str, str]] = []
        self.release: asyncio.Event = None  # when set, generate() waits for it

    async def generate(self, system_instruction: str, user_prompt: str) -> str:
        self.calls.append((system_instruction, user_prompt))
        if self.release is not None:
            await self.release.wait()
        if self.error is not None:
            raise self.error
        return self.reply


class FakeEmbedder:
    """Embedder counting vocabulary words, plus a small constant axis."""

    def __init__(self, error: Exception = None):
        self.error = error
        self.batch_calls = 0

    @staticmethod
    def vector(text: str) -> list[float]:
        lowered = text.lower()
        return [float(lowered.count(word)) for word in VOCABULARY] + [0.1]

    async def embed(self, text: str) -> list[float]:
        if self.error is not None:
            raise self.error
        return self.vector(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.batch_calls += 1
        if self.error is not None:
            raise self.error
        return [self.vector(t) for t in texts]


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def make_config(tmp_path):
    """Build a MemoryConfig rooted in tmp_path; keyword args override fields."""

    def _make(
        persistence: bool = False,
        summarization: bool = False,
        archive: bool = False,
        trigger_turns: int = 3,
        max_summaries: int = 20,
        **overrides,
    ) -> MemoryConfig:
        config = MemoryConfig(
            persistence=PersistenceConfig(
                enabled=persistence,
                directory=str(tmp_path / "memory"),
                save_interval_seconds=0,
            ),
            summarization=SummarizationConfig(
                enabled=summarization,
                trigger_turns=trigger_turns,
                max_summaries=max_summaries,
            ),
            archive=ArchiveConfig(
                enabled=archive,
                directory=str(tmp_path / "knowledge"),
            ),
        )
        for key, value in overrides.items():
            setattr(config, key, value)
        return config

    return _make
