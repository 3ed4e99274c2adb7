"""
从环境变量装配对话记忆

- 摘要模型：init_chat_model（与主模型共用认证信息）
- Embedding：OpenAI 兼容的 OpenAIEmbeddings（可单独配置 base_url / api_key）

任一能力创建失败都只记录日志并返回 None，记忆系统会退化为对应层不可用，
而不是阻止启动。
"""

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from langchain.chat_models import init_chat_model

from .memory import (
    ChatModelGenerator,
    ConversationMemory,
    LangChainEmbedder,
    MemoryConfig,
)

logger = logging.getLogger(__name__)


# 加载环境变量（override=True 确保 .env 文件覆盖系统环境变量）
load_dotenv(override=True)


DEFAULT_SUMMARY_MODEL = "gpt-4o-mini"
SUMMARY_TEMPERATURE = 0.3


def get_credentials() -> tuple[str | None, str | None]:
    """
    获取 API 认证信息

    通用变量优先：
    - API Key: API_KEY > OPENAI_API_KEY
    - Base URL: API_BASE_URL > OPENAI_BASE_URL

    Returns:
        (api_key, base_url) 元组
    """
    api_key = os.getenv("API_KEY") or os.getenv("OPENAI_API_KEY")
    base_url = os.getenv("API_BASE_URL") or os.getenv("OPENAI_BASE_URL")
    return api_key, base_url


def create_generator(config: MemoryConfig) -> Optional[ChatModelGenerator]:
    """创建摘要用的 TextGenerator；摘要关闭或创建失败时返回 None。"""
    if not config.summarization.enabled:
        return None

    model_name = os.getenv("SUMMARY_MODEL") or os.getenv("CLAUDE_MODEL", DEFAULT_SUMMARY_MODEL)
    try:
        api_key, base_url = get_credentials()
        # 摘要长度上限留一点余量给模型收尾
        init_kwargs = {
            "temperature": SUMMARY_TEMPERATURE,
            "max_tokens": config.summarization.summary_max_tokens * 2,
        }
        if api_key:
            init_kwargs["api_key"] = api_key
        if base_url:
            init_kwargs["base_url"] = base_url

        model_provider = os.getenv("MODEL_PROVIDER")
        provider_kwargs = {}
        if model_provider:
            provider_kwargs["model_provider"] = model_provider

        llm = init_chat_model(model_name, **provider_kwargs, **init_kwargs)
        return ChatModelGenerator(llm)
    except Exception as e:
        logger.warning("Failed to create summary model '%s': %s", model_name, e)
        return None


def create_embedder(config: MemoryConfig) -> Optional[LangChainEmbedder]:
    """创建归档用的 Embedder；归档关闭或创建失败时返回 None。"""
    archive = config.archive
    if not archive.enabled:
        return None

    try:
        from langchain_openai import OpenAIEmbeddings

        api_key, base_url = get_credentials()
        # Embedding 认证：专用变量 > 通用认证
        embed_api_key = archive.embedding_api_key or api_key
        embed_base_url = archive.embedding_base_url or base_url

        embed_kwargs = {}
        if embed_api_key:
            embed_kwargs["api_key"] = embed_api_key
        if embed_base_url:
            embed_kwargs["base_url"] = embed_base_url
        embeddings = OpenAIEmbeddings(model=archive.embedding_model, **embed_kwargs)
        logger.info("Embedding model created: %s", archive.embedding_model)
        return LangChainEmbedder(embeddings)
    except Exception as e:
        logger.warning("Failed to create embedding model: %s", e)
        return None


def build_memory(config: Optional[MemoryConfig] = None) -> ConversationMemory:
    """
    按配置装配 ConversationMemory

    调用方仍需 ``await memory.start()`` 启动定时保存与归档任务，
    退出前 ``await memory.shutdown()``。
    """
    config = config or MemoryConfig.from_env()
    return ConversationMemory(
        config,
        generator=create_generator(config),
        embedder=create_embedder(config),
    )
