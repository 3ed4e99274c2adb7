"""
LangChain Tools 定义

使用 LangChain 1.0 的 @tool 装饰器和 ToolRuntime 定义工具：
- search_history: 在长期归档中检索当前会话的相关历史对话

ToolRuntime 提供访问运行时信息的统一接口：
- context: 不可变的配置（当前会话的 memory、is_group、target_id）
"""

from dataclasses import dataclass

from langchain.tools import tool, ToolRuntime

from .memory import ConversationMemory


# 工具输出最大字符数（防止单次工具调用撑爆 LLM 上下文窗口）
MAX_TOOL_OUTPUT_CHARS = 8000

NO_HISTORY_MESSAGE = "No related history found for this conversation."


def _truncate_output(text: str, max_chars: int = MAX_TOOL_OUTPUT_CHARS) -> str:
    """截断工具输出，防止超出 LLM 上下文窗口"""
    if len(text) <= max_chars:
        return text
    return (
        text[:max_chars]
        + f"\n\n... [output truncated: {len(text):,} chars total, showing first {max_chars:,}]"
    )


@dataclass
class MemoryToolContext:
    """
    工具运行时上下文

    通过 ToolRuntime[MemoryToolContext] 在 tool 中访问，
    由调用方按当前会话（群聊/私聊 + 目标 ID）构造
    """
    memory: ConversationMemory
    is_group: bool
    target_id: int


@tool
async def search_history(query: str, runtime: ToolRuntime[MemoryToolContext]) -> str:
    """
    Search older conversation history of the current chat.

    Use this when the user refers to something discussed a long time ago
    that is not in the recent dialogue or summary. Returns the most
    similar archived exchanges, each with its date.

    Args:
        query: What to look for, e.g. 'the restaurant we talked about'
    """
    ctx = runtime.context
    result = await ctx.memory.search_history(query, ctx.is_group, ctx.target_id)
    if not result:
        return NO_HISTORY_MESSAGE
    return _truncate_output(result)


ALL_TOOLS = [search_history]
