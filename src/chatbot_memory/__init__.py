"""
Chatbot conversation memory.

``chatbot_memory.memory`` holds the engine; ``factory.build_memory`` wires
LangChain backends from the environment; ``tools.search_history`` exposes
archive recall to an agent.
"""

from .memory import ConversationMemory, MemoryConfig

__version__ = "0.1.0"

__all__ = ["ConversationMemory", "MemoryConfig", "__version__"]
