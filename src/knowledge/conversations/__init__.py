"""Conversation history storage.

Persists conversations and their messages so follow-up questions can be
answered with the prior turns as context.
"""

from src.knowledge.conversations.store import ConversationStore

__all__ = [
    "ConversationStore",
]
