from .conversation_store import ConversationStore, LimitCheck
from .database import SQLiteChatDB
from .handoff_store import HandoffStore

__all__ = [
    "ConversationStore",
    "HandoffStore",
    "LimitCheck",
    "SQLiteChatDB",
]
