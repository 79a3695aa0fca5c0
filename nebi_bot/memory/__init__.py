from .factory import build_memory_store
from .models import (
    BlacklistEntry,
    ConversationMessage,
    FeedbackStats,
    KnowledgeEntry,
    PrivacySettings,
    ReplyAudit,
    UserMessageCount,
)
from .store import MemoryStore

__all__ = [
    "BlacklistEntry",
    "ConversationMessage",
    "FeedbackStats",
    "KnowledgeEntry",
    "MemoryStore",
    "PrivacySettings",
    "ReplyAudit",
    "UserMessageCount",
    "build_memory_store",
]
