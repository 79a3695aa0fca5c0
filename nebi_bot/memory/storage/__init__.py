from .audits import MemoryAuditMixin
from .blacklist import MemoryBlacklistMixin
from .identity import MemoryIdentityMixin
from .knowledge import MemoryKnowledgeMixin
from .messages import MemoryMessagesMixin
from .schema import MemorySchemaMixin

__all__ = [
    "MemorySchemaMixin",
    "MemoryIdentityMixin",
    "MemoryBlacklistMixin",
    "MemoryKnowledgeMixin",
    "MemoryMessagesMixin",
    "MemoryAuditMixin",
]
