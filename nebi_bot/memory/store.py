from __future__ import annotations

from .storage.audits import MemoryAuditMixin
from .storage.blacklist import MemoryBlacklistMixin
from .storage.identity import MemoryIdentityMixin
from .storage.knowledge import MemoryKnowledgeMixin
from .storage.messages import MemoryMessagesMixin
from .storage.schema import MemorySchemaMixin
from .storage.utils import _sqlite_memory_connection


class MemoryStore(
    MemorySchemaMixin,
    MemoryIdentityMixin,
    MemoryBlacklistMixin,
    MemoryKnowledgeMixin,
    MemoryMessagesMixin,
    MemoryAuditMixin,
):
    """Guild-scoped knowledge base, conversation memory, privacy flags and reply audit trail."""

    backend_name = "sqlite"

    async def ping(self) -> None:
        async with _sqlite_memory_connection(self.db_path) as db:
            await db.execute("SELECT 1")

    async def close(self) -> None:
        # Connections are opened per operation; nothing is held between calls.
        return None
