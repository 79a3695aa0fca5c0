from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Union

from .store import MemoryStore

if TYPE_CHECKING:
    from .postgres_store import PostgresMemoryStore

logger = logging.getLogger("nebi_bot")

MEMORY_BACKENDS = ("sqlite", "postgres")


def _env(name: str, default: str = "") -> str:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip()


def resolve_memory_backend(raw: str | None = None) -> str:
    backend = (raw if raw is not None else _env("MEMORY_BACKEND", "sqlite")).strip().lower() or "sqlite"
    if backend in MEMORY_BACKENDS:
        return backend
    raise ValueError("MEMORY_BACKEND must be 'sqlite' or 'postgres'")


def build_memory_store(sqlite_path: Path, *, backend: str | None = None) -> Union[MemoryStore, "PostgresMemoryStore"]:
    selected = resolve_memory_backend(backend)
    if selected == "sqlite":
        logger.info("Memory backend: sqlite (%s)", sqlite_path)
        return MemoryStore(sqlite_path)

    postgres_dsn = _env("MEMORY_POSTGRES_DSN")
    if not postgres_dsn:
        raise ValueError("MEMORY_POSTGRES_DSN is required when MEMORY_BACKEND=postgres")

    from .postgres_store import PostgresMemoryStore

    logger.info("Memory backend: postgres")
    return PostgresMemoryStore(postgres_dsn)
