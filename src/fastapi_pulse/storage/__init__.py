"""
Storage package for fastapi-pulse.
=====================================

Public surface::

    from fastapi_pulse.storage import make_storage, PulseStorageProtocol

:func:`make_storage` is the single entry point for instantiating a backend.
The rest of the application — scheduler, registry, notifier, router — only
speak to :class:`PulseStorageProtocol` and never import concrete backends
directly.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi_pulse.storage.base import PulseStorageProtocol

if TYPE_CHECKING:
    from fastapi_pulse.config import PulseConfig

__all__ = ["make_storage", "PulseStorageProtocol"]


def make_storage(config: "PulseConfig") -> PulseStorageProtocol:
    """
    Instantiate the storage backend declared in ``config.storage_backend``.

    Supported values:

    * ``"sqlite"`` (default)  — :class:`~fastapi_pulse.storage.sqlite_storage.SQLiteStorage`
    * ``"postgresql"``        — :class:`~fastapi_pulse.storage.pg_storage.PostgreSQLStorage`
    * ``"memory"``            — :class:`~fastapi_pulse.storage.memory_storage.MemoryStorage`

    Raises:
        ValueError: If ``storage_backend`` is not a known value.
    """
    backend = config.storage_backend

    if backend == "sqlite":
        from fastapi_pulse.storage.sqlite_storage import SQLiteStorage
        return SQLiteStorage(config)

    if backend == "postgresql":
        from fastapi_pulse.storage.pg_storage import PostgreSQLStorage
        return PostgreSQLStorage(config)

    if backend == "memory":
        from fastapi_pulse.storage.memory_storage import MemoryStorage
        return MemoryStorage(config)

    raise ValueError(
        f"Unknown storage_backend: '{backend}'. "
        "Supported values: 'memory', 'postgresql', 'sqlite'."
    )
