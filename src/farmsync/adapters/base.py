"""Primary store protocol definition.

Defines the ``PrimaryStore`` Protocol that the record engine's callers
use to reach the relational store.  A store hands out one pooled
connection per logical operation via ``connect()``; the connection is
released (and any uncommitted work rolled back) when the context exits.

Usage:
    from farmsync.adapters.base import PrimaryStore

    async def do_work(store: PrimaryStore) -> None:
        async with store.connect() as conn:
            rows = await engine.list_records(conn, "TASKS", "tasks", 7, {})
        await store.close()
"""

from contextlib import AbstractAsyncContextManager
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncConnection


class PrimaryStore(Protocol):
    """Primary relational store interface.

    All methods are async -- callers must ``await`` every operation and
    use ``connect()`` as an async context manager.
    """

    def connect(self) -> AbstractAsyncContextManager[AsyncConnection]:
        """Check out a connection for one logical operation.

        Raises:
            Exception: Any store error, including pool checkout timeouts.
                Use ``is_store_unavailable()`` to classify it.

        Example:
            async with store.connect() as conn:
                await conn.execute(text("SELECT 1"))
        """
        ...

    async def test_connection(self) -> bool:
        """Return ``True`` when ``SELECT 1`` succeeds; raise otherwise."""
        ...

    async def close(self) -> None:
        """Dispose of the connection pool."""
        ...
