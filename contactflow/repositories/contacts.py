"""
Contactflow - Contact Repository

Relational persistence for imported contacts. A batch is written with one
INSERT over unnest()ed arrays, so a batch lands completely or not at all.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, Sequence

from ..core.logging import get_logger
from ..core.models import ContactRow

if TYPE_CHECKING:
    from psycopg_pool import AsyncConnectionPool

logger = get_logger(__name__)


class ContactRepository(Protocol):
    """Contact persistence operations the worker needs."""

    async def create_many(self, rows: Sequence[ContactRow], job_id: str) -> int: ...

    async def count_for_job(self, job_id: str) -> int: ...


class PostgresContactRepository:
    """ContactRepository over the contacts table (see sql/schema.sql)."""

    def __init__(self, pool: "AsyncConnectionPool") -> None:
        self._pool = pool

    async def create_many(self, rows: Sequence[ContactRow], job_id: str) -> int:
        """Insert the whole batch in one statement. Returns rows inserted."""
        if not rows:
            return 0

        async with self._pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    INSERT INTO contacts (name, email, source, imported_at, import_job_id)
                    SELECT n, e, s, t, %(job_id)s
                    FROM unnest(
                        %(names)s::text[],
                        %(emails)s::text[],
                        %(sources)s::text[],
                        %(imported_at)s::timestamptz[]
                    ) AS batch(n, e, s, t)
                    """,
                    {
                        "job_id": job_id,
                        "names": [row.name for row in rows],
                        "emails": [row.email for row in rows],
                        "sources": [row.source for row in rows],
                        "imported_at": [row.imported_at for row in rows],
                    },
                )
                inserted = cur.rowcount

        logger.debug(f"Inserted {inserted} contacts", extra={"job_id": job_id, "count": inserted})
        return inserted

    async def count_for_job(self, job_id: str) -> int:
        """Rows already persisted for a job (non-zero on a redelivered task)."""
        async with self._pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    "SELECT count(*) FROM contacts WHERE import_job_id = %(job_id)s",
                    {"job_id": job_id},
                )
                row = await cur.fetchone()
        return int(row[0]) if row else 0
