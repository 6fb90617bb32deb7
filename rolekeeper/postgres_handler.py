import asyncio
import json
import logging
from datetime import datetime, timezone

import asyncpg

from .util import asyncpg_dsn

# Structured fields copied into the ``context`` column when present
CONTEXT_FIELDS = ("grant_id", "subject_id", "role_id", "action")


class PostgresHandler(logging.Handler):
    """Asynchronously insert log records into Postgres."""

    def __init__(self, dsn: str, table: str = "rolekeeper_logs") -> None:
        super().__init__()
        self.dsn = dsn
        self.table = table
        self.pool: asyncpg.Pool | None = None
        self.loop: asyncio.AbstractEventLoop | None = None
        # Ignore DEBUG records so they are not written to the database
        self.setLevel(logging.INFO)

    async def connect(self) -> None:
        self.pool = await asyncpg.create_pool(asyncpg_dsn(self.dsn))
        self.loop = asyncio.get_running_loop()

        create_sql = (
            f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                id SERIAL PRIMARY KEY,
                logger_name TEXT NOT NULL,
                log_level TEXT NOT NULL,
                message TEXT NOT NULL,
                context JSONB,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """
        )

        try:
            async with self.pool.acquire() as conn:
                await conn.execute(create_sql)
        except AttributeError:
            # tests may supply a simplified pool without 'acquire'
            await self.pool.execute(create_sql)

    async def aclose(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None

    def close(self) -> None:
        if self.pool:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(self.pool.close())
            else:
                loop.create_task(self.pool.close())
            self.pool = None
        super().close()

    @staticmethod
    def context_of(record: logging.LogRecord) -> str | None:
        context = {
            name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)
        }
        return json.dumps(context, default=str) if context else None

    def emit(self, record: logging.LogRecord) -> None:
        if not self.pool or not self.loop or self.loop.is_closed():
            return
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
        try:
            message = self.format(record)
        except Exception:
            self.handleError(record)
            return
        coro = self.pool.execute(
            f"INSERT INTO {self.table} (logger_name, log_level, message, context, created_at)"
            " VALUES ($1, $2, $3, $4, $5)",
            record.name,
            record.levelname,
            message,
            self.context_of(record),
            ts,
        )
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self.loop:
            self.loop.create_task(coro)
        else:
            asyncio.run_coroutine_threadsafe(coro, self.loop)
