"""Database pipe — named queries against SQLite or PostgreSQL."""

from __future__ import annotations

import asyncio
import logging
import re
import sqlite3
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from flowbot.errors import PipeConnectionError, PipeError, PipeUnavailable
from flowbot.pipes.base import ConnectionState, Pipe, PipeSink

logger = logging.getLogger(__name__)

DRIVERS = ("sqlite", "postgres")

_IDENTIFIER_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def identifier(name: str) -> str:
    """Validate a table or column name; they cannot be bound as parameters."""
    if not isinstance(name, str) or not _IDENTIFIER_RE.fullmatch(name):
        raise PipeError(f"Invalid SQL identifier {name!r}", {"identifier": name})
    return name


class DatabasePipe(Pipe):
    """Runs SQL for flows.

    Config: ``driver`` (sqlite | postgres), ``database`` (file path for
    sqlite) or ``url`` (DSN for postgres), and ``queries``: a mapping of name
    to ``{sql, parameters}`` where ``parameters`` lists the argument names in
    placeholder order. Read queries return a list of row dicts, writes return
    ``{"rowcount": n}``.
    """

    kind = "database"

    def __init__(self, name: str, config: dict[str, Any], sink: PipeSink | None = None) -> None:
        super().__init__(name, config, sink)
        self.driver: str = config.get("driver", "sqlite")
        if self.driver not in DRIVERS:
            raise ValueError(f"Unsupported database driver '{self.driver}'")
        self.queries: dict[str, dict[str, Any]] = {}
        for query_name, query in (config.get("queries") or {}).items():
            self.queries[query_name] = query if isinstance(query, dict) else {"sql": query}
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._pool: Any = None

    async def connect(self) -> bool:
        if self.is_connected():
            return True
        self._transition(ConnectionState.CONNECTING)
        try:
            if self.driver == "sqlite":
                self._open_sqlite()
            else:
                import asyncpg

                self._pool = await asyncpg.create_pool(self.config.get("url"))
        except Exception as exc:
            self.last_error = str(exc)
            self.retry_count += 1
            self._transition(ConnectionState.FAILED)
            raise PipeConnectionError(self.name, str(exc), self.retry_count) from exc
        self.retry_count = 0
        self._transition(ConnectionState.CONNECTED)
        logger.info("Database pipe %s connected (%s)", self.name, self.driver)
        return True

    def _open_sqlite(self) -> None:
        database = str(self.config.get("database") or self.config.get("path") or ":memory:")
        if database != ":memory:":
            Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(database, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row

    async def disconnect(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
        self._transition(ConnectionState.DISCONNECTED)

    def _ordered(self, query_name: str, params: Any) -> tuple[str, list[Any]]:
        query = self.queries.get(query_name)
        if query is None:
            raise PipeError(
                f"Unknown query '{query_name}' on database pipe '{self.name}'",
                {"pipe": self.name, "query": query_name},
            )
        if isinstance(params, Mapping):
            values = [params.get(name) for name in query.get("parameters") or []]
        else:
            values = list(params or [])
        return query["sql"], values

    async def query(self, query_name: str, params: Any = None) -> Any:
        """Run a named query with *params* (mapping by name or positional list)."""
        sql, values = self._ordered(query_name, params)
        return await self.execute_sql(sql, values)

    async def execute_sql(self, sql: str, params: Any = None) -> Any:
        if not self.is_connected():
            raise PipeUnavailable(self.name, self._state.value)
        values = list(params.values()) if isinstance(params, Mapping) else list(params or [])
        if self.driver == "sqlite":
            try:
                return await asyncio.to_thread(self._run_sqlite, sql, values)
            except sqlite3.Error as exc:
                raise PipeError(
                    f"Query failed on database pipe '{self.name}': {exc}", {"pipe": self.name}
                ) from exc
        return await self._run_postgres(sql, values)

    def _run_sqlite(self, sql: str, values: list[Any]) -> Any:
        assert self._conn is not None
        with self._lock:
            cursor = self._conn.execute(sql, values)
            if cursor.description is not None:
                return [dict(row) for row in cursor.fetchall()]
            self._conn.commit()
            return {"rowcount": cursor.rowcount}

    async def _run_postgres(self, sql: str, values: list[Any]) -> Any:
        async with self._pool.acquire() as conn:
            if sql.lstrip().lower().startswith(("select", "with")) or " returning " in sql.lower():
                rows = await conn.fetch(sql, *values)
                return [dict(row) for row in rows]
            status = await conn.execute(sql, *values)
            # asyncpg status strings look like "UPDATE 3"
            count = status.rsplit(" ", 1)[-1]
            return {"rowcount": int(count) if count.isdigit() else 0}

    # ------------------------------------------------------------------
    # Table helpers
    # ------------------------------------------------------------------

    def _marker(self, index: int) -> str:
        return "?" if self.driver == "sqlite" else f"${index}"

    def _where(self, where: Mapping[str, Any], values: list[Any]) -> str:
        clauses = []
        for column, value in where.items():
            if value is None:
                clauses.append(f"{identifier(column)} IS NULL")
                continue
            values.append(value)
            clauses.append(f"{identifier(column)} = {self._marker(len(values))}")
        return " WHERE " + " AND ".join(clauses) if clauses else ""

    async def insert(self, table: str, data: Mapping[str, Any]) -> int:
        """Insert one row; returns the number of rows written."""
        if not data:
            raise PipeError(f"Nothing to insert into '{table}'", {"pipe": self.name})
        columns = ", ".join(identifier(column) for column in data)
        markers = ", ".join(self._marker(i) for i in range(1, len(data) + 1))
        sql = f"INSERT INTO {identifier(table)} ({columns}) VALUES ({markers})"
        result = await self.execute_sql(sql, list(data.values()))
        return result["rowcount"]

    async def update(
        self,
        table: str,
        where: Mapping[str, Any],
        data: Mapping[str, Any],
        upsert: bool = False,
    ) -> int:
        """Update rows matching *where*.

        With ``upsert``, a miss inserts ``where`` merged with ``data`` instead.
        """
        if not data:
            raise PipeError(f"Nothing to update in '{table}'", {"pipe": self.name})
        values: list[Any] = []
        assignments = []
        for column, value in data.items():
            values.append(value)
            assignments.append(f"{identifier(column)} = {self._marker(len(values))}")
        clause = self._where(where, values)
        sql = f"UPDATE {identifier(table)} SET {', '.join(assignments)}{clause}"
        count = (await self.execute_sql(sql, values))["rowcount"]
        if count == 0 and upsert:
            return await self.insert(table, {**where, **data})
        return count

    async def delete(self, table: str, where: Mapping[str, Any]) -> int:
        """Delete rows matching *where*; an empty filter is refused."""
        if not where:
            raise PipeError(
                f"Refusing to delete from '{table}' without a filter", {"pipe": self.name}
            )
        values: list[Any] = []
        clause = self._where(where, values)
        result = await self.execute_sql(f"DELETE FROM {identifier(table)}{clause}", values)
        return result["rowcount"]

    async def send(self, data: Any, **options: Any) -> Any:
        """``data`` is a query name (or raw SQL with ``raw=True``)."""
        if options.get("raw"):
            return await self.execute_sql(str(data), options.get("params"))
        return await self.query(str(data), options.get("params"))
