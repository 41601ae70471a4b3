from __future__ import annotations

import asyncio
import re
from typing import Any

from psycopg import AsyncConnection
from psycopg.rows import dict_row

from records_engine.errors import QueryExecutionError
from records_engine.resources import ResourceCatalog, default_catalog
from records_engine.schemas import QuerySpecification
from records_engine.services.translator import CompiledQuery, compile_resource_query
from records_engine.settings import Settings, get_settings

_DANGEROUS_PATTERN = re.compile(
    r"\b(insert|update|delete|drop|alter|truncate|create|grant|revoke|merge|call|execute|copy|vacuum|analyze|refresh|reindex)\b",
    re.IGNORECASE,
)


def _validate_sql(sql: str) -> None:
    lowered = " ".join(sql.strip().split()).lower().strip("; ").strip()
    if not lowered.startswith("select "):
        raise QueryExecutionError("Only read-only SELECT statements are allowed", status_code=500)
    if ";" in lowered or _DANGEROUS_PATTERN.search(lowered):
        raise QueryExecutionError("Dangerous SQL operation blocked", status_code=500)


class PostgresResourceBackend:
    def __init__(self, settings: Settings | None = None, catalog: ResourceCatalog | None = None) -> None:
        self._settings = settings or get_settings()
        self._catalog = catalog or default_catalog()

    async def fetch(self, spec: QuerySpecification) -> tuple[list[dict[str, Any]], int]:
        compiled = compile_resource_query(self._catalog.get(spec.resource_type), spec)
        _validate_sql(compiled.rows.sql)
        _validate_sql(compiled.count.sql)

        conn: AsyncConnection[Any] | None = None
        try:
            conn = await AsyncConnection.connect(self._settings.resource_db_url, row_factory=dict_row)
            rows = await self._run(conn, compiled.rows)
            count_rows = await self._run(conn, compiled.count)
        except asyncio.TimeoutError as exc:
            raise QueryExecutionError("Query execution timed out", cause=exc, status_code=504) from exc
        except QueryExecutionError:
            raise
        except Exception as exc:
            raise QueryExecutionError("Datasource execution failed", cause=exc) from exc
        finally:
            if conn:
                await conn.close()

        total = int(count_rows[0]["total"]) if count_rows else len(rows)
        return rows[: compiled.row_limit], total

    async def _run(self, conn: AsyncConnection[Any], compiled: CompiledQuery) -> list[dict[str, Any]]:
        cursor = await asyncio.wait_for(
            conn.execute(compiled.sql, compiled.params),
            timeout=self._settings.backend_timeout_seconds,
        )
        return list(await cursor.fetchall())

    async def aclose(self) -> None:
        return None
