from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Optional

import duckdb

from report_engine.data.models import ColumnType, RawEngineResult, SystemConfig
from report_engine.db.base import BackendAdapter, build_result
from report_engine.db.cancel import CancelToken
from report_engine.exceptions.errors import BackendConnectionError, QueryError

# Base type names (before any "(p,s)" suffix); nested types like INTEGER[] stay STRING.
NUMERIC_TYPES = frozenset(
    {
        "tinyint", "smallint", "integer", "bigint", "hugeint",
        "utinyint", "usmallint", "uinteger", "ubigint", "uhugeint",
        "float", "real", "double", "decimal",
    }
)


def duckdb_kind(type_name: Optional[str]) -> Optional[ColumnType]:
    if not type_name:
        return None
    base = type_name.strip().lower().split("(", 1)[0]
    return ColumnType.FLOAT if base in NUMERIC_TYPES else ColumnType.STRING


class DuckDBAdapter(BackendAdapter):
    """DuckDB, in-memory or a database file.

    Params: path (":memory:"), read_only (true for files).
    """

    engine = "duckdb"

    def connect(self, config: SystemConfig):
        return _duckdb_connection(config)

    def interrupt(self, conn: Any) -> None:
        conn.interrupt()

    def run_query(self, conn: Any, query_text: str, cancel: CancelToken) -> RawEngineResult:
        try:
            rel = conn.sql(query_text)
            if rel is None:
                # statement without a result set (DDL, SET, ...)
                return RawEngineResult(fields=[], rows=[])
            names = list(rel.columns)
            type_names = [str(t) for t in rel.types]
            records = rel.fetchall()
        except duckdb.Error as e:
            raise QueryError(f"DuckDB query failed: {e}") from e
        return build_result(names, [duckdb_kind(t) for t in type_names], type_names, records)


@contextmanager
def _duckdb_connection(config: SystemConfig) -> Iterator[Any]:
    path = str(config.param("path", ":memory:"))
    read_only = path != ":memory:" and str(config.param("read_only", True)).lower() not in {"false", "0", "no"}
    try:
        conn = duckdb.connect(path, read_only=read_only)
    except duckdb.Error as e:
        raise BackendConnectionError(f"DuckDB open failed for {path}: {e}", system=config.name) from e
    try:
        yield conn
    finally:
        conn.close()
