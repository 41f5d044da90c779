from __future__ import annotations

from typing import Any, Optional

import psycopg2
from psycopg2.extensions import QueryCanceledError

from report_engine.data.models import ColumnType, SystemConfig
from report_engine.db.dbapi import DbApiAdapter
from report_engine.exceptions.errors import BackendConnectionError

# pg_type OIDs: int8, int2, int4, oid, float4, float8, numeric
NUMERIC_OIDS = frozenset({20, 21, 23, 26, 700, 701, 1700})


class PostgresAdapter(DbApiAdapter):
    """PostgreSQL via psycopg2.

    Params: host, port (5432), database, username, ssl, connect_timeout.
    Credentials: password.
    """

    engine = "postgres"
    aliases = ("postgresql", "pg")

    disconnect_errors = (psycopg2.InterfaceError,)
    driver_errors = (psycopg2.Error,)

    def open(self, config: SystemConfig) -> Any:
        kwargs = dict(
            host=config.param("host"),
            port=int(config.param("port", 5432)),
            dbname=config.param("database"),
            user=config.param("username"),
            password=config.credential("password"),
            connect_timeout=int(config.param("connect_timeout", 10)),
        )
        if config.param("ssl"):
            kwargs["sslmode"] = "require"
        try:
            conn = psycopg2.connect(**kwargs)
        except psycopg2.Error as e:
            raise BackendConnectionError(f"PostgreSQL connection failed: {e}", system=config.name) from e
        # Read-only reporting; no transaction left open on the server.
        conn.autocommit = True
        return conn

    def interrupt(self, conn: Any) -> None:
        conn.cancel()

    def connection_lost(self, conn: Any, exc: Exception) -> bool:
        # A cancelled statement is also an OperationalError, but the link survives it.
        if isinstance(exc, QueryCanceledError) or not isinstance(exc, psycopg2.OperationalError):
            return False
        return bool(conn.closed)

    def kind_of(self, type_code: Any) -> Optional[ColumnType]:
        if type_code is None:
            return None
        return ColumnType.FLOAT if type_code in NUMERIC_OIDS else ColumnType.STRING
