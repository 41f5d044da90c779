from __future__ import annotations

from typing import Any, Optional

import pymssql

from report_engine.data.models import ColumnType, SystemConfig
from report_engine.db.dbapi import DbApiAdapter
from report_engine.exceptions.errors import BackendConnectionError

# cursor.description type codes reported by pymssql
_TYPE_CODE_NAMES = {1: "STRING", 2: "BINARY", 3: "NUMBER", 4: "DATETIME", 5: "DECIMAL"}

NUMERIC_TYPE_CODES = frozenset({3, 5})


class SqlServerAdapter(DbApiAdapter):
    """Microsoft SQL Server via pymssql.

    Params: host, port (1433), database, username, login_timeout.
    Credentials: password.
    """

    engine = "sqlserver"
    aliases = ("mssql",)

    disconnect_errors = (pymssql.InterfaceError,)
    driver_errors = (pymssql.Error,)

    def open(self, config: SystemConfig) -> Any:
        try:
            return pymssql.connect(
                server=config.param("host"),
                port=str(config.param("port", 1433)),
                database=config.param("database"),
                user=config.param("username"),
                password=config.credential("password"),
                login_timeout=int(config.param("login_timeout", 10)),
            )
        except pymssql.Error as e:
            raise BackendConnectionError(f"SQL Server connection failed: {e}", system=config.name) from e

    def kind_of(self, type_code: Any) -> Optional[ColumnType]:
        if type_code is None:
            return None
        return ColumnType.FLOAT if type_code in NUMERIC_TYPE_CODES else ColumnType.STRING

    def type_name(self, type_code: Any) -> Optional[str]:
        if type_code is None:
            return None
        return _TYPE_CODE_NAMES.get(type_code, str(type_code))
