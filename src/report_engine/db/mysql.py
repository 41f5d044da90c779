from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import pymysql
from pymysql.constants import CR, FIELD_TYPE

from report_engine.data.models import ColumnType, SystemConfig
from report_engine.db.dbapi import DbApiAdapter
from report_engine.exceptions.errors import BackendConnectionError

NUMERIC_FIELD_TYPES = frozenset(
    {
        FIELD_TYPE.DECIMAL,
        FIELD_TYPE.TINY,
        FIELD_TYPE.SHORT,
        FIELD_TYPE.LONG,
        FIELD_TYPE.FLOAT,
        FIELD_TYPE.DOUBLE,
        FIELD_TYPE.LONGLONG,
        FIELD_TYPE.INT24,
        FIELD_TYPE.YEAR,
        FIELD_TYPE.NEWDECIMAL,
    }
)

_FIELD_TYPE_NAMES = {v: k for k, v in vars(FIELD_TYPE).items() if k.isupper()}

# Client error codes for a link that dropped while a statement was running.
LOST_CONNECTION_CODES = frozenset({CR.CR_SERVER_GONE_ERROR, CR.CR_SERVER_LOST})


def _connect_kwargs(config: SystemConfig) -> dict:
    kwargs = dict(
        host=config.param("host"),
        port=int(config.param("port", 3306)),
        database=config.param("database"),
        user=config.param("username"),
        password=config.credential("password") or "",
        connect_timeout=int(config.param("connect_timeout", 10)),
        charset="utf8mb4",
    )
    if config.param("ssl"):
        kwargs["ssl"] = {"check_hostname": False}
    return kwargs


class MySQLAdapter(DbApiAdapter):
    """MySQL / MariaDB via PyMySQL.

    Params: host, port (3306), database, username, ssl, connect_timeout.
    Credentials: password.

    PyMySQL cannot cancel from another thread, so an interrupt opens a
    second connection and issues KILL QUERY for the running thread id.
    """

    engine = "mysql"
    aliases = ("mariadb",)

    disconnect_errors = (pymysql.err.InterfaceError,)
    driver_errors = (pymysql.err.Error,)

    def __init__(self) -> None:
        super().__init__()
        # server thread id -> config of the open connection, for KILL QUERY
        self._open: Dict[Any, SystemConfig] = {}

    def open(self, config: SystemConfig) -> Any:
        try:
            return pymysql.connect(**_connect_kwargs(config))
        except pymysql.err.Error as e:
            raise BackendConnectionError(f"MySQL connection failed: {e}", system=config.name) from e

    def connect(self, config: SystemConfig):
        return self._tracked(config)

    @contextmanager
    def _tracked(self, config: SystemConfig) -> Iterator[Any]:
        with self._scoped(config) as conn:
            thread_id = conn.thread_id()
            self._open[thread_id] = config
            try:
                yield conn
            finally:
                self._open.pop(thread_id, None)

    def interrupt(self, conn: Any) -> None:
        thread_id = conn.thread_id()
        config = self._open.get(thread_id)
        if config is None:
            return
        self.log.info("Killing running query", extra={"system": config.name, "thread_id": thread_id})
        killer = pymysql.connect(**_connect_kwargs(config))
        try:
            killer.cursor().execute(f"KILL QUERY {int(thread_id)}")
        finally:
            killer.close()

    def connection_lost(self, conn: Any, exc: Exception) -> bool:
        return isinstance(exc, pymysql.err.OperationalError) and bool(exc.args) and exc.args[0] in LOST_CONNECTION_CODES

    def kind_of(self, type_code: Any) -> Optional[ColumnType]:
        if type_code is None:
            return None
        return ColumnType.FLOAT if type_code in NUMERIC_FIELD_TYPES else ColumnType.STRING

    def type_name(self, type_code: Any) -> Optional[str]:
        if type_code is None:
            return None
        return _FIELD_TYPE_NAMES.get(type_code, str(type_code))
