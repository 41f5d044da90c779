from __future__ import annotations

from typing import Any, Optional

import snowflake.connector
from snowflake.connector import errors as sf_errors
from snowflake.connector.constants import FIELD_ID_TO_NAME

from report_engine.data.models import ColumnType, RawEngineResult, SystemConfig
from report_engine.db.cancel import CancelToken
from report_engine.db.dbapi import DbApiAdapter
from report_engine.exceptions.errors import BackendConnectionError, QueryError

# FIXED covers NUMBER/INT/DECIMAL, REAL covers FLOAT/DOUBLE
NUMERIC_TYPE_NAMES = frozenset({"FIXED", "REAL", "DECFLOAT"})

POLL_INTERVAL_SECONDS = 0.5


class SnowflakeAdapter(DbApiAdapter):
    """Snowflake via snowflake-connector-python.

    Params: account, username, warehouse, database, schema, role.
    Credentials: password.

    Queries run asynchronously and are polled, so a cancel aborts the
    statement on the server.
    """

    engine = "snowflake"

    disconnect_errors = (sf_errors.OperationalError, sf_errors.InterfaceError)
    driver_errors = (sf_errors.Error,)

    def open(self, config: SystemConfig) -> Any:
        try:
            return snowflake.connector.connect(
                account=config.param("account"),
                user=config.param("username"),
                password=config.credential("password"),
                warehouse=config.param("warehouse"),
                database=config.param("database"),
                schema=config.param("schema"),
                role=config.param("role"),
                login_timeout=int(config.param("login_timeout", 30)),
            )
        except sf_errors.Error as e:
            raise BackendConnectionError(f"Snowflake connection failed: {e}", system=config.name) from e

    def kind_of(self, type_code: Any) -> Optional[ColumnType]:
        name = self.type_name(type_code)
        if name is None:
            return None
        return ColumnType.FLOAT if name in NUMERIC_TYPE_NAMES else ColumnType.STRING

    def type_name(self, type_code: Any) -> Optional[str]:
        if type_code is None:
            return None
        return FIELD_ID_TO_NAME.get(type_code, str(type_code))

    def run_query(self, conn: Any, query_text: str, cancel: CancelToken) -> RawEngineResult:
        cur = conn.cursor()
        try:
            cur.execute_async(query_text)
            qid = cur.sfqid
            while conn.is_still_running(conn.get_query_status_throw_if_error(qid)):
                if cancel.wait(POLL_INTERVAL_SECONDS):
                    cur.abort_query(qid)
                    cancel.raise_if_cancelled()
            cur.get_results_from_sfqid(qid)
            description = cur.description or ()
            records = cur.fetchall() if cur.description else []
        except self.disconnect_errors as e:
            raise BackendConnectionError(f"Snowflake connection lost: {e}") from e
        except self.driver_errors as e:
            raise QueryError(f"Snowflake query failed: {e}") from e
        finally:
            cur.close()

        return self.result_from(description, records)
