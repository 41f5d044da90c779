from __future__ import annotations

from abc import abstractmethod
from contextlib import contextmanager
from typing import Any, ClassVar, Iterator, List, Optional, Tuple

from report_engine.data.models import ColumnType, RawEngineResult, SystemConfig
from report_engine.db.base import BackendAdapter, build_result
from report_engine.db.cancel import CancelToken
from report_engine.exceptions.errors import BackendConnectionError, QueryError


class DbApiAdapter(BackendAdapter):
    """Base for engines reached through a PEP 249 driver.

    Subclasses open the connection, name the driver's exception families
    and map `cursor.description` type codes to a ColumnType.
    """

    # Raised while the query runs but meaning the link is gone.
    disconnect_errors: ClassVar[Tuple[type, ...]] = ()
    # Base class of everything else the driver raises.
    driver_errors: ClassVar[Tuple[type, ...]] = ()

    @abstractmethod
    def open(self, config: SystemConfig) -> Any:
        """Return a new DB-API connection; raise BackendConnectionError on failure."""

    def kind_of(self, type_code: Any) -> Optional[ColumnType]:
        return None

    def type_name(self, type_code: Any) -> Optional[str]:
        return None if type_code is None else str(type_code)

    def connect(self, config: SystemConfig):
        return self._scoped(config)

    @contextmanager
    def _scoped(self, config: SystemConfig) -> Iterator[Any]:
        conn = self.open(config)
        try:
            yield conn
        finally:
            try:
                conn.close()
            except self.driver_errors:
                self.log.warning("Closing connection failed", extra={"system": config.name}, exc_info=True)

    def run_query(self, conn: Any, query_text: str, cancel: CancelToken) -> RawEngineResult:
        cur = conn.cursor()
        try:
            cur.execute(query_text)
            description = cur.description or ()
            records: List[Any] = cur.fetchall() if cur.description else []
        except self.disconnect_errors as e:
            raise BackendConnectionError(f"{self.engine} connection lost: {e}") from e
        except self.driver_errors as e:
            if self.connection_lost(conn, e):
                raise BackendConnectionError(f"{self.engine} connection lost: {e}") from e
            raise QueryError(f"{self.engine} query failed: {e}") from e
        finally:
            self._close_cursor(cur)

        return self.result_from(description, records)

    def connection_lost(self, conn: Any, exc: Exception) -> bool:
        """True when a driver error means the server went away mid-query."""
        return False

    def _close_cursor(self, cur: Any) -> None:
        try:
            cur.close()
        except self.driver_errors:
            # the connection is already gone
            self.log.debug("Closing cursor failed", exc_info=True)

    def result_from(self, description: Any, records: List[Any]) -> RawEngineResult:
        codes = [d[1] for d in description]
        return build_result(
            [d[0] for d in description],
            [self.kind_of(c) for c in codes],
            [self.type_name(c) for c in codes],
            records,
        )
