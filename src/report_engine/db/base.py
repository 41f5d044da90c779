"""Shared adapter contract.

Each engine variant implements three hooks:

  connect(config)              context manager yielding a live connection;
                               closes it on every exit path
  run_query(conn, sql, cancel) executes and returns a RawEngineResult
  interrupt(conn)              optional, aborts an in-flight call from
                               another thread when the CancelToken fires

`BackendAdapter.execute` wires them together, unwraps date-like values,
fills in missing field types from the first row and keeps column names
unique.
"""
from __future__ import annotations

import datetime as _dt
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, ClassVar, ContextManager, Dict, List, Optional, Sequence, Tuple

from report_engine.data.models import (
    ColumnType,
    FieldDescriptor,
    RawEngineResult,
    SystemConfig,
    unique_names,
)
from report_engine.db.cancel import CancelToken
from report_engine.exceptions.errors import (
    OperationCancelled,
    QueryError,
    ReportEngineError,
    SchemaInferenceWarning,
)
from report_engine.logging.logger import get_logger

log = get_logger("db.base")


def canonical_value(value: Any) -> Any:
    """Unwrap date-like driver values to ISO-8601 text; leave the rest alone."""
    if isinstance(value, (_dt.datetime, _dt.date, _dt.time)):
        return value.isoformat()
    return value


def _is_numeric(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def infer_kinds(
    fields: Sequence[FieldDescriptor],
    rows: Sequence[Dict[str, Any]],
    system: Optional[str],
) -> Tuple[List[FieldDescriptor], List[SchemaInferenceWarning]]:
    """Give every untyped field a kind, judged from the first row only."""
    first = rows[0] if rows else {}
    out: List[FieldDescriptor] = []
    warns: List[SchemaInferenceWarning] = []
    for f in fields:
        if f.kind is not None:
            out.append(f)
            continue
        kind = ColumnType.FLOAT if _is_numeric(first.get(f.name)) else ColumnType.STRING
        w = SchemaInferenceWarning(
            f"No schema type for column '{f.name}'; inferred {kind.value} from first row",
            system=system,
            column=f.name,
        )
        log.warning(w.message, extra=w.context())
        warns.append(w)
        out.append(FieldDescriptor(name=f.name, kind=kind, native_type=f.native_type))
    return out, warns


def build_result(
    names: Sequence[str],
    kinds: Sequence[Optional[ColumnType]],
    native_types: Sequence[Optional[str]],
    records: Sequence[Sequence[Any]],
) -> RawEngineResult:
    """Assemble a RawEngineResult from cursor-style description + tuples."""
    names = unique_names(list(names))
    fields = [FieldDescriptor(name=n, kind=k, native_type=t) for n, k, t in zip(names, kinds, native_types)]
    rows = [{n: canonical_value(v) for n, v in zip(names, rec)} for rec in records]
    return RawEngineResult(fields=fields, rows=rows)


class BackendAdapter(ABC):
    """One engine family. Stateless; a fresh connection per `execute` call."""

    engine: ClassVar[str] = ""
    aliases: ClassVar[Tuple[str, ...]] = ()

    def __init__(self) -> None:
        self.log = get_logger(f"db.{self.engine}")

    def execute(
        self,
        config: SystemConfig,
        query_text: str,
        cancel: Optional[CancelToken] = None,
    ) -> RawEngineResult:
        if not query_text or not query_text.strip():
            raise QueryError("Query text is empty", system=config.name)
        cancel = cancel or CancelToken()
        cancel.raise_if_cancelled()

        self.log.info(
            "Executing query",
            extra={"system": config.name, "engine": self.engine, "sql_head": query_text[:300]},
        )
        start = time.perf_counter()
        try:
            with self.connect(config) as conn:
                with cancel.on_cancel(lambda: self.interrupt(conn)):
                    raw = self.run_query(conn, query_text, cancel)
        except ReportEngineError as exc:
            if cancel.cancelled and not isinstance(exc, OperationCancelled):
                raise OperationCancelled(
                    f"{self.engine} query cancelled: {cancel.reason}", system=config.name
                ) from exc
            if exc.system is None:
                exc.system = config.name
            raise

        fields, inferred = infer_kinds(raw.fields, raw.rows, config.name)

        self.log.info(
            "Query completed",
            extra={
                "system": config.name,
                "rows": len(raw.rows),
                "elapsed_ms": round((time.perf_counter() - start) * 1000, 1),
            },
        )
        return RawEngineResult(fields=fields, rows=raw.rows, warnings=list(raw.warnings) + inferred)

    @abstractmethod
    def connect(self, config: SystemConfig) -> ContextManager[Any]:
        """Open a connection; the context manager must close it on exit."""

    @abstractmethod
    def run_query(self, conn: Any, query_text: str, cancel: CancelToken) -> RawEngineResult:
        """Run the query on an open connection."""

    def interrupt(self, conn: Any) -> None:
        """Abort an in-flight call on `conn`. Default: nothing to do."""
