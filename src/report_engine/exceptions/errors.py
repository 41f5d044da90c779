from __future__ import annotations

from typing import Optional


class ReportEngineError(Exception):
    """Base exception for report_engine."""

    def __init__(self, message: str, *, system: Optional[str] = None):
        super().__init__(message)
        self.system = system


class ConfigNotFound(ReportEngineError, LookupError):
    pass


class UnsupportedEngine(ReportEngineError):
    pass


class BackendConnectionError(ReportEngineError, ConnectionError):
    """Engine could not be reached or refused the credentials."""


class QueryError(ReportEngineError):
    """Engine rejected or failed on the submitted query text."""


class QueryTimeoutError(QueryError):
    pass


class OperationCancelled(ReportEngineError):
    pass


class ChartSpecError(ReportEngineError):
    pass


class CompileError(ChartSpecError):
    pass


class RenderError(ChartSpecError):
    pass


class ReportWarning(UserWarning):
    """Non-fatal condition recorded alongside a result.

    Instances are kept as values on the result (and logged); they are not
    raised through the ``warnings`` machinery.
    """

    def __init__(
        self,
        message: str,
        *,
        system: Optional[str] = None,
        column: Optional[str] = None,
        row_index: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.system = system
        self.column = column
        self.row_index = row_index

    def context(self) -> dict:
        return {"system": self.system, "column": self.column, "row_index": self.row_index}

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({self.message!r}, system={self.system!r}, "
            f"column={self.column!r}, row_index={self.row_index!r})"
        )


class SchemaInferenceWarning(ReportWarning):
    pass


class CoercionWarning(ReportWarning):
    pass
