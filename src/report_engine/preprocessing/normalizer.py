from __future__ import annotations

import datetime as _dt
import json
import math
import numbers
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from report_engine.data.models import ColumnType, FieldDescriptor, UniversalTabularResult
from report_engine.exceptions.errors import CoercionWarning, ReportWarning
from report_engine.logging.logger import get_logger

log = get_logger("preprocessing.normalizer")

# Substituted for absent values and SQL NULL alike, for every engine.
MISSING = ""


def _float_text(v: float) -> str:
    if math.isnan(v):
        return "NaN"
    if math.isinf(v):
        return "Infinity" if v > 0 else "-Infinity"
    if v.is_integer():
        return str(int(v))
    return repr(v)


def to_text(value: Any) -> str:
    """Total, deterministic value -> text conversion used for every cell."""
    if value is None:
        return MISSING
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, numbers.Integral):
        return str(int(value))
    if isinstance(value, numbers.Real):
        return _float_text(float(value))
    if isinstance(value, (_dt.datetime, _dt.date, _dt.time)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, (Mapping, list, tuple, set, frozenset)):
        return json.dumps(_jsonable(value), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return str(value)


def _jsonable(value: Any) -> Any:
    # JSON-native scalars stay as they are; everything else goes through to_text.
    if value is None or isinstance(value, (str, bool)):
        return value
    if isinstance(value, numbers.Integral):
        return int(value)
    if isinstance(value, float) and math.isfinite(value):
        return value
    if isinstance(value, Mapping):
        return {to_text(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        return [_jsonable(v) for v in sorted(value, key=to_text)]
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return to_text(value)


def normalize(
    fields: Sequence[FieldDescriptor],
    rows: Iterable[Mapping[str, Any]],
    *,
    system: Optional[str] = None,
    query: Optional[str] = None,
    warnings: Iterable[ReportWarning] = (),
) -> UniversalTabularResult:
    """Build a UniversalTabularResult from adapter fields and rows.

    A field is FLOAT only when its kind says so. A row missing a column gets
    MISSING and one CoercionWarning; keys outside the fields are dropped.
    """
    columns = [f.name for f in fields]
    if len(set(columns)) != len(columns):
        raise ValueError(f"Duplicate field names: {columns}")
    types = [ColumnType.FLOAT if f.kind == ColumnType.FLOAT else ColumnType.STRING for f in fields]

    out_rows: List[Dict[str, str]] = []
    collected: List[ReportWarning] = list(warnings)
    for i, row in enumerate(rows):
        out: Dict[str, str] = {}
        for col in columns:
            if col in row:
                out[col] = to_text(row[col])
                continue
            w = CoercionWarning(
                f"Missing value for column '{col}' in row {i}; substituted empty string",
                system=system,
                column=col,
                row_index=i,
            )
            log.warning(w.message, extra=w.context())
            collected.append(w)
            out[col] = MISSING
        out_rows.append(out)

    return UniversalTabularResult(
        columns=columns,
        types=types,
        rows=out_rows,
        warnings=collected,
        system=system,
        query=query,
    )
