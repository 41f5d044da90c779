from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd

from report_engine.exceptions.errors import CompileError
from report_engine.logging.logger import get_logger

log = get_logger("viz.compiler")

CARTESIAN_MARKS = {"bar", "line", "point", "area"}
SUPPORTED_MARKS = CARTESIAN_MARKS | {"arc"}
SUPPORTED_CHANNELS = {"x", "y", "color", "theta"}

_TYPE_ALIASES = {
    "quantitative": "quantitative", "q": "quantitative",
    "nominal": "nominal", "n": "nominal",
    "ordinal": "ordinal", "o": "ordinal",
    "temporal": "temporal", "t": "temporal",
}
_SCALE_FOR_TYPE = {"quantitative": "linear", "nominal": "band", "ordinal": "band", "temporal": "time"}
_SORT_ORDERS = {"ascending", "descending", None}


@dataclass(frozen=True)
class Scale:
    kind: str  # band | linear | time
    # band: ordered categories; linear/time: (min, max), empty without data
    domain: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class Encoding:
    channel: str
    field: str
    type: str
    title: str
    scale: Scale
    # One parsed value per record: float (NaN if missing) for quantitative,
    # pd.Timestamp (NaT if missing) for temporal, str otherwise.
    values: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class RenderPlan:
    mark: str
    title: str
    encodings: Dict[str, Encoding]
    row_count: int
    width: Optional[int] = None
    height: Optional[int] = None
    mark_props: Dict[str, Any] = field(default_factory=dict)

    def channel(self, name: str) -> Optional[Encoding]:
        return self.encodings.get(name)


def _resolve_mark(spec: Mapping[str, Any]) -> Tuple[str, Dict[str, Any]]:
    mark = spec.get("mark")
    props: Dict[str, Any] = {}
    if isinstance(mark, Mapping):
        props = {k: v for k, v in mark.items() if k != "type"}
        mark = mark.get("type")
    if not mark:
        raise CompileError("Chart spec has no 'mark'")
    if not isinstance(mark, str) or mark.lower() not in SUPPORTED_MARKS:
        raise CompileError(f"Unsupported mark: {mark!r}. Supported: {', '.join(sorted(SUPPORTED_MARKS))}")
    return mark.lower(), props


def _resolve_title(spec: Mapping[str, Any]) -> str:
    title = spec.get("title", "")
    if isinstance(title, Mapping):
        title = title.get("text", "")
    if isinstance(title, (list, tuple)):
        title = " ".join(str(t) for t in title)
    return "" if title is None else str(title)


def _resolve_size(spec: Mapping[str, Any], key: str) -> Optional[int]:
    v = spec.get(key)
    if v is None:
        return None
    if isinstance(v, bool) or not isinstance(v, int) or v <= 0:
        raise CompileError(f"'{key}' must be a positive integer, got {v!r}")
    return v


def _parse_values(channel: str, field_name: str, type_: str, raw: Sequence[Any]) -> Tuple[Any, ...]:
    if type_ not in ("quantitative", "temporal"):
        return tuple("" if v is None else str(v) for v in raw)

    # The normalizer's empty-string sentinel means "no value".
    cleaned = pd.Series([None if v in ("", None) else v for v in raw], dtype=object)
    try:
        if type_ == "quantitative":
            parsed = pd.to_numeric(cleaned, errors="raise").astype(float)
        else:
            parsed = pd.to_datetime(cleaned, errors="raise", format="ISO8601")
    except (ValueError, TypeError) as e:
        raise CompileError(f"Channel '{channel}': field '{field_name}' holds non-{type_} values: {e}") from e
    return tuple(parsed.tolist())


def _domain(kind: str, values: Tuple[Any, ...], sort: Optional[str]) -> Tuple[Any, ...]:
    if kind == "band":
        seen: Dict[str, None] = dict.fromkeys(values)
        cats = list(seen)
        if sort is not None:
            cats.sort(reverse=(sort == "descending"))
        return tuple(cats)

    present = [v for v in values if not pd.isna(v)]
    if not present:
        return ()
    lo, hi = min(present), max(present)
    return (hi, lo) if sort == "descending" else (lo, hi)


def _compile_encoding(channel: str, enc: Any, values: Sequence[Mapping[str, Any]]) -> Encoding:
    if channel not in SUPPORTED_CHANNELS:
        raise CompileError(f"Unsupported encoding channel: {channel!r}")
    if not isinstance(enc, Mapping):
        raise CompileError(f"Encoding for '{channel}' must be an object")

    field_name = enc.get("field")
    if not field_name or not isinstance(field_name, str):
        raise CompileError(f"Encoding for '{channel}' has no 'field'")

    raw_type = enc.get("type")
    type_ = _TYPE_ALIASES.get(str(raw_type).lower()) if raw_type is not None else None
    if type_ is None:
        raise CompileError(f"Encoding for '{channel}' has invalid type {raw_type!r}")

    sort = enc.get("sort", "ascending")
    if sort not in _SORT_ORDERS:
        raise CompileError(f"Encoding for '{channel}' has invalid sort {sort!r}")

    if values and field_name not in values[0]:
        raise CompileError(f"Field '{field_name}' (channel '{channel}') is not in the data")

    parsed = _parse_values(channel, field_name, type_, [row.get(field_name) for row in values])
    kind = _SCALE_FOR_TYPE[type_]
    return Encoding(
        channel=channel,
        field=field_name,
        type=type_,
        title=str(enc.get("title") or field_name),
        scale=Scale(kind=kind, domain=_domain(kind, parsed, sort)),
        values=parsed,
    )


def compile_spec(spec: Mapping[str, Any], values: Sequence[Mapping[str, Any]]) -> RenderPlan:
    """Resolve a declarative chart spec against bound values.

    Raises CompileError for anything that cannot be drawn; nothing is
    rasterized here.
    """
    if not isinstance(spec, Mapping):
        raise CompileError(f"Chart spec must be an object, got {type(spec).__name__}")

    mark, props = _resolve_mark(spec)
    encoding = spec.get("encoding") or {}
    if not isinstance(encoding, Mapping):
        raise CompileError("'encoding' must be an object")

    encodings = {ch: _compile_encoding(ch, enc, values) for ch, enc in encoding.items()}

    required = ("theta",) if mark == "arc" else ("x", "y")
    missing = [ch for ch in required if ch not in encodings]
    if missing:
        raise CompileError(f"Mark '{mark}' requires channel(s): {', '.join(missing)}")

    plan = RenderPlan(
        mark=mark,
        title=_resolve_title(spec),
        encodings=encodings,
        row_count=len(values),
        width=_resolve_size(spec, "width"),
        height=_resolve_size(spec, "height"),
        mark_props=props,
    )
    log.debug(
        "Compiled chart spec",
        extra={"mark": mark, "channels": ",".join(sorted(encodings)), "rows": plan.row_count},
    )
    return plan


def load_chart_spec(
    inline: Union[str, Mapping[str, Any], None] = None,
    path: Union[str, Path, None] = None,
) -> Dict[str, Any]:
    """Read a chart spec from a file or inline JSON.

    A readable file wins over the inline value.
    """
    if path is not None and Path(path).is_file():
        text = Path(path).read_text(encoding="utf-8")
        source = str(path)
    elif isinstance(inline, Mapping):
        return dict(inline)
    elif inline:
        text = inline
        source = "inline spec"
    else:
        raise CompileError(f"No chart spec given (path={path!r})")

    try:
        spec = json.loads(text)
    except json.JSONDecodeError as e:
        raise CompileError(f"Invalid JSON in {source}: {e}") from e
    if not isinstance(spec, dict):
        raise CompileError(f"Chart spec in {source} must be a JSON object")
    return spec


def bind_values(spec: Mapping[str, Any], values: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Copy of `spec` with its data block replaced by the bound values."""
    bound = dict(spec)
    bound["data"] = {"values": values}
    return bound
