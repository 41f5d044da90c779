from __future__ import annotations

import os
import tempfile
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd
from matplotlib.backends.backend_agg import FigureCanvasAgg
from matplotlib.figure import Figure

from report_engine.db.cancel import CancelToken
from report_engine.exceptions.errors import RenderError
from report_engine.logging.logger import get_logger
from report_engine.viz.compiler import Encoding, RenderPlan, compile_spec

log = get_logger("viz.renderer")

DEFAULT_WIDTH = 640
DEFAULT_HEIGHT = 400

# Fixed PNG metadata: no matplotlib version stamp, so output depends only on
# the plan.
_PNG_METADATA = {"Software": None}


def _positions(enc: Encoding) -> List[Any]:
    """Axis coordinate for every record on a cartesian channel."""
    if enc.scale.kind == "band":
        index = {cat: i for i, cat in enumerate(enc.scale.domain)}
        return [index[v] for v in enc.values]
    if enc.scale.kind == "time":
        return [None if pd.isna(v) else v.to_pydatetime() for v in enc.values]
    return [None if pd.isna(v) else v for v in enc.values]


def _series(plan: RenderPlan) -> List[Tuple[Optional[str], List[int]]]:
    """Record indices grouped by color category, in color-domain order."""
    color = plan.channel("color")
    if color is None or color.scale.kind != "band":
        return [(None, list(range(plan.row_count)))]
    groups: Dict[str, List[int]] = {cat: [] for cat in color.scale.domain}
    for i, v in enumerate(color.values):
        groups[v].append(i)
    return [(cat, idx) for cat, idx in groups.items() if idx]


def _configure_axis(ax: Any, enc: Encoding, axis: str) -> None:
    set_label = ax.set_xlabel if axis == "x" else ax.set_ylabel
    set_label(enc.title)
    if enc.scale.kind == "band":
        set_ticks = ax.set_xticks if axis == "x" else ax.set_yticks
        set_ticks(range(len(enc.scale.domain)))
        labels = [str(c) for c in enc.scale.domain]
        if axis == "x":
            ax.set_xticklabels(labels, rotation=45, ha="right")
        else:
            ax.set_yticklabels(labels)
    elif len(enc.scale.domain) == 2 and enc.scale.domain[0] > enc.scale.domain[1]:
        # descending sort on a continuous scale
        (ax.invert_xaxis if axis == "x" else ax.invert_yaxis)()


def _draw_cartesian(ax: Any, plan: RenderPlan) -> None:
    x, y = plan.channel("x"), plan.channel("y")
    xs, ys = _positions(x), _positions(y)
    groups = _series(plan)
    color = plan.mark_props.get("color")
    horizontal = plan.mark == "bar" and y.scale.kind == "band" and x.scale.kind != "band"

    for n, (label, idx) in enumerate(groups):
        pts = [(xs[i], ys[i]) for i in idx if xs[i] is not None and ys[i] is not None]
        if not pts:
            continue
        if plan.mark in ("line", "area"):
            pts.sort(key=lambda p: p[0])
        px_, py_ = [p[0] for p in pts], [p[1] for p in pts]
        kw: Dict[str, Any] = {}
        if label is not None:
            kw["label"] = label
        elif color:
            kw["color"] = color

        if plan.mark == "bar":
            band = 0.8 / len(groups)
            offset = (n - (len(groups) - 1) / 2) * band
            if horizontal:
                ax.barh([p + offset for p in py_], px_, height=band, **kw)
            elif x.scale.kind == "band":
                ax.bar([p + offset for p in px_], py_, width=band, **kw)
            else:
                ax.bar(px_, py_, **kw)
        elif plan.mark == "line":
            ax.plot(px_, py_, marker="o", markersize=3, **kw)
        elif plan.mark == "area":
            ax.fill_between(px_, py_, alpha=0.6, **kw)
        else:
            ax.scatter(px_, py_, s=16, **kw)

    _configure_axis(ax, x, "x")
    _configure_axis(ax, y, "y")
    if any(label is not None for label, _ in groups) and plan.row_count:
        ax.legend(title=plan.channel("color").title, fontsize=8)


def _draw_arc(ax: Any, plan: RenderPlan) -> None:
    theta = plan.channel("theta")
    color = plan.channel("color")
    sizes: Dict[str, float] = {}
    for i, v in enumerate(theta.values):
        key = str(color.values[i]) if color is not None else str(i + 1)
        value = 0.0 if pd.isna(v) else float(v)
        if value < 0:
            raise RenderError(f"Negative arc size in field '{theta.field}': {value}")
        sizes[key] = sizes.get(key, 0.0) + value

    ax.set_aspect("equal")
    if not sizes or sum(sizes.values()) == 0:
        ax.set_xticks([])
        ax.set_yticks([])
        return
    labels = list(sizes)
    if color is not None and color.scale.kind == "band":
        order = {c: i for i, c in enumerate(color.scale.domain)}
        labels.sort(key=lambda c: order.get(c, len(order)))
    ax.pie([sizes[k] for k in labels], labels=labels, startangle=90, counterclock=False)


def rasterize(
    plan: RenderPlan,
    *,
    dpi: int = 100,
    width: int = DEFAULT_WIDTH,
    height: int = DEFAULT_HEIGHT,
) -> bytes:
    """Draw a compiled plan onto an Agg canvas and return PNG bytes."""
    w = plan.width or width
    h = plan.height or height
    fig = Figure(figsize=(w / dpi, h / dpi), dpi=dpi)
    FigureCanvasAgg(fig)
    ax = fig.add_subplot(111)
    try:
        if plan.mark == "arc":
            _draw_arc(ax, plan)
        else:
            _draw_cartesian(ax, plan)
        if plan.title:
            ax.set_title(plan.title)
        fig.tight_layout()

        buf = BytesIO()
        fig.savefig(buf, format="png", dpi=dpi, metadata=_PNG_METADATA)
    except RenderError:
        raise
    except Exception as e:
        log.exception("Chart rasterization failed", extra={"mark": plan.mark})
        raise RenderError(f"Rasterization failed for '{plan.title or plan.mark}': {e}") from e
    return buf.getvalue()


def _write_atomic(data: bytes, out: Path, cancel: CancelToken) -> None:
    try:
        out.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{out.name}.", suffix=".tmp", dir=out.parent)
    except OSError as e:
        raise RenderError(f"Cannot write chart to {out}: {e}") from e

    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        cancel.raise_if_cancelled()
        os.replace(tmp, out)
    except BaseException as e:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        if isinstance(e, OSError):
            raise RenderError(f"Cannot write chart to {out}: {e}") from e
        raise


def render(
    spec: Mapping[str, Any],
    data: Sequence[Mapping[str, Any]],
    output_path: Union[str, Path],
    *,
    cancel: Optional[CancelToken] = None,
    dpi: int = 100,
    width: int = DEFAULT_WIDTH,
    height: int = DEFAULT_HEIGHT,
) -> Path:
    """Compile `spec` against `data` and write a PNG to `output_path`.

    CompileError comes before any drawing; RenderError covers drawing and
    the write. On failure or cancellation no file is left at `output_path`.
    """
    cancel = cancel or CancelToken()
    cancel.raise_if_cancelled()
    out = Path(output_path)

    plan = compile_spec(spec, data)
    cancel.raise_if_cancelled()
    png = rasterize(plan, dpi=dpi, width=width, height=height)
    _write_atomic(png, out, cancel)

    log.info("Chart rendered", extra={"path": str(out), "rows": plan.row_count, "mark": plan.mark})
    return out
