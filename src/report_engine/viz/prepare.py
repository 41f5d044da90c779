from __future__ import annotations

from typing import Dict, List

from report_engine.data.models import UniversalTabularResult
from report_engine.logging.logger import get_logger

log = get_logger("viz.prepare")


def prepare(result: UniversalTabularResult) -> List[Dict[str, str]]:
    """Project a normalized result into chart value records.

    Values are passed through exactly as normalized, in column order.
    """
    log.info("Preparing chart data", extra={"rows": result.row_count, "columns": len(result.columns)})
    return [{col: row[col] for col in result.columns} for row in result.rows]
