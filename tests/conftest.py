import sqlite3

import pytest

from report_engine.config.settings import Settings
from report_engine.data.models import ColumnType, FieldDescriptor, SystemConfig
from report_engine.preprocessing.normalizer import normalize


@pytest.fixture
def settings(tmp_path):
    """Fast settings: short timeout, near-zero backoff, output under tmp_path."""
    return Settings(
        log_file="",
        query_timeout_seconds=5.0,
        retry_max_attempts=3,
        retry_initial_delay=0.01,
        retry_backoff_factor=2.0,
        retry_max_delay=0.05,
        output_dir=str(tmp_path / "out"),
        query_workers=4,
        chart_workers=2,
    )


@pytest.fixture
def sales_sqlite(tmp_path):
    """A small SQLite file and the SystemConfig pointing at it."""
    path = tmp_path / "sales.db"
    conn = sqlite3.connect(path)
    conn.executescript(
        """
        CREATE TABLE sales (region TEXT, amount REAL, units INTEGER, sold_on TEXT);
        INSERT INTO sales VALUES ('north', 120.5, 3, '2024-01-01');
        INSERT INTO sales VALUES ('south', 80, 2, '2024-01-02');
        INSERT INTO sales VALUES ('north', 42.25, 1, '2024-01-03');
        INSERT INTO sales VALUES ('east', NULL, 4, '2024-01-04');
        """
    )
    conn.commit()
    conn.close()
    return SystemConfig(name="LocalSales", engine="sqlite", params={"path": str(path)})


@pytest.fixture
def region_result():
    """Normalized result with one category column and one numeric column."""
    fields = [
        FieldDescriptor("region", ColumnType.STRING),
        FieldDescriptor("total", ColumnType.FLOAT),
    ]
    rows = [
        {"region": "north", "total": 162.75},
        {"region": "south", "total": 80},
        {"region": "east", "total": None},
    ]
    return normalize(fields, rows, system="LocalSales", query="SELECT ...")


@pytest.fixture
def bar_spec():
    return {
        "$schema": "https://vega.github.io/schema/vega-lite/v5.json",
        "title": "Sales by region",
        "mark": "bar",
        "encoding": {
            "x": {"field": "region", "type": "nominal"},
            "y": {"field": "total", "type": "quantitative", "title": "Total"},
        },
    }
