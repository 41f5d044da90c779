import threading
import time

import pytest

from report_engine.data.models import ColumnType, FieldDescriptor, SystemConfig
from report_engine.db.cancel import CancelToken
from report_engine.exceptions.errors import (
    CompileError,
    ConfigNotFound,
    OperationCancelled,
    QueryError,
)
from report_engine.preprocessing.normalizer import normalize
from report_engine.report.runner import ChartItem, QueryItem, ReportRunner

BAR = {
    "mark": "bar",
    "encoding": {"x": {"field": "region", "type": "nominal"}, "y": {"field": "total", "type": "quantitative"}},
}

REGION_SQL = "SELECT region, SUM(units) AS total FROM sales GROUP BY region ORDER BY region"


class FakeExecutor:
    """Returns a one-row result per query; `delays` slows chosen query texts down."""

    def __init__(self, delays=None, errors=None):
        self.delays = delays or {}
        self.errors = errors or {}
        self.calls = []
        self._lock = threading.Lock()

    def execute(self, config, query_text, cancel=None):
        with self._lock:
            self.calls.append((config.name, query_text))
        if cancel is not None and cancel.wait(self.delays.get(query_text, 0)):
            cancel.raise_if_cancelled()
        if query_text in self.errors:
            raise self.errors[query_text]
        fields = [FieldDescriptor("region", ColumnType.STRING), FieldDescriptor("total", ColumnType.FLOAT)]
        return normalize(fields, [{"region": query_text, "total": 1}], system=config.name, query=query_text)


SYSTEM = SystemConfig(name="Main", engine="sqlite")


def test_results_follow_declaration_order(settings, tmp_path):
    # Arrange
    executor = FakeExecutor(delays={"slow": 0.3, "medium": 0.1})
    queries = [QueryItem("q1", text="slow"), QueryItem("q2", text="medium"), QueryItem("q3", text="fast")]

    # Act
    outcome = ReportRunner(settings, executor).run(SYSTEM, queries, output_dir=tmp_path)

    # Assert
    assert [r.query for r in outcome.results] == ["slow", "medium", "fast"]
    assert outcome.charts == []


def test_bad_chart_is_skipped_and_others_render(settings, tmp_path):
    # Arrange
    charts = [
        ChartItem("Good", QueryItem("c1", text="a"), spec=BAR),
        ChartItem("Bad mark", QueryItem("c2", text="b"), spec={"mark": "pie", "encoding": {}}),
        ChartItem("Bad json", QueryItem("c3", text="c"), spec="{oops"),
        ChartItem("Also good", QueryItem("c4", text="d"), spec=BAR, cid="custom-cid"),
    ]

    # Act
    outcome = ReportRunner(settings, FakeExecutor()).run(SYSTEM, charts=charts, output_dir=tmp_path)

    # Assert
    assert [c.title for c in outcome.charts] == ["Good", "Also good"]
    assert [c.cid for c in outcome.charts] == ["chart_01.png", "custom-cid"]
    assert outcome.charts[1].path == tmp_path / "chart_04.png"
    assert all(c.path.exists() for c in outcome.charts)
    assert [(f.index, f.title) for f in outcome.failures] == [(1, "Bad mark"), (2, "Bad json")]
    assert all(isinstance(f.error, CompileError) for f in outcome.failures)


def test_chart_descriptor_binds_data(settings, tmp_path):
    charts = [ChartItem("Good", QueryItem("c1", text="north"), spec=BAR)]

    outcome = ReportRunner(settings, FakeExecutor()).run(SYSTEM, charts=charts, output_dir=tmp_path)

    chart = outcome.charts[0]
    assert chart.data.rows == [{"region": "north", "total": "1"}]
    assert chart.spec["data"] == {"values": [{"region": "north", "total": "1"}]}
    assert "data" not in BAR


def test_query_error_is_fatal(settings, tmp_path):
    executor = FakeExecutor(delays={"slow": 5}, errors={"broken": QueryError("syntax error")})
    queries = [QueryItem("q1", text="slow"), QueryItem("q2", text="broken")]
    start = time.monotonic()

    with pytest.raises(QueryError):
        ReportRunner(settings, executor).run(SYSTEM, queries, output_dir=tmp_path)

    # the slow query was cancelled rather than waited out
    assert time.monotonic() - start < 3


def test_cancelled_run_raises(settings, tmp_path):
    token = CancelToken()
    token.cancel("shutdown")
    charts = [ChartItem("Good", QueryItem("c1", text="a"), spec=BAR)]

    with pytest.raises(OperationCancelled):
        ReportRunner(settings, FakeExecutor()).run(SYSTEM, charts=charts, output_dir=tmp_path, cancel=token)

    assert not (tmp_path / "chart_01.png").exists()


def test_query_file_wins_over_text(settings, tmp_path):
    sql = tmp_path / "q.sql"
    sql.write_text("from file", encoding="utf-8")
    executor = FakeExecutor()

    ReportRunner(settings, executor).run(SYSTEM, [QueryItem("q", text="inline", path=sql)], output_dir=tmp_path)

    assert executor.calls == [("Main", "from file")]


def test_missing_query_file_fails_before_any_query(settings, tmp_path):
    executor = FakeExecutor()
    queries = [QueryItem("q1", text="ok"), QueryItem("q2", path=tmp_path / "absent.sql")]

    with pytest.raises(ConfigNotFound):
        ReportRunner(settings, executor).run(SYSTEM, queries, output_dir=tmp_path)

    assert executor.calls == []


def test_item_system_override(settings, tmp_path):
    other = SystemConfig(name="Lake", engine="athena")
    executor = FakeExecutor()
    queries = [QueryItem("q1", text="a"), QueryItem("q2", text="b", system="lake")]

    ReportRunner(settings, executor).run(SYSTEM, queries, output_dir=tmp_path, systems=[other])

    assert sorted(executor.calls) == [("Lake", "b"), ("Main", "a")]


def test_unknown_item_system(settings, tmp_path):
    with pytest.raises(ConfigNotFound):
        ReportRunner(settings, FakeExecutor()).run(
            SYSTEM, [QueryItem("q", text="a", system="nowhere")], output_dir=tmp_path
        )


def test_end_to_end_with_sqlite(settings, sales_sqlite, tmp_path):
    # Arrange
    runner = ReportRunner(settings)
    queries = [QueryItem("all", text="SELECT region, units FROM sales ORDER BY rowid")]
    charts = [ChartItem("Units by region", QueryItem("chart", text=REGION_SQL), spec=BAR)]

    # Act
    outcome = runner.run(sales_sqlite, queries, charts, output_dir=tmp_path / "charts")

    # Assert
    assert outcome.results[0].rows[0] == {"region": "north", "units": "3"}
    assert outcome.charts[0].data.rows == [
        {"region": "east", "total": "4"},
        {"region": "north", "total": "4"},
        {"region": "south", "total": "2"},
    ]
    assert (tmp_path / "charts" / "chart_01.png").exists()
    assert outcome.failures == []
