import threading

import duckdb
import pytest

from report_engine.data.models import ColumnType, SystemConfig
from report_engine.db.cancel import CancelToken
from report_engine.db.duckdb_file import DuckDBAdapter
from report_engine.db.sqlite import SQLiteAdapter
from report_engine.exceptions.errors import (
    BackendConnectionError,
    OperationCancelled,
    QueryError,
    SchemaInferenceWarning,
)
from report_engine.preprocessing.normalizer import normalize

INFINITE_QUERY = "WITH RECURSIVE c(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM c) SELECT count(*) FROM c"


def test_sqlite_infers_types_from_first_row(sales_sqlite):
    # Act
    raw = SQLiteAdapter().execute(sales_sqlite, "SELECT region, amount, units FROM sales ORDER BY rowid")

    # Assert
    assert [f.name for f in raw.fields] == ["region", "amount", "units"]
    assert [f.kind for f in raw.fields] == [ColumnType.STRING, ColumnType.FLOAT, ColumnType.FLOAT]
    assert len(raw.rows) == 4
    assert all(isinstance(w, SchemaInferenceWarning) for w in raw.warnings)
    assert [w.column for w in raw.warnings] == ["region", "amount", "units"]


def test_sqlite_select_one_normalizes_to_text(sales_sqlite):
    raw = SQLiteAdapter().execute(sales_sqlite, "SELECT 1 AS n")

    result = normalize(raw.fields, raw.rows, system=sales_sqlite.name, warnings=raw.warnings)

    assert result.columns == ["n"]
    assert result.types == [ColumnType.FLOAT]
    assert result.rows == [{"n": "1"}]


def test_sqlite_null_and_real_values(sales_sqlite):
    raw = SQLiteAdapter().execute(sales_sqlite, "SELECT region, amount FROM sales ORDER BY rowid")

    result = normalize(raw.fields, raw.rows)

    assert [r["amount"] for r in result.rows] == ["120.5", "80", "42.25", ""]


def test_sqlite_zero_rows_still_typed(sales_sqlite):
    raw = SQLiteAdapter().execute(sales_sqlite, "SELECT region FROM sales WHERE 1 = 0")

    assert raw.rows == []
    assert raw.fields[0].kind == ColumnType.STRING
    assert len(raw.warnings) == 1


def test_sqlite_duplicate_column_names_get_suffixes(sales_sqlite):
    raw = SQLiteAdapter().execute(sales_sqlite, "SELECT 1 AS a, 2 AS a, 3 AS a")

    assert [f.name for f in raw.fields] == ["a", "a_2", "a_3"]
    assert raw.rows == [{"a": 1, "a_2": 2, "a_3": 3}]


def test_sqlite_bad_sql_is_query_error(sales_sqlite):
    with pytest.raises(QueryError) as exc:
        SQLiteAdapter().execute(sales_sqlite, "SELECT nope FROM missing_table")

    assert exc.value.system == "LocalSales"


def test_sqlite_missing_file_is_connection_error(tmp_path):
    cfg = SystemConfig(name="gone", engine="sqlite", params={"path": str(tmp_path / "missing.db")})

    with pytest.raises(BackendConnectionError) as exc:
        SQLiteAdapter().execute(cfg, "SELECT 1")

    assert isinstance(exc.value, ConnectionError)


def test_empty_query_is_rejected_before_connecting(tmp_path):
    cfg = SystemConfig(name="gone", engine="sqlite", params={"path": str(tmp_path / "missing.db")})

    with pytest.raises(QueryError):
        SQLiteAdapter().execute(cfg, "   ")


def test_sqlite_cancel_interrupts_running_query(sales_sqlite):
    # Arrange
    token = CancelToken()
    timer = threading.Timer(0.2, token.cancel, args=("test abort",))

    # Act
    timer.start()
    try:
        with pytest.raises(OperationCancelled):
            SQLiteAdapter().execute(sales_sqlite, INFINITE_QUERY, token)
    finally:
        timer.cancel()

    # Assert
    assert token.reason == "test abort"


def test_cancelled_token_stops_before_connecting(sales_sqlite):
    token = CancelToken()
    token.cancel()

    with pytest.raises(OperationCancelled):
        SQLiteAdapter().execute(sales_sqlite, "SELECT 1", token)


@pytest.fixture
def orders_duckdb(tmp_path):
    path = tmp_path / "orders.duckdb"
    con = duckdb.connect(str(path))
    con.execute("CREATE TABLE orders (sold_on DATE, qty INTEGER, price DECIMAL(10, 2), item VARCHAR)")
    con.execute(
        "INSERT INTO orders VALUES ('2024-03-01', 2, 9.99, 'pen'), ('2024-03-02', NULL, 1.50, 'ink')"
    )
    con.close()
    return SystemConfig(name="Orders", engine="duckdb", params={"path": str(path)})


def test_duckdb_maps_schema_types(orders_duckdb):
    # Act
    raw = DuckDBAdapter().execute(orders_duckdb, "SELECT * FROM orders ORDER BY sold_on")
    result = normalize(raw.fields, raw.rows)

    # Assert
    assert raw.warnings == []
    assert result.types == [ColumnType.STRING, ColumnType.FLOAT, ColumnType.FLOAT, ColumnType.STRING]
    assert result.rows[0] == {"sold_on": "2024-03-01", "qty": "2", "price": "9.99", "item": "pen"}
    assert result.rows[1]["qty"] == ""
    assert result.rows[1]["price"] == "1.50"


def test_duckdb_in_memory_by_default():
    cfg = SystemConfig(name="mem", engine="duckdb")

    raw = DuckDBAdapter().execute(cfg, "SELECT 42 AS answer, 'x' AS label, [1, 2] AS xs")
    result = normalize(raw.fields, raw.rows)

    assert result.types == [ColumnType.FLOAT, ColumnType.STRING, ColumnType.STRING]
    assert result.rows == [{"answer": "42", "label": "x", "xs": "[1,2]"}]


def test_duckdb_bad_sql_is_query_error():
    with pytest.raises(QueryError):
        DuckDBAdapter().execute(SystemConfig(name="mem", engine="duckdb"), "SELEC 1")


def test_duckdb_missing_file_is_connection_error(tmp_path):
    cfg = SystemConfig(name="gone", engine="duckdb", params={"path": str(tmp_path / "none.duckdb")})

    with pytest.raises(BackendConnectionError):
        DuckDBAdapter().execute(cfg, "SELECT 1")
