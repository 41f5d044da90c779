import datetime as dt
import math
from decimal import Decimal

import pytest

from report_engine.data.models import ColumnType, FieldDescriptor, UniversalTabularResult
from report_engine.exceptions.errors import CoercionWarning, SchemaInferenceWarning
from report_engine.preprocessing.normalizer import MISSING, normalize, to_text


def test_missing_value_gets_one_sentinel_and_one_warning():
    # Arrange
    fields = [FieldDescriptor("a", ColumnType.FLOAT), FieldDescriptor("b", ColumnType.STRING)]
    rows = [{"a": 1, "b": "x"}, {"a": 2}]

    # Act
    result = normalize(fields, rows, system="sys")

    # Assert
    assert result.row_count == 2
    assert result.rows[1] == {"a": "2", "b": MISSING}
    assert len(result.warnings) == 1
    w = result.warnings[0]
    assert isinstance(w, CoercionWarning)
    assert (w.system, w.column, w.row_index) == ("sys", "b", 1)


def test_null_uses_sentinel_without_warning():
    fields = [FieldDescriptor("a", ColumnType.FLOAT)]

    result = normalize(fields, [{"a": None}])

    assert result.rows == [{"a": ""}]
    assert result.warnings == []


def test_every_row_matches_columns_exactly():
    # Arrange
    fields = [FieldDescriptor("a", ColumnType.FLOAT), FieldDescriptor("b", None)]
    rows = [{"a": 1, "b": 2, "extra": 3}, {}, {"b": "y"}]

    # Act
    result = normalize(fields, rows)

    # Assert
    assert len(result.columns) == len(result.types)
    assert all(set(r) == set(result.columns) for r in result.rows)
    assert len(result.rows) == 3
    assert len(result.warnings) == 3


def test_type_follows_field_kind_only():
    fields = [
        FieldDescriptor("n", ColumnType.FLOAT),
        FieldDescriptor("s", ColumnType.STRING),
        FieldDescriptor("u", None),
    ]

    result = normalize(fields, [{"n": "abc", "s": 1, "u": 2.0}])

    assert result.types == [ColumnType.FLOAT, ColumnType.STRING, ColumnType.STRING]
    assert result.rows[0] == {"n": "abc", "s": "1", "u": "2"}
    assert result.type_of("n") == ColumnType.FLOAT
    assert result.type_of("u") == ColumnType.STRING
    with pytest.raises(ValueError):
        result.type_of("missing")


def test_adapter_warnings_and_provenance_are_kept():
    upstream = SchemaInferenceWarning("inferred", system="sys", column="a")

    result = normalize(
        [FieldDescriptor("a", ColumnType.FLOAT)], [{}], system="sys", query="SELECT a", warnings=[upstream]
    )

    assert result.warnings[0] is upstream
    assert isinstance(result.warnings[1], CoercionWarning)
    assert result.system == "sys"
    assert result.query == "SELECT a"


def test_duplicate_field_names_are_rejected():
    fields = [FieldDescriptor("a"), FieldDescriptor("a")]

    with pytest.raises(ValueError):
        normalize(fields, [])


def test_zero_rows_keep_columns():
    result = normalize([FieldDescriptor("a", ColumnType.FLOAT)], [])

    assert result.columns == ["a"]
    assert result.rows == []
    assert result.to_dataframe().columns.tolist() == ["a"]


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, ""),
        ("text", "text"),
        (True, "true"),
        (False, "false"),
        (12, "12"),
        (1.0, "1"),
        (2.5, "2.5"),
        (float("nan"), "NaN"),
        (float("inf"), "Infinity"),
        (float("-inf"), "-Infinity"),
        (Decimal("1.50"), "1.50"),
        (Decimal("1E+3"), "1000"),
        (dt.date(2024, 1, 2), "2024-01-02"),
        (dt.datetime(2024, 1, 2, 3, 4, 5), "2024-01-02T03:04:05"),
        (dt.time(7, 30), "07:30:00"),
        (b"\x01\xff", "01ff"),
        ({"b": 1, "a": [1, None]}, '{"a":[1,null],"b":1}'),
        ({"x": Decimal("1.5"), "d": dt.date(2024, 5, 1)}, '{"d":"2024-05-01","x":"1.5"}'),
        ({3, 1, 2}, "[1,2,3]"),
        ((1, "a"), '[1,"a"]'),
    ],
)
def test_to_text(value, expected):
    assert to_text(value) == expected


def test_to_text_is_deterministic_for_composites():
    a = {"z": {"y": 1, "x": 2}, "a": {3, 2}}
    b = {"a": {2, 3}, "z": {"x": 2, "y": 1}}

    assert to_text(a) == to_text(b)


def test_result_rejects_rows_that_do_not_match_columns():
    with pytest.raises(ValueError):
        UniversalTabularResult(columns=["a"], types=[ColumnType.STRING], rows=[{"b": "1"}])

    with pytest.raises(ValueError):
        UniversalTabularResult(columns=["a", "b"], types=[ColumnType.STRING], rows=[])


def test_nan_float_value_is_text_not_missing():
    result = normalize([FieldDescriptor("a", ColumnType.FLOAT)], [{"a": math.nan}])

    assert result.rows == [{"a": "NaN"}]
    assert result.warnings == []
