from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence

import pandas as pd

from report_engine.exceptions.errors import ReportWarning


class ColumnType(str, Enum):
    """Closed set of normalized column kinds."""

    FLOAT = "FLOAT"
    STRING = "STRING"


# Keys of a system entry that are secrets; everything else is a connection parameter.
CREDENTIAL_KEYS = frozenset({"password", "key_file", "secret_arn", "private_key", "token"})

_CAMEL = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def _snake(key: str) -> str:
    # SystemType -> system_type, ProjectId -> project_id, SSL -> ssl
    return _CAMEL.sub("_", str(key).strip()).replace("-", "_").lower()


@dataclass(frozen=True)
class SystemConfig:
    """One configured backend system, credentials already decrypted."""

    name: str
    engine: str
    params: Mapping[str, Any] = field(default_factory=dict)
    credentials: Mapping[str, Any] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))
        object.__setattr__(self, "credentials", MappingProxyType(dict(self.credentials)))

    @classmethod
    def from_mapping(cls, entry: Mapping[str, Any]) -> "SystemConfig":
        """Build from a credential-file entry, e.g.

            {"System": "SalesPG", "SystemType": "postgres", "Host": "db", "Password": "..."}
        """
        flat = {_snake(k): v for k, v in entry.items()}
        name = str(flat.pop("system", "") or flat.pop("name", "") or "")
        engine = str(flat.pop("system_type", "") or flat.pop("engine", "") or "")
        if not name or not engine:
            raise ValueError("System entry requires 'System' and 'SystemType'")
        creds = {k: flat.pop(k) for k in list(flat) if k in CREDENTIAL_KEYS}
        return cls(name=name, engine=engine, params=flat, credentials=creds)

    def param(self, key: str, default: Any = None) -> Any:
        v = self.params.get(key)
        return default if v in (None, "") else v

    def credential(self, key: str, default: Any = None) -> Any:
        v = self.credentials.get(key)
        return default if v in (None, "") else v


@dataclass(frozen=True)
class FieldDescriptor:
    name: str
    # None = the engine gave no authoritative type; the adapter infers one.
    kind: Optional[ColumnType] = None
    native_type: Optional[str] = None


@dataclass
class RawEngineResult:
    fields: List[FieldDescriptor]
    rows: List[Dict[str, Any]]
    warnings: List[ReportWarning] = field(default_factory=list)


@dataclass(frozen=True)
class UniversalTabularResult:
    """Engine-independent (columns, types, rows) model.

    Every row maps each column to its normalized text value; rows keep the
    engine's return order.
    """

    columns: List[str]
    types: List[ColumnType]
    rows: List[Dict[str, str]]
    warnings: List[ReportWarning] = field(default_factory=list)
    system: Optional[str] = None
    query: Optional[str] = None

    def __post_init__(self) -> None:
        if len(self.columns) != len(self.types):
            raise ValueError(f"{len(self.columns)} columns but {len(self.types)} types")
        if len(set(self.columns)) != len(self.columns):
            raise ValueError(f"Duplicate column names: {self.columns}")
        expected = set(self.columns)
        for i, row in enumerate(self.rows):
            if set(row) != expected:
                raise ValueError(f"Row {i} keys {sorted(row)} do not match columns {self.columns}")

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def type_of(self, column: str) -> ColumnType:
        return self.types[self.columns.index(column)]

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame.from_records(self.rows, columns=self.columns)


@dataclass
class ChartDescriptor:
    title: str
    cid: str
    spec: Mapping[str, Any]
    data: UniversalTabularResult
    path: Optional[Path] = None


def unique_names(names: Sequence[str]) -> List[str]:
    """De-duplicate result column names: a, a, a -> a, a_2, a_3."""
    seen: Dict[str, int] = {}
    out: List[str] = []
    taken = set(names)
    for n in names:
        if n not in seen:
            seen[n] = 1
            out.append(n)
            continue
        seen[n] += 1
        candidate = f"{n}_{seen[n]}"
        while candidate in taken:
            seen[n] += 1
            candidate = f"{n}_{seen[n]}"
        taken.add(candidate)
        out.append(candidate)
    return out
