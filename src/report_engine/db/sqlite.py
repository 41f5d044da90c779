from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any

from report_engine.data.models import SystemConfig
from report_engine.db.dbapi import DbApiAdapter
from report_engine.exceptions.errors import BackendConnectionError


class SQLiteAdapter(DbApiAdapter):
    """SQLite database file, opened read-only.

    Params: path. sqlite3 reports no column types, so every column is
    inferred from the first row.
    """

    engine = "sqlite"
    aliases = ("sqlite3",)

    driver_errors = (sqlite3.Error,)

    def open(self, config: SystemConfig) -> Any:
        path = config.param("path")
        if not path:
            raise BackendConnectionError("SQLite 'path' is required", system=config.name)
        try:
            if path == ":memory:":
                return sqlite3.connect(path)
            uri = Path(path).expanduser().resolve().as_uri() + "?mode=ro"
            return sqlite3.connect(uri, uri=True)
        except sqlite3.Error as e:
            raise BackendConnectionError(f"SQLite open failed for {path}: {e}", system=config.name) from e

    def interrupt(self, conn: Any) -> None:
        conn.interrupt()
