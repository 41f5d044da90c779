from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional

from google.api_core import exceptions as gexc
from google.auth import exceptions as auth_exc
from google.cloud import bigquery

from report_engine.data.models import ColumnType, RawEngineResult, SystemConfig
from report_engine.db.base import BackendAdapter, build_result
from report_engine.db.cancel import CancelToken
from report_engine.exceptions.errors import BackendConnectionError, QueryError

NUMERIC_FIELD_TYPES = frozenset({"INTEGER", "INT64", "FLOAT", "FLOAT64", "NUMERIC", "BIGNUMERIC", "DECIMAL", "BIGDECIMAL"})

POLL_INTERVAL_SECONDS = 0.5


def bigquery_kind(field_type: Optional[str]) -> Optional[ColumnType]:
    if not field_type:
        return None
    return ColumnType.FLOAT if field_type.upper() in NUMERIC_FIELD_TYPES else ColumnType.STRING


def _translate(exc: Exception, system: str) -> Exception:
    if isinstance(exc, (gexc.Unauthorized, gexc.Forbidden)):
        return BackendConnectionError(f"BigQuery refused the credentials: {exc}", system=system)
    if isinstance(exc, gexc.ClientError):
        return QueryError(f"BigQuery rejected the query: {exc}", system=system)
    return BackendConnectionError(f"BigQuery request failed: {exc}", system=system)


@dataclass
class _BigQuerySession:
    client: Any
    config: SystemConfig
    job: Any = None


class BigQueryAdapter(BackendAdapter):
    """Google BigQuery (standard SQL).

    Params: project_id, location ("US").
    Credentials: key_file (service account JSON); application default
    credentials are used when absent.
    """

    engine = "bigquery"

    def connect(self, config: SystemConfig):
        return _bigquery_session(config)

    def interrupt(self, conn: _BigQuerySession) -> None:
        if conn.job is not None:
            conn.job.cancel()

    def run_query(self, conn: _BigQuerySession, query_text: str, cancel: CancelToken) -> RawEngineResult:
        cfg = conn.config
        job_config = bigquery.QueryJobConfig(use_legacy_sql=False)
        try:
            conn.job = conn.client.query(query_text, job_config=job_config, location=cfg.param("location", "US"))
            while not conn.job.done():
                if cancel.wait(POLL_INTERVAL_SECONDS):
                    self.interrupt(conn)
                    cancel.raise_if_cancelled()
            result = conn.job.result()
            rows = list(result)
        except (gexc.GoogleAPICallError, gexc.RetryError, auth_exc.GoogleAuthError) as e:
            raise _translate(e, cfg.name) from e

        schema = list(result.schema or [])
        if schema:
            names: List[str] = [f.name for f in schema]
            type_names: List[Optional[str]] = [f.field_type for f in schema]
        else:
            # No schema in the response: take names from the first row and
            # leave the kinds to first-row inference.
            self.log.warning("No schema in BigQuery response", extra={"system": cfg.name})
            names = list(rows[0].keys()) if rows else []
            type_names = [None] * len(names)

        return build_result(
            names,
            [bigquery_kind(t) for t in type_names],
            type_names,
            [[row.get(n) for n in names] for row in rows],
        )


@contextmanager
def _bigquery_session(config: SystemConfig) -> Iterator[_BigQuerySession]:
    project = config.param("project_id")
    key_file = config.credential("key_file")
    try:
        if key_file:
            client = bigquery.Client.from_service_account_json(key_file, project=project)
        else:
            client = bigquery.Client(project=project)
    except (OSError, ValueError, auth_exc.GoogleAuthError) as e:
        raise BackendConnectionError(f"BigQuery client setup failed: {e}", system=config.name) from e
    try:
        yield _BigQuerySession(client=client, config=config)
    finally:
        client.close()
