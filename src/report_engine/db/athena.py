from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Dict, Iterator, List, Optional

import boto3
import pandas as pd
from botocore.exceptions import BotoCoreError, ClientError

from report_engine.data.models import ColumnType, RawEngineResult, SystemConfig
from report_engine.db.base import BackendAdapter, build_result
from report_engine.db.cancel import CancelToken
from report_engine.db.utils import aws_client, aws_error, kind_from_type_name, parse_s3_uri
from report_engine.exceptions.errors import BackendConnectionError, OperationCancelled, QueryError

# Athena (Trino) base type names; interval, date and timestamp types stay STRING.
NUMERIC_TYPES = frozenset({"tinyint", "smallint", "integer", "int", "bigint", "float", "real", "double", "decimal"})

POLL_INTERVAL_SECONDS = 0.5


@dataclass
class _AthenaSession:
    athena: Any
    s3: Any
    config: SystemConfig
    query_id: Optional[str] = None


class AthenaAdapter(BackendAdapter):
    """Athena (serverless SQL on S3, Glue catalog).

    Required params: database, output_location (s3://...).
    Optional: workgroup, catalog, region.
    """

    engine = "athena"

    def connect(self, config: SystemConfig):
        if not config.param("database"):
            raise BackendConnectionError("Athena 'database' is required", system=config.name)
        if not config.param("output_location"):
            raise BackendConnectionError("Athena 'output_location' is required", system=config.name)
        return _athena_session(config)

    def interrupt(self, conn: _AthenaSession) -> None:
        if conn.query_id:
            conn.athena.stop_query_execution(QueryExecutionId=conn.query_id)

    def run_query(self, conn: _AthenaSession, query_text: str, cancel: CancelToken) -> RawEngineResult:
        cfg = conn.config
        start_args: Dict[str, Any] = {
            "QueryString": query_text,
            "QueryExecutionContext": {
                "Database": cfg.param("database"),
                "Catalog": cfg.param("catalog", "AwsDataCatalog"),
            },
            "ResultConfiguration": {"OutputLocation": cfg.param("output_location")},
        }
        if cfg.param("workgroup"):
            start_args["WorkGroup"] = cfg.param("workgroup")

        try:
            conn.query_id = conn.athena.start_query_execution(**start_args)["QueryExecutionId"]
            resp = self._wait(conn, cancel)
        except (BotoCoreError, ClientError) as e:
            raise aws_error(e, "Athena", cfg.name) from e

        out_loc = (
            resp.get("QueryExecution", {})
            .get("ResultConfiguration", {})
            .get("OutputLocation", "")
        )
        if not out_loc:
            out_loc = cfg.param("output_location").rstrip("/") + f"/{conn.query_id}.csv"

        try:
            meta = conn.athena.get_query_results(QueryExecutionId=conn.query_id, MaxResults=1)
            columns = meta.get("ResultSet", {}).get("ResultSetMetadata", {}).get("ColumnInfo", [])
            bucket, key = parse_s3_uri(out_loc)
            body = conn.s3.get_object(Bucket=bucket, Key=key)["Body"].read()
        except (BotoCoreError, ClientError) as e:
            raise aws_error(e, "Athena", cfg.name) from e

        names = [c.get("Name", "") for c in columns]
        type_names = [c.get("Type") for c in columns]
        kinds: List[Optional[ColumnType]] = [kind_from_type_name(t, NUMERIC_TYPES) for t in type_names]

        # Athena writes CSV with a header row. Read everything as text so the
        # column kinds above stay authoritative; NULLs arrive as empty fields.
        df = pd.read_csv(BytesIO(body), dtype=str, keep_default_na=False) if body.strip() else pd.DataFrame()
        if not names:
            names = list(df.columns)
            kinds = [None] * len(names)
            type_names = [None] * len(names)
        return build_result(names, kinds, type_names, df.itertuples(index=False, name=None))

    def _wait(self, conn: _AthenaSession, cancel: CancelToken) -> Dict[str, Any]:
        while True:
            resp = conn.athena.get_query_execution(QueryExecutionId=conn.query_id)
            status = resp.get("QueryExecution", {}).get("Status", {})
            state = status.get("State", "")
            if state == "SUCCEEDED":
                return resp
            if state in {"FAILED", "CANCELLED"}:
                reason = status.get("StateChangeReason", "") or ""
                if cancel.cancelled:
                    raise OperationCancelled(f"Athena query {state}: {reason}", system=conn.config.name)
                raise QueryError(f"Athena query {state}: {reason}", system=conn.config.name)
            if cancel.wait(POLL_INTERVAL_SECONDS):
                self.interrupt(conn)
                cancel.raise_if_cancelled()


@contextmanager
def _athena_session(config: SystemConfig) -> Iterator[_AthenaSession]:
    region = config.param("region")
    with aws_client(lambda: boto3.client("athena", region_name=region), "Athena", config.name) as athena, \
            aws_client(lambda: boto3.client("s3", region_name=region), "Athena", config.name) as s3:
        yield _AthenaSession(athena=athena, s3=s3, config=config)
