from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from report_engine.data.models import RawEngineResult, SystemConfig
from report_engine.db.base import BackendAdapter, build_result
from report_engine.db.cancel import CancelToken
from report_engine.db.utils import aws_client, aws_error, kind_from_type_name
from report_engine.exceptions.errors import BackendConnectionError, OperationCancelled, QueryError

# Data API typeName values, e.g. int4, numeric, float8; interval stays STRING.
NUMERIC_TYPES = frozenset(
    {
        "int2", "int4", "int8", "smallint", "integer", "int", "bigint",
        "float4", "float8", "float", "real", "double", "numeric", "decimal",
    }
)

POLL_INTERVAL_SECONDS = 0.5


def _field_to_py(v: Dict[str, Any]) -> Any:
    if not v:
        return None
    if v.get("isNull") is True:
        return None
    for k in ("stringValue", "longValue", "doubleValue", "booleanValue", "blobValue"):
        if k in v:
            return v[k]
    return None


@dataclass
class _StatementHandle:
    client: Any
    config: SystemConfig
    statement_id: Optional[str] = None


class RedshiftAdapter(BackendAdapter):
    """Redshift through the Data API (provisioned or serverless).

    Required params: database, cluster_id OR workgroup_name.
    Credentials: secret_arn (preferred) OR params.db_user.
    """

    engine = "redshift"

    def connect(self, config: SystemConfig):
        if not config.param("database"):
            raise BackendConnectionError("Redshift 'database' is required", system=config.name)
        if not (config.param("cluster_id") or config.param("workgroup_name")):
            raise BackendConnectionError(
                "Redshift 'cluster_id' (provisioned) or 'workgroup_name' (serverless) is required",
                system=config.name,
            )
        if not (config.credential("secret_arn") or config.param("db_user")):
            raise BackendConnectionError("Redshift 'secret_arn' or 'db_user' is required", system=config.name)
        return _redshift_session(config)

    def interrupt(self, conn: _StatementHandle) -> None:
        if conn.statement_id:
            conn.client.cancel_statement(Id=conn.statement_id)

    def run_query(self, conn: _StatementHandle, query_text: str, cancel: CancelToken) -> RawEngineResult:
        cfg = conn.config
        exec_args: Dict[str, Any] = {"Sql": query_text, "Database": cfg.param("database")}
        if cfg.param("cluster_id"):
            exec_args["ClusterIdentifier"] = cfg.param("cluster_id")
        else:
            exec_args["WorkgroupName"] = cfg.param("workgroup_name")
        if cfg.credential("secret_arn"):
            exec_args["SecretArn"] = cfg.credential("secret_arn")
        else:
            exec_args["DbUser"] = cfg.param("db_user")

        try:
            conn.statement_id = conn.client.execute_statement(**exec_args)["Id"]
            self._wait(conn, cfg, cancel)
            return self._fetch(conn)
        except (BotoCoreError, ClientError) as e:
            raise aws_error(e, "Redshift", cfg.name) from e

    def _wait(self, conn: _StatementHandle, cfg: SystemConfig, cancel: CancelToken) -> None:
        while True:
            d = conn.client.describe_statement(Id=conn.statement_id)
            status = d.get("Status", "")
            if status == "FINISHED":
                return
            if status in {"FAILED", "ABORTED"}:
                err = d.get("Error", "") or ""
                if cancel.cancelled:
                    raise OperationCancelled(f"Redshift query {status}: {err}", system=cfg.name)
                raise QueryError(f"Redshift query {status}: {err}", system=cfg.name)
            if cancel.wait(POLL_INTERVAL_SECONDS):
                self.interrupt(conn)
                cancel.raise_if_cancelled()

    def _fetch(self, conn: _StatementHandle) -> RawEngineResult:
        # Fetch all pages
        meta: List[Dict[str, Any]] = []
        records: List[List[Any]] = []

        next_token: Optional[str] = None
        first = True
        while True:
            page_args = {"Id": conn.statement_id}
            if next_token:
                page_args["NextToken"] = next_token
            r = conn.client.get_statement_result(**page_args)

            if first:
                meta = r.get("ColumnMetadata", [])
                first = False

            for rec in r.get("Records", []):
                records.append([_field_to_py(x) for x in rec])

            next_token = r.get("NextToken")
            if not next_token:
                break

        type_names = [c.get("typeName") for c in meta]
        return build_result(
            [c.get("name", "") for c in meta],
            [kind_from_type_name(t, NUMERIC_TYPES) for t in type_names],
            type_names,
            records,
        )


@contextmanager
def _redshift_session(config: SystemConfig) -> Iterator[_StatementHandle]:
    region = config.param("region")
    with aws_client(lambda: boto3.client("redshift-data", region_name=region), "Redshift", config.name) as client:
        yield _StatementHandle(client=client, config=config)
