from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Callable, FrozenSet, Iterator, Optional, Tuple
import re

from botocore.exceptions import BotoCoreError, ClientError

from report_engine.data.models import ColumnType
from report_engine.exceptions.errors import BackendConnectionError, QueryError

# AWS error codes meaning "the service understood the request and rejected the SQL".
_AWS_QUERY_ERROR_CODES = {"InvalidRequestException", "ValidationException", "ExecuteStatementException"}


def parse_s3_uri(uri: str) -> Tuple[str, str]:
    """Parse s3://bucket/key -> (bucket, key)."""
    m = re.match(r"^s3://([^/]+)/(.+)$", (uri or "").strip())
    if not m:
        raise ValueError(f"Invalid S3 URI: {uri}")
    return m.group(1), m.group(2)


def base_type_name(type_name: str) -> str:
    """decimal(10,2) -> decimal, double precision -> double, INTEGER[] -> integer[]."""
    head = type_name.strip().lower().split("(", 1)[0].split()
    return head[0] if head else ""


def kind_from_type_name(type_name: Optional[str], numeric_types: FrozenSet[str]) -> Optional[ColumnType]:
    """Map an engine type name to a ColumnType by its base type.

    `numeric_types` holds lower-case base names. Returns None when the engine
    gave no type name at all, so the caller falls back to first-row
    inference.
    """
    if not type_name:
        return None
    return ColumnType.FLOAT if base_type_name(type_name) in numeric_types else ColumnType.STRING


def aws_error(exc: Exception, what: str, system: Optional[str] = None) -> Exception:
    """Translate a botocore failure into BackendConnectionError / QueryError."""
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        msg = exc.response.get("Error", {}).get("Message", "") or str(exc)
        if code in _AWS_QUERY_ERROR_CODES:
            return QueryError(f"{what} rejected the query: {msg}", system=system)
        return BackendConnectionError(f"{what} request failed ({code}): {msg}", system=system)
    return BackendConnectionError(f"{what} unreachable: {exc}", system=system)


@contextmanager
def aws_client(factory: Callable[[], Any], what: str, system: Optional[str] = None) -> Iterator[Any]:
    """Scoped boto3 client: created on entry, closed on exit."""
    try:
        client = factory()
    except (BotoCoreError, ClientError) as e:
        raise aws_error(e, what, system) from e
    try:
        yield client
    finally:
        client.close()
