"""Query execution backends.

Every engine is one `BackendAdapter` variant registered in `router.py`:

  - Row-store SQL : postgres, mysql, sqlserver
  - Analytical    : bigquery, snowflake, athena, redshift
  - Embedded file : sqlite, duckdb

`executor.QueryExecutor` wraps an adapter call with the timeout and retry
policy and normalizes its output into a UniversalTabularResult.
"""
