from __future__ import annotations

import concurrent.futures
import logging
import time
from typing import Callable, Optional

import pandas as pd

from report_engine.config.settings import Settings
from report_engine.data.models import RawEngineResult, SystemConfig, UniversalTabularResult
from report_engine.db.base import BackendAdapter
from report_engine.db.cancel import CancelToken
from report_engine.db.router import route
from report_engine.exceptions.errors import (
    BackendConnectionError,
    OperationCancelled,
    QueryTimeoutError,
)
from report_engine.logging.logger import get_logger
from report_engine.preprocessing.normalizer import normalize

log = get_logger("db.executor")

# How often the waiting thread looks at the caller's token.
POLL_INTERVAL_SECONDS = 0.25
PREVIEW_ROWS = 20


def backoff_delay(settings: Settings, attempt: int) -> float:
    """Delay before retry number `attempt` (1-based)."""
    delay = settings.retry_initial_delay * (settings.retry_backoff_factor ** (attempt - 1))
    return min(settings.retry_max_delay, delay)


class QueryExecutor:
    """Route -> run with timeout and retry -> normalize.

    Only BackendConnectionError is retried. QueryError (QueryTimeoutError
    included) and OperationCancelled go straight to the caller.
    """

    def __init__(
        self,
        settings: Settings,
        router: Callable[[SystemConfig], BackendAdapter] = route,
    ):
        self.settings = settings
        self.router = router

    def execute(
        self,
        config: SystemConfig,
        query_text: str,
        cancel: Optional[CancelToken] = None,
    ) -> UniversalTabularResult:
        cancel = cancel or CancelToken()
        adapter = self.router(config)
        max_attempts = max(1, self.settings.retry_max_attempts)

        attempt = 0
        while True:
            attempt += 1
            try:
                raw = self._run_once(adapter, config, query_text, cancel)
                break
            except BackendConnectionError as e:
                if attempt >= max_attempts:
                    log.error(
                        "Connection failed; giving up",
                        extra={"system": config.name, "attempt": attempt, "error": str(e)},
                    )
                    raise
                delay = backoff_delay(self.settings, attempt)
                log.warning(
                    "Connection failed; retrying",
                    extra={"system": config.name, "attempt": attempt, "delay_s": delay, "error": str(e)},
                )
                if cancel.wait(delay):
                    cancel.raise_if_cancelled()

        self._log_preview(config, raw)
        return normalize(raw.fields, raw.rows, system=config.name, query=query_text, warnings=raw.warnings)

    def _run_once(
        self,
        adapter: BackendAdapter,
        config: SystemConfig,
        query_text: str,
        cancel: CancelToken,
    ) -> RawEngineResult:
        # Per-call token: a timeout cancels this call only, a cancel of the
        # caller's token reaches it through the parent link.
        call_token = CancelToken(parent=cancel)
        timeout_sec = self.settings.query_timeout_seconds

        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"query-{config.name}")
        try:
            future = executor.submit(adapter.execute, config, query_text, call_token)
            start_time = time.monotonic()
            while True:
                if cancel.cancelled:
                    raise OperationCancelled(f"Query cancelled: {cancel.reason}", system=config.name)

                remaining = timeout_sec - (time.monotonic() - start_time)
                if remaining <= 0:
                    call_token.cancel("timeout")
                    log.error("Query timed out", extra={"system": config.name, "timeout_s": timeout_sec})
                    raise QueryTimeoutError(
                        f"Query on '{config.name}' timed out after {timeout_sec} seconds", system=config.name
                    )

                try:
                    return future.result(timeout=min(remaining, POLL_INTERVAL_SECONDS))
                except concurrent.futures.TimeoutError:
                    continue
        finally:
            # Never join here: a driver that ignores its interrupt must not
            # hold the report hostage. The worker exits when the call returns.
            executor.shutdown(wait=False)

    def _log_preview(self, config: SystemConfig, raw: RawEngineResult) -> None:
        if not log.isEnabledFor(logging.DEBUG):
            return
        if not raw.rows:
            log.debug("No rows returned from query", extra={"system": config.name})
            return
        names = [f.name for f in raw.fields]
        preview = pd.DataFrame.from_records(raw.rows[:PREVIEW_ROWS], columns=names)
        log.debug("Query result\n%s", preview.to_string(index=False), extra={"system": config.name})
