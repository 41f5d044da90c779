from __future__ import annotations

import concurrent.futures
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from report_engine.config.settings import Settings, find_system
from report_engine.data.models import ChartDescriptor, SystemConfig, UniversalTabularResult
from report_engine.db.cancel import CancelToken
from report_engine.db.executor import QueryExecutor
from report_engine.exceptions.errors import ChartSpecError, ConfigNotFound
from report_engine.logging.logger import get_logger
from report_engine.viz.compiler import bind_values, load_chart_spec
from report_engine.viz.prepare import prepare
from report_engine.viz.renderer import render

log = get_logger("report.runner")


@dataclass(frozen=True)
class QueryItem:
    """A data query of the report. `path` wins over `text` when both are set."""

    name: str
    text: Optional[str] = None
    path: Optional[Union[str, Path]] = None
    system: Optional[str] = None

    def load_text(self) -> str:
        if self.path is not None:
            p = Path(self.path)
            if not p.is_file():
                raise ConfigNotFound(f"Query file not found: {p}")
            return p.read_text(encoding="utf-8")
        if self.text is None:
            raise ConfigNotFound(f"Query '{self.name}' has neither text nor path")
        return self.text


@dataclass(frozen=True)
class ChartItem:
    title: str
    query: QueryItem
    spec: Union[str, Mapping[str, Any], None] = None
    spec_path: Optional[Union[str, Path]] = None
    cid: Optional[str] = None


@dataclass(frozen=True)
class ChartFailure:
    index: int
    title: str
    error: ChartSpecError


@dataclass
class ReportOutcome:
    results: List[UniversalTabularResult]
    charts: List[ChartDescriptor]
    failures: List[ChartFailure] = field(default_factory=list)


@dataclass
class _ChartJob:
    index: int
    item: ChartItem
    spec: Dict[str, Any]
    result: Optional[UniversalTabularResult] = None


class ReportRunner:
    """Runs one report: data queries, chart queries, then chart rendering.

    Query and connection errors are fatal for the whole run; a chart spec
    or render error only drops that chart.
    """

    def __init__(self, settings: Settings, executor: Optional[QueryExecutor] = None):
        self.settings = settings
        self.executor = executor or QueryExecutor(settings)

    def run(
        self,
        system: SystemConfig,
        queries: Sequence[QueryItem] = (),
        charts: Sequence[ChartItem] = (),
        output_dir: Optional[Union[str, Path]] = None,
        cancel: Optional[CancelToken] = None,
        systems: Sequence[SystemConfig] = (),
    ) -> ReportOutcome:
        cancel = cancel or CancelToken()
        # Cancelled by the caller, or by us when one query fails.
        run_token = CancelToken(parent=cancel)
        out_dir = Path(output_dir or self.settings.output_dir)
        known = [system, *systems]

        log.info(
            "Report run started",
            extra={"system": system.name, "queries": len(queries), "charts": len(charts)},
        )

        failures: List[ChartFailure] = []
        jobs: List[_ChartJob] = []
        for i, item in enumerate(charts):
            try:
                spec = load_chart_spec(item.spec, item.spec_path)
            except ChartSpecError as e:
                self._record_failure(failures, i, item, e)
                continue
            jobs.append(_ChartJob(index=i, item=item, spec=spec))

        # Everything is loaded before any query runs, so a missing file
        # fails the run before touching a backend.
        planned = [(self._system_for(q, known), q.load_text()) for q in queries]
        planned += [(self._system_for(j.item.query, known), j.item.query.load_text()) for j in jobs]

        results = self._run_queries(planned, run_token)
        data_results = results[: len(queries)]
        for job, res in zip(jobs, results[len(queries):]):
            job.result = res

        rendered = self._render_charts(jobs, out_dir, run_token, failures)

        failures.sort(key=lambda f: f.index)
        log.info(
            "Report run completed",
            extra={"system": system.name, "results": len(data_results), "charts": len(rendered), "failed": len(failures)},
        )
        return ReportOutcome(results=data_results, charts=rendered, failures=failures)

    @staticmethod
    def _system_for(item: QueryItem, known: List[SystemConfig]) -> SystemConfig:
        if item.system is None:
            return known[0]
        return find_system(known, item.system)

    def _run_queries(
        self, planned: List[Tuple[SystemConfig, str]], run_token: CancelToken
    ) -> List[UniversalTabularResult]:
        """Execute in parallel; results come back in planned order."""
        results: List[Optional[UniversalTabularResult]] = [None] * len(planned)
        if not planned:
            return []

        pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.settings.query_workers, thread_name_prefix="report-query"
        )
        try:
            futures = {
                pool.submit(self.executor.execute, cfg, text, run_token): idx
                for idx, (cfg, text) in enumerate(planned)
            }
            for future in concurrent.futures.as_completed(futures):
                idx = futures[future]
                try:
                    results[idx] = future.result()
                except Exception as e:
                    log.error(
                        "Query failed; aborting report",
                        extra={"system": planned[idx][0].name, "query_index": idx, "error": str(e)},
                    )
                    run_token.cancel(f"query {idx} failed")
                    raise
        finally:
            pool.shutdown(wait=True, cancel_futures=True)
        return results  # type: ignore[return-value]

    def _render_charts(
        self,
        jobs: List[_ChartJob],
        out_dir: Path,
        run_token: CancelToken,
        failures: List[ChartFailure],
    ) -> List[ChartDescriptor]:
        descriptors: Dict[int, ChartDescriptor] = {}
        if not jobs:
            return []

        pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.settings.chart_workers, thread_name_prefix="report-chart"
        )
        try:
            futures = {}
            for job in jobs:
                values = prepare(job.result)
                file_name = f"chart_{job.index + 1:02d}.png"
                desc = ChartDescriptor(
                    title=job.item.title or "Chart",
                    cid=job.item.cid or file_name,
                    spec=bind_values(job.spec, values),
                    data=job.result,
                )
                future = pool.submit(
                    render,
                    job.spec,
                    values,
                    out_dir / file_name,
                    cancel=run_token,
                    dpi=self.settings.chart_dpi,
                    width=self.settings.chart_width,
                    height=self.settings.chart_height,
                )
                futures[future] = (job, desc)

            for future in concurrent.futures.as_completed(futures):
                job, desc = futures[future]
                try:
                    desc.path = future.result()
                except ChartSpecError as e:
                    self._record_failure(failures, job.index, job.item, e)
                    continue
                descriptors[job.index] = desc
        except BaseException:
            run_token.cancel("chart rendering aborted")
            raise
        finally:
            pool.shutdown(wait=True, cancel_futures=True)

        return [descriptors[i] for i in sorted(descriptors)]

    @staticmethod
    def _record_failure(failures: List[ChartFailure], index: int, item: ChartItem, error: ChartSpecError) -> None:
        log.warning(
            "Chart skipped",
            extra={"chart_index": index, "title": item.title, "error": str(error)},
        )
        failures.append(ChartFailure(index=index, title=item.title, error=error))
