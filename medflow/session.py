import asyncio
from dataclasses import dataclass, field
import logging

from medflow import aggregation
from medflow.engine import ModelCaller, PipelineListener, run_all, run_step
from medflow.ingest import parse_rows
from medflow.pipeline_config import parse_pipeline
from medflow.schemas import FilterCriteria, ParseResult, Pipeline, PipelineContext, Record, SupplierLink


logger = logging.getLogger(__name__)


@dataclass
class DashboardSession:
    """State the dashboard reads from and feeds into.

    ``load_text`` and ``load_config`` only replace state once parsing has
    succeeded, so a failed parse leaves the previous records or pipeline in
    place. Loading a new config discards any execution progress.
    """

    delimiter: str = ","
    context_top_n: int = 5
    skill: str = ""
    parse_result: ParseResult | None = None
    criteria: FilterCriteria = field(default_factory=FilterCriteria)
    pipeline: Pipeline | None = None
    on_change: PipelineListener | None = None

    def load_text(self, raw_text: str) -> ParseResult:
        result = parse_rows(raw_text, self.delimiter)
        self.parse_result = result
        logger.info(
            "data parsed",
            extra={"total_rows": result.metrics.total_rows, "parse_failures": result.metrics.parse_failures},
        )
        return result

    def load_config(self, config_text: str) -> Pipeline:
        pipeline = parse_pipeline(config_text)
        self.pipeline = pipeline
        logger.info("pipeline loaded", extra={"steps": len(pipeline.steps)})
        return pipeline

    def set_criteria(self, criteria: FilterCriteria) -> None:
        self.criteria = criteria

    @property
    def records(self) -> tuple[Record, ...]:
        return self.parse_result.records if self.parse_result else ()

    @property
    def filtered(self) -> list[Record]:
        return aggregation.filter_records(self.records, self.criteria)

    def trend(self) -> list[tuple[str, int]]:
        return aggregation.trend(self.filtered)

    def top_categories(self) -> list[tuple[str, int]]:
        return aggregation.top_categories(self.filtered, self.criteria.top_n)

    def supplier_links(self) -> list[SupplierLink]:
        return aggregation.supplier_links(self.filtered, self.criteria.top_n)

    def summary(self) -> dict[str, int]:
        return aggregation.summarize(self.filtered)

    def context(self) -> PipelineContext:
        if self.parse_result is None:
            raise RuntimeError("no data loaded")
        return aggregation.build_context(self.parse_result.metrics, self.filtered, self.context_top_n)

    def _require_pipeline(self) -> Pipeline:
        if self.pipeline is None:
            raise RuntimeError("no pipeline loaded")
        return self.pipeline

    def _track(self, pipeline: Pipeline) -> None:
        self.pipeline = pipeline
        if self.on_change:
            self.on_change(pipeline)

    async def run_step(self, index: int, model_caller: ModelCaller, *, credential: str) -> Pipeline:
        tracker = _RunTracker(self, self._require_pipeline(), asyncio.Event())
        finished = await run_step(
            tracker.published,
            index,
            self.context(),
            model_caller,
            credential=credential,
            skill=self.skill,
            on_update=tracker,
        )
        return tracker.settle(finished)

    async def run_all(
        self,
        model_caller: ModelCaller,
        *,
        credential: str,
        cancel_event: asyncio.Event | None = None,
    ) -> Pipeline:
        """Run every step, publishing each pipeline value to the session.

        A config loaded while the run is in flight wins: the run stops
        publishing, sets ``cancel_event`` so no further step starts, and its
        results are dropped.
        """
        tracker = _RunTracker(self, self._require_pipeline(), cancel_event or asyncio.Event())
        finished = await run_all(
            tracker.published,
            self.context(),
            model_caller,
            credential=credential,
            skill=self.skill,
            on_update=tracker,
            cancel_event=tracker.stop,
        )
        return tracker.settle(finished)


@dataclass
class _RunTracker:
    session: DashboardSession
    published: Pipeline
    stop: asyncio.Event

    @property
    def stale(self) -> bool:
        return self.session.pipeline is not self.published

    def __call__(self, pipeline: Pipeline) -> None:
        if self.stale:
            if not self.stop.is_set():
                logger.info("pipeline replaced during run, dropping results")
            self.stop.set()
            return
        self.published = pipeline
        self.session._track(pipeline)

    def settle(self, finished: Pipeline) -> Pipeline:
        if self.stale:
            self.stop.set()
            return self.session.pipeline
        if finished is not self.published:
            self.published = finished
            self.session._track(finished)
        return finished
