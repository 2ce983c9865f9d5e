import asyncio
from collections.abc import Callable
import json
import logging
from pathlib import Path

from sqlalchemy.orm import Session, sessionmaker

from medflow import aggregation
from medflow.config import Settings
from medflow.db_models import PipelineRun, StepRun
from medflow.engine import ModelCaller
from medflow.ingest import load_text
from medflow.pipeline_config import load_config_text
from medflow.run_store import (
    count_steps,
    create_or_get_run,
    finish_step,
    mark_run_finished,
    mark_run_running,
    record_metrics,
    reset_failed_run_state,
    start_step,
    store_rejected_rows,
)
from medflow.schemas import FilterCriteria, Pipeline, PipelineDefaults, RunResult, StepStatus
from medflow.session import DashboardSession


logger = logging.getLogger(__name__)

ModelCallerFactory = Callable[[PipelineDefaults], ModelCaller]


class PipelineRunner:
    """Runs the agent pipeline over an input file and records the run."""

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        model_caller_factory: ModelCallerFactory,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.model_caller_factory = model_caller_factory

    def run(
        self,
        *,
        run_key: str,
        credential: str,
        trigger_source: str = "manual",
        criteria: FilterCriteria | None = None,
        step_index: int | None = None,
    ) -> RunResult:
        with self.session_factory() as db:
            run, created = create_or_get_run(db, run_key=run_key, trigger_source=trigger_source)
            if not created:
                if run.status == "failed":
                    # Keep the same run key and clear prior failed state.
                    logger.info("retrying previously failed run", extra={"run_key": run_key})
                    reset_failed_run_state(db, run)
                else:
                    logger.info("idempotent run reused", extra={"run_key": run_key, "status": run.status})
                    return self._result_from_run(db, run, reused_existing_run=True)

            mark_run_running(db, run)

            try:
                session = self._load_session(criteria or FilterCriteria(top_n=self.settings.top_n))
                metrics = session.parse_result.metrics
                record_metrics(db, run, metrics)
                store_rejected_rows(db, run_id=run.id, invalid_rows=session.parse_result.invalid_rows)

                pipeline = asyncio.run(self._execute(db, run, session, credential, step_index))
                self._write_report(run_key, session, pipeline)

                failed = [step.id for step in pipeline.steps if step.status is StepStatus.FAILED]
                if failed:
                    mark_run_finished(db, run, status="failed", error=f"agent steps failed: {', '.join(failed)}")
                else:
                    mark_run_finished(db, run, status="succeeded")
            except Exception as exc:
                mark_run_finished(db, run, status="failed", error=str(exc))
                logger.exception("pipeline run failed", extra={"run_key": run_key})

            return self._result_from_run(db, run, reused_existing_run=False)

    def _load_session(self, criteria: FilterCriteria) -> DashboardSession:
        session = DashboardSession(delimiter=self.settings.delimiter)
        session.load_text(load_text(Path(self.settings.input_path)))
        session.load_config(load_config_text(Path(self.settings.agents_path)))
        skill_path = Path(self.settings.skill_path)
        if skill_path.exists():
            session.skill = skill_path.read_text(encoding="utf-8")
        session.set_criteria(criteria)
        return session

    async def _execute(
        self,
        db: Session,
        run: PipelineRun,
        session: DashboardSession,
        credential: str,
        step_index: int | None,
    ) -> Pipeline:
        open_steps: dict[int, StepRun] = {}
        model_caller = self.model_caller_factory(session.pipeline.defaults)

        def on_update(pipeline: Pipeline) -> None:
            # Persist each transition so step runs stay auditable.
            for index, step in enumerate(pipeline.steps):
                if step.status is StepStatus.RUNNING and index not in open_steps:
                    open_steps[index] = start_step(db, run_id=run.id, step_index=index, step=step)
                elif step.status in (StepStatus.COMPLETED, StepStatus.FAILED) and index in open_steps:
                    finish_step(db, open_steps.pop(index), step)

        session.on_change = on_update
        if step_index is None:
            await session.run_all(model_caller, credential=credential)
        else:
            await session.run_step(step_index, model_caller, credential=credential)
        return session.pipeline

    def _write_report(self, run_key: str, session: DashboardSession, pipeline: Pipeline) -> None:
        report_path = Path(self._report_path(run_key))
        report_path.parent.mkdir(parents=True, exist_ok=True)
        quality = aggregation.quality_report(session.parse_result)
        payload = {
            "run_key": run_key,
            "metrics": session.parse_result.metrics.to_dict(),
            "summary": session.summary(),
            "trend": session.trend(),
            "top_categories": session.top_categories(),
            "quality": {
                "parse_failures": quality.parse_failures,
                "invalid_dates": quality.invalid_dates,
            },
            "steps": [
                {
                    "id": step.id,
                    "name": step.name,
                    "model": step.model,
                    "status": step.status.value,
                    "output": step.output,
                    "error": step.error,
                }
                for step in pipeline.steps
            ],
        }
        with report_path.open("w", encoding="utf-8") as outfile:
            json.dump(payload, outfile, indent=2, sort_keys=True)
            outfile.write("\n")

    def _report_path(self, run_key: str) -> str:
        return str(Path(self.settings.output_dir) / "reports" / f"{run_key}.json")

    def _result_from_run(self, db: Session, run: PipelineRun, reused_existing_run: bool) -> RunResult:
        return RunResult(
            run_id=run.id,
            run_key=run.run_key,
            trigger_source=run.trigger_source,
            status=run.status,
            total_rows=run.total_rows,
            parsed_rows=run.parsed_rows,
            parse_failures=run.parse_failures,
            steps_completed=count_steps(db, run.id, StepStatus.COMPLETED.value),
            steps_failed=count_steps(db, run.id, StepStatus.FAILED.value),
            report_path=self._report_path(run.run_key),
            reused_existing_run=reused_existing_run,
        )
