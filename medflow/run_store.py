from datetime import UTC, datetime

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from medflow.db_models import PipelineRun, RejectedRow, StepRun
from medflow.schemas import InvalidRow, Metrics, PipelineStep


def utc_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def get_run_by_key(db: Session, run_key: str) -> PipelineRun | None:
    stmt = select(PipelineRun).where(PipelineRun.run_key == run_key)
    return db.execute(stmt).scalar_one_or_none()


def create_or_get_run(db: Session, *, run_key: str, trigger_source: str) -> tuple[PipelineRun, bool]:
    run = PipelineRun(run_key=run_key, trigger_source=trigger_source, status="queued")
    db.add(run)
    try:
        db.commit()
    except IntegrityError:
        # Unique run_key makes run creation idempotent.
        db.rollback()
        existing = get_run_by_key(db, run_key)
        if existing:
            return existing, False
        raise

    db.refresh(run)
    return run, True


def reset_failed_run_state(db: Session, run: PipelineRun) -> None:
    db.execute(delete(StepRun).where(StepRun.run_id == run.id))
    db.execute(delete(RejectedRow).where(RejectedRow.run_id == run.id))

    run.status = "queued"
    run.error = None
    run.completed_at = None
    run.total_rows = 0
    run.parsed_rows = 0
    run.parse_failures = 0
    run.total_units = 0
    db.commit()


def mark_run_running(db: Session, run: PipelineRun) -> None:
    run.status = "running"
    run.started_at = utc_now()
    run.error = None
    db.commit()


def record_metrics(db: Session, run: PipelineRun, metrics: Metrics) -> None:
    run.total_rows = metrics.total_rows
    run.parsed_rows = metrics.parsed_rows
    run.parse_failures = metrics.parse_failures
    run.total_units = metrics.total_units
    db.commit()


def mark_run_finished(db: Session, run: PipelineRun, *, status: str, error: str | None = None) -> None:
    run.status = status
    run.error = error
    run.completed_at = utc_now()
    db.commit()


def start_step(db: Session, *, run_id: int, step_index: int, step: PipelineStep) -> StepRun:
    step_run = StepRun(
        run_id=run_id,
        step_index=step_index,
        step_id=step.id,
        model=step.model,
        status="running",
        started_at=utc_now(),
    )
    db.add(step_run)
    db.commit()
    db.refresh(step_run)
    return step_run


def finish_step(db: Session, step_run: StepRun, step: PipelineStep) -> None:
    finished_at = utc_now()
    step_run.status = step.status.value
    step_run.completed_at = finished_at
    step_run.duration_ms = (finished_at - step_run.started_at).total_seconds() * 1000
    step_run.output = step.output or None
    step_run.error = step.error or None
    db.commit()


def store_rejected_rows(db: Session, *, run_id: int, invalid_rows: tuple[InvalidRow, ...]) -> None:
    for invalid in invalid_rows:
        db.add(
            RejectedRow(
                run_id=run_id,
                line_number=invalid.line_number,
                raw_line=invalid.raw_line,
                reason=invalid.reason,
            )
        )
    db.commit()


def count_steps(db: Session, run_id: int, status: str) -> int:
    stmt = select(func.count()).select_from(StepRun).where(StepRun.run_id == run_id, StepRun.status == status)
    return db.execute(stmt).scalar_one()
