from datetime import UTC, datetime
import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from sqlalchemy.orm import Session, sessionmaker

from medflow.config import Settings
from medflow.pipeline import ModelCallerFactory, PipelineRunner


logger = logging.getLogger(__name__)


def _run_daily_pipeline(
    settings: Settings,
    session_factory: sessionmaker[Session],
    model_caller_factory: ModelCallerFactory,
    credential: str,
) -> None:
    run_date = datetime.now(UTC).date()
    run_key = f"scheduled-{run_date.isoformat()}"

    runner = PipelineRunner(settings, session_factory, model_caller_factory)
    result = runner.run(run_key=run_key, credential=credential, trigger_source="scheduled")
    if result.status == "failed":
        logger.error(
            "scheduled pipeline run failed",
            extra={
                "run_key": result.run_key,
                "status": result.status,
                "steps_failed": result.steps_failed,
                "reused_existing_run": result.reused_existing_run,
            },
        )
        return
    logger.info(
        "scheduled pipeline run completed",
        extra={
            "run_key": result.run_key,
            "status": result.status,
            "steps_completed": result.steps_completed,
            "reused_existing_run": result.reused_existing_run,
        },
    )


def build_scheduler(
    settings: Settings,
    session_factory: sessionmaker[Session],
    model_caller_factory: ModelCallerFactory,
    credential: str,
) -> BlockingScheduler:
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        _run_daily_pipeline,
        "cron",
        args=[settings, session_factory, model_caller_factory, credential],
        hour=settings.schedule_hour_utc,
        minute=settings.schedule_minute_utc,
        id="daily_pipeline",
        replace_existing=True,
    )
    return scheduler


def start_scheduler(
    settings: Settings,
    session_factory: sessionmaker[Session],
    model_caller_factory: ModelCallerFactory,
    credential: str,
    *,
    run_now: bool = False,
) -> None:
    scheduler = build_scheduler(settings, session_factory, model_caller_factory, credential)

    logger.info(
        "scheduler started",
        extra={
            "schedule_hour_utc": settings.schedule_hour_utc,
            "schedule_minute_utc": settings.schedule_minute_utc,
        },
    )

    if run_now:
        _run_daily_pipeline(settings, session_factory, model_caller_factory, credential)

    scheduler.start()
