import json
from pathlib import Path

from sqlalchemy import select

from medflow.config import Settings
from medflow.database import build_session_factory
from medflow.db_models import PipelineRun, RejectedRow, StepRun
from medflow.pipeline import PipelineRunner
from medflow.run_store import count_steps
from medflow.schemas import PipelineDefaults

from conftest import SAMPLE_CSV, RecordingCaller


def write_input_file(settings: Settings, text: str = SAMPLE_CSV) -> None:
    Path(settings.input_path).write_text(text, encoding="utf-8")


def test_full_run_lifecycle_and_idempotency(runner, test_settings: Settings, caller: RecordingCaller) -> None:
    run_key = "daily-2026-02-22"
    write_input_file(test_settings)

    first = runner.run(run_key=run_key, credential="key")
    second = runner.run(run_key=run_key, credential="key")

    assert first.status == "succeeded"
    assert first.total_rows == 4
    assert first.parsed_rows == 3
    assert first.parse_failures == 1
    assert first.steps_completed == 2
    assert first.steps_failed == 0
    assert first.trigger_source == "manual"
    assert first.reused_existing_run is False

    assert second.reused_existing_run is True
    assert second.run_id == first.run_id
    assert len(caller.calls) == 2
    assert caller.calls[0]["system_prompt"] == "You analyse.\n\nBe concise."

    report = json.loads(Path(first.report_path).read_text(encoding="utf-8"))
    assert report["metrics"]["totalUnits"] == 18
    assert [step["status"] for step in report["steps"]] == ["completed", "completed"]
    assert report["steps"][1]["output"] == "output-2"

    with runner.session_factory() as db:
        run = db.execute(select(PipelineRun).where(PipelineRun.run_key == run_key)).scalar_one()
        assert run.status == "succeeded"
        assert run.total_units == 18

        steps = db.execute(select(StepRun).where(StepRun.run_id == run.id).order_by(StepRun.step_index)).scalars().all()
        assert [step.step_id for step in steps] == ["analyst", "reviewer"]
        assert [step.status for step in steps] == ["completed", "completed"]
        assert steps[0].output == "output-1"

        rejected = db.execute(select(RejectedRow).where(RejectedRow.run_id == run.id)).scalars().all()
        assert len(rejected) == 1
        assert rejected[0].raw_line == "bad,line"


def test_provider_failure_fails_run_and_records_failed_step(test_settings: Settings) -> None:
    write_input_file(test_settings)
    failing = RecordingCaller(fail_on_call=0)
    runner = PipelineRunner(test_settings, build_session_factory(test_settings.database_url), lambda defaults: failing)

    result = runner.run(run_key="provider-down", credential="key")

    assert result.status == "failed"
    assert result.steps_completed == 0
    assert result.steps_failed == 1
    assert len(failing.calls) == 1

    with runner.session_factory() as db:
        run = db.execute(select(PipelineRun).where(PipelineRun.run_key == "provider-down")).scalar_one()
        assert "analyst" in run.error
        step = db.execute(select(StepRun).where(StepRun.run_id == run.id)).scalar_one()
        assert step.error == "quota exceeded"


def test_failed_run_can_be_retried_with_same_run_key(runner, test_settings: Settings) -> None:
    run_key = "daily-2026-02-24"

    first = runner.run(run_key=run_key, credential="key")
    assert first.status == "failed"

    write_input_file(test_settings)
    second = runner.run(run_key=run_key, credential="key")
    assert second.status == "succeeded"
    assert second.reused_existing_run is False
    assert second.run_id == first.run_id

    with runner.session_factory() as db:
        run = db.execute(select(PipelineRun).where(PipelineRun.run_key == run_key)).scalar_one()
        assert run.status == "succeeded"
        assert run.error is None

        steps = db.execute(select(StepRun).where(StepRun.run_id == run.id)).scalars().all()
        assert sorted(step.step_id for step in steps) == ["analyst", "reviewer"]


def test_invalid_input_fails_run_without_model_calls(runner, test_settings: Settings, caller: RecordingCaller) -> None:
    write_input_file(test_settings, "just,some,words\n")

    result = runner.run(run_key="bad-input", credential="key")

    assert result.status == "failed"
    assert caller.calls == []


def test_single_step_run(runner, test_settings: Settings, caller: RecordingCaller) -> None:
    write_input_file(test_settings)

    result = runner.run(run_key="only-first", credential="key", step_index=0)

    assert result.status == "succeeded"
    assert result.steps_completed == 1
    assert [call["model"] for call in caller.calls] == ["model-a"]


def test_caller_factory_receives_pipeline_defaults(test_settings: Settings) -> None:
    write_input_file(test_settings)
    seen: list[PipelineDefaults] = []

    def factory(defaults: PipelineDefaults) -> RecordingCaller:
        seen.append(defaults)
        return RecordingCaller()

    runner = PipelineRunner(test_settings, build_session_factory(test_settings.database_url), factory)
    runner.run(run_key="defaults", credential="key")

    assert seen == [PipelineDefaults(temperature=0.3, max_tokens=900)]


def test_count_steps_is_scoped_to_run_and_status(runner, test_settings: Settings) -> None:
    write_input_file(test_settings)
    good = runner.run(run_key="count-good", credential="key")
    failing = RecordingCaller(fail_on_call=1)
    bad = PipelineRunner(test_settings, runner.session_factory, lambda defaults: failing).run(
        run_key="count-bad", credential="key"
    )

    with runner.session_factory() as db:
        assert count_steps(db, good.run_id, "completed") == 2
        assert count_steps(db, good.run_id, "failed") == 0
        assert count_steps(db, bad.run_id, "completed") == 1
        assert count_steps(db, bad.run_id, "failed") == 1
        assert count_steps(db, bad.run_id, "running") == 0
