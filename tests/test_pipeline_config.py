from pathlib import Path

import pytest

from medflow.errors import InvalidConfigError
from medflow.pipeline_config import clean_value, parse_pipeline
from medflow.schemas import StepStatus

from conftest import SAMPLE_AGENTS


def test_parse_sample_config() -> None:
    pipeline = parse_pipeline(SAMPLE_AGENTS)

    assert [step.id for step in pipeline.steps] == ["analyst", "reviewer"]
    analyst, reviewer = pipeline.steps
    assert analyst.name == "Analyst"
    assert analyst.provider == "gemini"
    assert analyst.model == "model-a"
    assert analyst.system_prompt == "You analyse."
    assert analyst.user_prompt_template == "Data {{data_summary}}"
    assert analyst.max_tokens == 500
    assert pipeline.defaults.temperature == 0.3
    assert pipeline.defaults.max_tokens == 900
    # Omitted max_tokens falls back to the defaults block.
    assert reviewer.max_tokens == 900


def test_steps_start_idle_with_empty_output() -> None:
    pipeline = parse_pipeline(SAMPLE_AGENTS)

    assert all(step.status is StepStatus.IDLE for step in pipeline.steps)
    assert all(step.output == "" for step in pipeline.steps)


def test_defaults_apply_when_block_is_missing() -> None:
    pipeline = parse_pipeline("agents:\n  - id: solo\n    model: m\n")

    assert pipeline.defaults.temperature == 0.2
    assert pipeline.steps[0].max_tokens == 2000


def test_missing_agents_section_raises() -> None:
    with pytest.raises(InvalidConfigError):
        parse_pipeline("defaults:\n  max_tokens: 10\n")


def test_agents_section_without_ids_yields_no_steps() -> None:
    pipeline = parse_pipeline("agents:\n  # nothing yet\n  name: orphan\n  model: m\n")

    assert pipeline.steps == ()


def test_values_keep_inner_colons_and_drop_surrounding_quotes() -> None:
    text = (
        "agents:\n"
        "  - id: 'quoted'\n"
        "    user_prompt_template: \"Context: {{data_summary}}\"\n"
        "    system_prompt:   plain text  \n"
    )

    step = parse_pipeline(text).steps[0]

    assert step.id == "quoted"
    assert step.user_prompt_template == "Context: {{data_summary}}"
    assert step.system_prompt == "plain text"


def test_unknown_keys_and_later_sections_are_ignored() -> None:
    text = (
        "agents:\n"
        "  - id: one\n"
        "    temperature: 0.9\n"
        "    model: m1\n"
        "ui:\n"
        "  - id: not-an-agent\n"
        "    model: m2\n"
    )

    pipeline = parse_pipeline(text)

    assert [step.id for step in pipeline.steps] == ["one"]
    assert pipeline.steps[0].model == "m1"


def test_duplicate_step_id_raises() -> None:
    with pytest.raises(InvalidConfigError):
        parse_pipeline("agents:\n  - id: a\n  - id: a\n")


def test_non_integer_max_tokens_raises() -> None:
    with pytest.raises(InvalidConfigError):
        parse_pipeline("agents:\n  - id: a\n    max_tokens: lots\n")


def test_reparse_builds_fresh_pipeline() -> None:
    assert parse_pipeline(SAMPLE_AGENTS) == parse_pipeline(SAMPLE_AGENTS)


def test_sample_agents_file_parses() -> None:
    sample = Path(__file__).resolve().parents[1] / "samples" / "agents.yaml"

    pipeline = parse_pipeline(sample.read_text(encoding="utf-8"))

    assert len(pipeline.steps) == 3
    assert pipeline.steps[1].max_tokens == 2000


def test_clean_value_only_strips_matching_quotes() -> None:
    assert clean_value(' "abc" ') == "abc"
    assert clean_value("'abc\"") == "'abc\""


def test_unindented_step_list_is_accepted() -> None:
    pipeline = parse_pipeline("agents:\n- id: a\n  model: m\n- id: b\n")

    assert [step.id for step in pipeline.steps] == ["a", "b"]
    assert pipeline.steps[0].model == "m"
