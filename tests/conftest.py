from collections.abc import Generator
from pathlib import Path

import pytest

from medflow.config import Settings
from medflow.database import build_session_factory
from medflow.errors import ProviderError
from medflow.pipeline import PipelineRunner
from medflow.schemas import PipelineDefaults


SAMPLE_CSV = (
    "date,supplier,category,model,customer,qty\n"
    "20240101,S1,Gloves,M1,C1,10\n"
    "20240102,S2,Masks,M2,C2,3\n"
    "20240102,S1,Gloves,M1,C3,5\n"
    "bad,line\n"
)

SAMPLE_AGENTS = """\
defaults:
  temperature: 0.3
  max_tokens: 900
agents:
  - id: analyst
    name: "Analyst"
    provider: gemini
    model: model-a
    system_prompt: "You analyse."
    user_prompt_template: "Data {{data_summary}}"
    max_tokens: 500
  - id: reviewer
    name: "Reviewer"
    provider: gemini
    model: model-b
    system_prompt: "You review."
    user_prompt_template: "Prior {{previous_output}}"
"""


class RecordingCaller:
    """Model caller that answers every prompt and remembers what it was sent."""

    def __init__(self, fail_on_call: int | None = None) -> None:
        self.calls: list[dict[str, object]] = []
        self.fail_on_call = fail_on_call

    async def __call__(self, credential, model, system_prompt, user_prompt, max_tokens):
        self.calls.append(
            {
                "credential": credential,
                "model": model,
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
                "max_tokens": max_tokens,
            }
        )
        if self.fail_on_call is not None and len(self.calls) - 1 == self.fail_on_call:
            raise ProviderError("quota exceeded")
        return f"output-{len(self.calls)}"


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    (tmp_path / "data").mkdir(parents=True, exist_ok=True)
    (tmp_path / "outputs").mkdir(parents=True, exist_ok=True)
    (tmp_path / "data" / "agents.yaml").write_text(SAMPLE_AGENTS, encoding="utf-8")
    (tmp_path / "data" / "skill.md").write_text("Be concise.", encoding="utf-8")
    return tmp_path


@pytest.fixture()
def test_settings(temp_workspace: Path) -> Settings:
    return Settings(
        app_name="medflow",
        database_url=f"sqlite:///{temp_workspace / 'test.db'}",
        log_level="INFO",
        input_path=str(temp_workspace / "data" / "transactions.csv"),
        agents_path=str(temp_workspace / "data" / "agents.yaml"),
        skill_path=str(temp_workspace / "data" / "skill.md"),
        output_dir=str(temp_workspace / "outputs"),
        delimiter=",",
        top_n=10,
        request_timeout_seconds=5,
        credential_env="GEMINI_API_KEY",
        schedule_hour_utc=2,
        schedule_minute_utc=0,
    )


@pytest.fixture()
def caller() -> RecordingCaller:
    return RecordingCaller()


@pytest.fixture()
def runner(test_settings: Settings, caller: RecordingCaller) -> Generator[PipelineRunner, None, None]:
    session_factory = build_session_factory(test_settings.database_url)

    def factory(defaults: PipelineDefaults) -> RecordingCaller:
        return caller

    yield PipelineRunner(test_settings, session_factory, factory)
