"""Sequential execution of agent pipelines.

Every transition returns a new :class:`Pipeline`; the input value is never
mutated. Callers that want to observe intermediate states (for example the
``running`` state while a model call is in flight) pass ``on_update``.
"""

import asyncio
from collections.abc import Callable
from dataclasses import replace
import json
import logging
from typing import Protocol

from medflow.errors import ProviderError
from medflow.schemas import Pipeline, PipelineContext, StepStatus


logger = logging.getLogger(__name__)

DATA_SUMMARY_TOKEN = "{{data_summary}}"
PREVIOUS_OUTPUT_TOKEN = "{{previous_output}}"
NO_PREVIOUS_OUTPUT = "None"


class ModelCaller(Protocol):
    async def __call__(
        self,
        credential: str,
        model: str,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
    ) -> str: ...


PipelineListener = Callable[[Pipeline], None]


def serialize_context(context: PipelineContext) -> str:
    return json.dumps(context.to_dict(), sort_keys=True)


def render_prompt(template: str, context: PipelineContext, previous_output: str) -> str:
    return template.replace(DATA_SUMMARY_TOKEN, serialize_context(context)).replace(
        PREVIOUS_OUTPUT_TOKEN, previous_output
    )


def compose_system_prompt(system_prompt: str, skill: str) -> str:
    if not skill:
        return system_prompt
    return f"{system_prompt}\n\n{skill}"


def _publish(pipeline: Pipeline, on_update: PipelineListener | None) -> Pipeline:
    if on_update:
        on_update(pipeline)
    return pipeline


async def run_step(
    pipeline: Pipeline,
    index: int,
    context: PipelineContext,
    model_caller: ModelCaller,
    *,
    credential: str,
    skill: str = "",
    on_update: PipelineListener | None = None,
) -> Pipeline:
    if not 0 <= index < len(pipeline.steps):
        raise IndexError(f"step index {index} out of range for pipeline of {len(pipeline.steps)} steps")

    step = pipeline.steps[index]
    previous_output = pipeline.steps[index - 1].output if index > 0 else NO_PREVIOUS_OUTPUT
    user_prompt = render_prompt(step.user_prompt_template, context, previous_output)
    system_prompt = compose_system_prompt(step.system_prompt, skill)
    max_tokens = step.max_tokens if step.max_tokens is not None else pipeline.defaults.max_tokens

    running = replace(step, status=StepStatus.RUNNING, output="", error="")
    pipeline = _publish(pipeline.with_step(index, running), on_update)
    logger.info("agent step started", extra={"step_id": step.id, "model": step.model, "index": index})

    try:
        output = await model_caller(credential, step.model, system_prompt, user_prompt, max_tokens)
    except (ProviderError, asyncio.TimeoutError) as exc:
        logger.warning("agent step failed", extra={"step_id": step.id, "error": str(exc)})
        failed = replace(running, status=StepStatus.FAILED, error=str(exc) or type(exc).__name__)
        return _publish(pipeline.with_step(index, failed), on_update)
    except asyncio.CancelledError:
        logger.info("agent step cancelled", extra={"step_id": step.id})
        cancelled = replace(running, status=StepStatus.FAILED, error="cancelled")
        _publish(pipeline.with_step(index, cancelled), on_update)
        raise
    except Exception as exc:
        failed = replace(running, status=StepStatus.FAILED, error=str(exc) or type(exc).__name__)
        _publish(pipeline.with_step(index, failed), on_update)
        raise

    completed = replace(running, status=StepStatus.COMPLETED, output=output)
    logger.info("agent step completed", extra={"step_id": step.id, "output_chars": len(output)})
    return _publish(pipeline.with_step(index, completed), on_update)


async def run_all(
    pipeline: Pipeline,
    context: PipelineContext,
    model_caller: ModelCaller,
    *,
    credential: str,
    skill: str = "",
    on_update: PipelineListener | None = None,
    cancel_event: asyncio.Event | None = None,
) -> Pipeline:
    for index in range(len(pipeline.steps)):
        if cancel_event is not None and cancel_event.is_set():
            logger.info("pipeline run cancelled", extra={"next_index": index})
            break

        pipeline = await run_step(
            pipeline,
            index,
            context,
            model_caller,
            credential=credential,
            skill=skill,
            on_update=on_update,
        )
        # Later prompts depend on this step's output.
        if pipeline.steps[index].status is StepStatus.FAILED:
            break
    return pipeline
