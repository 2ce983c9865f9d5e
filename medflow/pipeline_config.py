"""Parser for the agents configuration text.

Only a small, line-oriented subset of YAML is understood::

    defaults:
      temperature: 0.2
      max_tokens: 2000
    agents:
      - id: summarizer
        name: "Supply Summary"
        model: gemini-2.5-flash
        user_prompt_template: "Summarize {{data_summary}}"

Each line is classified on its own. Block scalars, flow collections and
anchors are not supported; a multi-line prompt must be written on one line.
"""

import logging
from pathlib import Path
import re

from medflow.errors import InvalidConfigError
from medflow.schemas import Pipeline, PipelineDefaults, PipelineStep


logger = logging.getLogger(__name__)

STEP_FIELDS = ("name", "provider", "model", "system_prompt", "user_prompt_template", "max_tokens")

_SECTION_LINE = re.compile(r"^(?P<key>[A-Za-z_][\w-]*):\s*(?:#.*)?$")
_STEP_START = re.compile(r"^-\s*id\s*:(?P<value>.*)$")
_FIELD_LINE = re.compile(r"^(?P<key>[A-Za-z_][\w-]*)\s*:(?P<value>.*)$")


def clean_value(raw: str) -> str:
    value = raw.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1].strip()
    return value


def _to_int(key: str, raw: str, line_number: int) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise InvalidConfigError(f"line {line_number}: {key} must be an integer, got {raw!r}") from exc


def _to_float(key: str, raw: str, line_number: int) -> float:
    try:
        return float(raw)
    except ValueError as exc:
        raise InvalidConfigError(f"line {line_number}: {key} must be a number, got {raw!r}") from exc


def load_config_text(config_path: Path) -> str:
    if not config_path.exists():
        raise FileNotFoundError(f"agents config not found: {config_path}")
    return config_path.read_text(encoding="utf-8")


def parse_pipeline(config_text: str) -> Pipeline:
    section: str | None = None
    saw_agents = False
    defaults: dict[str, object] = {}
    steps: list[dict[str, object]] = []
    current: dict[str, object] | None = None

    for line_number, line in enumerate(config_text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue

        if not line[0].isspace() and not stripped.startswith("-"):
            top_level = _SECTION_LINE.match(stripped)
            section = top_level.group("key") if top_level else None
            if section == "agents":
                if saw_agents:
                    raise InvalidConfigError(f"line {line_number}: duplicate agents section")
                saw_agents = True
            continue

        if section == "defaults":
            field = _FIELD_LINE.match(stripped)
            if not field:
                continue
            key, value = field.group("key"), clean_value(field.group("value"))
            if key == "temperature":
                defaults["temperature"] = _to_float(key, value, line_number)
            elif key == "max_tokens":
                defaults["max_tokens"] = _to_int(key, value, line_number)
            continue

        if section != "agents":
            continue

        step_start = _STEP_START.match(stripped)
        if step_start:
            step_id = clean_value(step_start.group("value"))
            if not step_id:
                raise InvalidConfigError(f"line {line_number}: step id is empty")
            if any(step["id"] == step_id for step in steps):
                raise InvalidConfigError(f"line {line_number}: duplicate step id {step_id!r}")
            current = {"id": step_id}
            steps.append(current)
            continue

        field = _FIELD_LINE.match(stripped.lstrip("- "))
        if not field or field.group("key") not in STEP_FIELDS:
            continue
        if current is None:
            logger.warning("ignoring agent field outside a step", extra={"line": line_number, "key": field.group("key")})
            continue

        key, value = field.group("key"), clean_value(field.group("value"))
        current[key] = _to_int(key, value, line_number) if key == "max_tokens" else value

    if not saw_agents:
        raise InvalidConfigError("configuration has no 'agents:' section")

    pipeline_defaults = PipelineDefaults(**defaults)
    return Pipeline(
        defaults=pipeline_defaults,
        steps=tuple(
            PipelineStep(**{"max_tokens": pipeline_defaults.max_tokens, **step})
            for step in steps
        ),
    )
