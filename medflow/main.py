import argparse
import json
import logging
import os
from pathlib import Path
import sys

from medflow import aggregation
from medflow.config import get_settings
from medflow.database import build_session_factory
from medflow.errors import InvalidFormatError
from medflow.ingest import load_text
from medflow.pipeline import PipelineRunner
from medflow.providers import GeminiModelCaller
from medflow.scheduler import start_scheduler
from medflow.schemas import FilterCriteria, PipelineDefaults
from medflow.session import DashboardSession


FILTER_OPTIONS = ("supplier", "category", "license_no", "model", "lot_no", "serial_no", "customer_id")


def _add_filter_arguments(parser: argparse.ArgumentParser) -> None:
    for name in FILTER_OPTIONS:
        flag = "--" + name.replace("_", "-")
        parser.add_argument(flag, dest=name, default="", help=f"case-insensitive substring filter on {name}")
    parser.add_argument("--date-from", default="", help="earliest delivery date, YYYYMMDD")
    parser.add_argument("--date-to", default="", help="latest delivery date, YYYYMMDD")
    parser.add_argument("--top-n", type=int, default=None, help="size of category and supplier rankings")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Supply-chain metrics and agent pipeline runner")
    subparsers = parser.add_subparsers(dest="command", required=True)

    summary_parser = subparsers.add_parser("summary", help="parse input data and print metrics")
    summary_parser.add_argument("--input", required=False, help="delimited input file (defaults to INPUT_PATH)")
    summary_parser.add_argument("--preview", type=int, default=0, help="include the first N parsed records")
    _add_filter_arguments(summary_parser)

    run_parser = subparsers.add_parser("run", help="run the agent pipeline once")
    run_parser.add_argument("--run-key", required=True, help="Idempotency key for this run")
    run_parser.add_argument("--step", type=int, default=None, help="run only the step at this index")
    run_parser.add_argument(
        "--trigger-source",
        default="manual",
        choices=["manual", "scheduled"],
        help="Metadata label for how this run was triggered",
    )
    _add_filter_arguments(run_parser)

    schedule_parser = subparsers.add_parser("schedule", help="start daily scheduler")
    schedule_parser.add_argument("--run-now", action="store_true", help="also run once immediately")

    return parser.parse_args()


def build_criteria(args: argparse.Namespace, default_top_n: int) -> FilterCriteria:
    return FilterCriteria(
        **{name: getattr(args, name) for name in FILTER_OPTIONS},
        date_from=args.date_from,
        date_to=args.date_to,
        top_n=args.top_n if args.top_n is not None else default_top_n,
    )


def summarize_input(args: argparse.Namespace, input_path: Path, delimiter: str, default_top_n: int) -> dict[str, object]:
    session = DashboardSession(delimiter=delimiter)
    result = session.load_text(load_text(input_path))
    session.set_criteria(build_criteria(args, default_top_n))
    quality = aggregation.quality_report(result)
    payload: dict[str, object] = {
        "metrics": result.metrics.to_dict(),
        "filtered": session.summary(),
        "trend": session.trend(),
        "top_categories": session.top_categories(),
        "supplier_links": [
            {"supplier": link.supplier_id, "customer": link.customer_id, "quantity": link.quantity}
            for link in session.supplier_links()
        ],
        "quality": {
            "parse_failures": quality.parse_failures,
            "invalid_dates": quality.invalid_dates,
            "rejected": [
                {"line": row.line_number, "reason": row.reason} for row in quality.rejected_rows
            ],
        },
    }
    if args.preview:
        payload["preview"] = aggregation.preview(session.filtered, args.preview)
    return payload


def main() -> None:
    args = parse_args()
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if args.command == "summary":
        input_path = Path(args.input or settings.input_path)
        try:
            payload = summarize_input(args, input_path, settings.delimiter, settings.top_n)
        except (FileNotFoundError, InvalidFormatError) as exc:
            print(f"error={exc}", file=sys.stderr)
            raise SystemExit(1) from exc
        print(json.dumps(payload, indent=2))
        return

    credential = os.getenv(settings.credential_env, "")

    def model_caller_factory(defaults: PipelineDefaults) -> GeminiModelCaller:
        return GeminiModelCaller(temperature=defaults.temperature, timeout_seconds=settings.request_timeout_seconds)

    session_factory = build_session_factory(settings.database_url)
    if args.command == "schedule":
        start_scheduler(settings, session_factory, model_caller_factory, credential, run_now=args.run_now)
        return

    runner = PipelineRunner(settings, session_factory, model_caller_factory)
    result = runner.run(
        run_key=args.run_key,
        credential=credential,
        trigger_source=args.trigger_source,
        criteria=build_criteria(args, settings.top_n),
        step_index=args.step,
    )

    print(
        "run_id={run_id} run_key={run_key} trigger={trigger} status={status} total={total} parsed={parsed} failures={failures} completed={completed} failed={failed} reused={reused} report={report}".format(
            run_id=result.run_id,
            run_key=result.run_key,
            trigger=result.trigger_source,
            status=result.status,
            total=result.total_rows,
            parsed=result.parsed_rows,
            failures=result.parse_failures,
            completed=result.steps_completed,
            failed=result.steps_failed,
            reused=result.reused_existing_run,
            report=result.report_path,
        )
    )
    if result.status == "failed":
        raise SystemExit(1)


if __name__ == "__main__":
    main()
