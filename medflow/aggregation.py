from collections import defaultdict
from collections.abc import Iterable, Sequence

from medflow.schemas import (
    FilterCriteria,
    Metrics,
    ParseResult,
    PipelineContext,
    QualityReport,
    Record,
    SupplierLink,
)


_SUBSTRING_FIELDS = (
    ("supplier", "supplier_id"),
    ("category", "category"),
    ("license_no", "license_no"),
    ("model", "model"),
    ("lot_no", "lot_no"),
    ("serial_no", "serial_no"),
    ("customer_id", "customer_id"),
)


def matches(record: Record, criteria: FilterCriteria) -> bool:
    for criterion_name, field_name in _SUBSTRING_FIELDS:
        needle = getattr(criteria, criterion_name)
        if needle and needle.lower() not in getattr(record, field_name).lower():
            return False

    if criteria.date_from and record.delivery_date < criteria.date_from:
        return False
    if criteria.date_to and record.delivery_date > criteria.date_to:
        return False
    return True


def filter_records(records: Iterable[Record], criteria: FilterCriteria) -> list[Record]:
    return [record for record in records if matches(record, criteria)]


def trend(records: Iterable[Record]) -> list[tuple[str, int]]:
    totals: dict[str, int] = defaultdict(int)
    for record in records:
        totals[record.delivery_date] += record.quantity
    return sorted(totals.items())


def top_categories(records: Iterable[Record], n: int) -> list[tuple[str, int]]:
    if n <= 0:
        return []
    # dict keeps first-seen order and sorted() is stable, so ties keep that order.
    totals: dict[str, int] = defaultdict(int)
    for record in records:
        totals[record.category] += record.quantity
    return sorted(totals.items(), key=lambda item: item[1], reverse=True)[:n]


def supplier_links(records: Iterable[Record], n: int) -> list[SupplierLink]:
    """Sum quantity per supplier to customer edge and keep the ``n`` heaviest."""
    if n <= 0:
        return []
    totals: dict[tuple[str, str], int] = defaultdict(int)
    for record in records:
        totals[(record.supplier_id, record.customer_id)] += record.quantity
    ranked = sorted(totals.items(), key=lambda item: item[1], reverse=True)[:n]
    return [SupplierLink(supplier_id=supplier, customer_id=customer, quantity=quantity) for (supplier, customer), quantity in ranked]


def summarize(records: Sequence[Record]) -> dict[str, int]:
    return {
        "rows": len(records),
        "units": sum(record.quantity for record in records),
        "suppliers": len({record.supplier_id for record in records}),
        "categories": len({record.category for record in records}),
    }


def preview(records: Sequence[Record], limit: int) -> list[dict[str, object]]:
    return [record.to_dict() for record in records[: max(limit, 0)]]


def build_context(metrics: Metrics, records: Iterable[Record], top_n: int = 5) -> PipelineContext:
    return PipelineContext(
        metrics=metrics,
        top_categories=tuple(top_categories(records, top_n)),
        date_range=metrics.date_range,
    )


def quality_report(parse_result: ParseResult, sample_size: int = 2) -> QualityReport:
    metrics = parse_result.metrics
    return QualityReport(
        parse_failures=metrics.parse_failures,
        invalid_dates=metrics.invalid_dates,
        rejected_rows=parse_result.invalid_rows,
        context_preview={
            "rows": metrics.total_rows,
            "units": metrics.total_units,
            "sample": preview(parse_result.records, sample_size),
        },
    )
