from dataclasses import dataclass, field, replace
from enum import Enum


@dataclass(frozen=True)
class Record:
    delivery_date: str
    supplier_id: str
    category: str
    license_no: str
    model: str
    lot_no: str
    serial_no: str
    customer_id: str
    quantity: int

    def to_dict(self) -> dict[str, object]:
        return {
            "delivery_date": self.delivery_date,
            "supplier_id": self.supplier_id,
            "category": self.category,
            "license_no": self.license_no,
            "model": self.model,
            "lot_no": self.lot_no,
            "serial_no": self.serial_no,
            "customer_id": self.customer_id,
            "quantity": self.quantity,
        }


@dataclass(frozen=True)
class InvalidRow:
    line_number: int
    raw_line: str
    reason: str


@dataclass(frozen=True)
class Metrics:
    total_rows: int
    parsed_rows: int
    total_units: int
    unique_suppliers: int
    parse_failures: int
    invalid_dates: int
    date_range: tuple[str, ...]

    def to_dict(self) -> dict[str, object]:
        return {
            "totalRows": self.total_rows,
            "parsedRows": self.parsed_rows,
            "totalUnits": self.total_units,
            "uniqueSuppliers": self.unique_suppliers,
            "parseFailures": self.parse_failures,
            "invalidDates": self.invalid_dates,
            "dateRange": list(self.date_range),
        }


@dataclass(frozen=True)
class ParseResult:
    records: tuple[Record, ...]
    metrics: Metrics
    invalid_rows: tuple[InvalidRow, ...] = ()


@dataclass(frozen=True)
class FilterCriteria:
    supplier: str = ""
    category: str = ""
    license_no: str = ""
    model: str = ""
    lot_no: str = ""
    serial_no: str = ""
    customer_id: str = ""
    date_from: str = ""
    date_to: str = ""
    top_n: int = 10


@dataclass(frozen=True)
class SupplierLink:
    supplier_id: str
    customer_id: str
    quantity: int


@dataclass(frozen=True)
class QualityReport:
    parse_failures: int
    invalid_dates: int
    rejected_rows: tuple[InvalidRow, ...]
    context_preview: dict[str, object]


class StepStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class PipelineStep:
    id: str
    name: str = ""
    provider: str = ""
    model: str = ""
    system_prompt: str = ""
    user_prompt_template: str = ""
    max_tokens: int | None = None
    status: StepStatus = StepStatus.IDLE
    output: str = ""
    error: str = ""


@dataclass(frozen=True)
class PipelineDefaults:
    temperature: float = 0.2
    max_tokens: int = 2000


@dataclass(frozen=True)
class Pipeline:
    defaults: PipelineDefaults = field(default_factory=PipelineDefaults)
    steps: tuple[PipelineStep, ...] = ()

    def with_step(self, index: int, step: PipelineStep) -> "Pipeline":
        steps = list(self.steps)
        steps[index] = step
        return replace(self, steps=tuple(steps))


@dataclass(frozen=True)
class PipelineContext:
    metrics: Metrics
    top_categories: tuple[tuple[str, int], ...]
    date_range: tuple[str, ...]

    def to_dict(self) -> dict[str, object]:
        return {
            "totalRows": self.metrics.total_rows,
            "parsedRows": self.metrics.parsed_rows,
            "totalUnits": self.metrics.total_units,
            "uniqueSuppliers": self.metrics.unique_suppliers,
            "parseFailures": self.metrics.parse_failures,
            "topCategories": [{"category": name, "units": units} for name, units in self.top_categories],
            "dateRange": list(self.date_range),
        }


@dataclass(frozen=True)
class RunResult:
    run_id: int
    run_key: str
    trigger_source: str
    status: str
    total_rows: int
    parsed_rows: int
    parse_failures: int
    steps_completed: int
    steps_failed: int
    report_path: str | None
    reused_existing_run: bool
