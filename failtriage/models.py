# Failure records, run summaries and the analysis results derived from them
# Pydantic models are the wire format of every file under the error log directory

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Any, Union, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


class Category(str, Enum):
    # Closed taxonomy of failure root causes
    SELECTOR_NOT_FOUND = "SELECTOR_NOT_FOUND"
    STRICT_MODE_VIOLATION = "STRICT_MODE_VIOLATION"
    NETWORK_TIMEOUT = "NETWORK_TIMEOUT"
    AUTHENTICATION_FAILURE = "AUTHENTICATION_FAILURE"
    ELEMENT_NOT_INTERACTIVE = "ELEMENT_NOT_INTERACTIVE"
    NAVIGATION_TIMEOUT = "NAVIGATION_TIMEOUT"
    ASSERTION_FAILURE = "ASSERTION_FAILURE"
    UNKNOWN = "UNKNOWN"


class StrictModeDetails(BaseModel):
    # Selector matched several elements where exactly one was required
    kind: Literal["strict_mode"] = "strict_mode"
    elements_found: int = Field(..., ge=0, description="Number of elements the selector resolved to")
    elements_expected: int = Field(1, description="Number of elements the operation required")
    selector: str = Field("unknown", description="Selector that was attempted")
    found_elements: List[str] = Field(default_factory=list, description="First few matched elements")
    suggested_fix: str = Field(..., description="Fix chosen by match count")


class AssertionDetails(BaseModel):
    # Values supplied by a wrapped assertion call
    kind: Literal["assertion"] = "assertion"
    assertion_type: str = Field("expect", description="Assertion family")
    operation: str = Field("unknown", description="Comparison operator name")
    expected_value: Any = Field(None, description="Expected value")
    actual_value: Any = Field(None, description="Actual value")
    description: str = Field("", description="Human readable assertion description")
    suggested_fix: str = Field(..., description="Operation specific suggestion")


FailureDetails = Union[StrictModeDetails, AssertionDetails]


class RecoveryOutcome(BaseModel):
    # Outcome reported by an external retry/mitigation collaborator
    model_config = ConfigDict(frozen=True)

    attempted: bool = False
    strategies: List[str] = Field(default_factory=list)
    successful: bool = False
    attempts: int = Field(0, ge=0)


class NetworkEntry(BaseModel):
    url: str
    method: str = "GET"
    resource_type: Optional[str] = None
    status: Optional[int] = None
    status_text: Optional[str] = None
    started_at: float
    ended_at: Optional[float] = None
    duration_ms: Optional[float] = None
    failure: Optional[str] = None


class ConsoleEntry(BaseModel):
    type: str
    text: str
    location: Dict[str, Any] = Field(default_factory=dict)
    timestamp: float


class EnvironmentInfo(BaseModel):
    # Host state at capture time
    python_version: str
    platform: str
    hostname: str
    cpu_percent: Optional[float] = None
    memory_percent: Optional[float] = None


class PageSnapshot(BaseModel):
    # Every field is optional: a failed sub-capture leaves its field unset
    url: Optional[str] = None
    title: Optional[str] = None
    viewport: Optional[Dict[str, int]] = None
    local_storage: Optional[Dict[str, str]] = None
    session_storage: Optional[Dict[str, str]] = None
    cookies: Optional[List[Dict[str, Any]]] = None
    console: Optional[List[ConsoleEntry]] = None
    network: Optional[List[NetworkEntry]] = None
    screenshot_path: Optional[str] = None
    dom: Optional[str] = None
    environment: Optional[EnvironmentInfo] = None


class CaptureResult(BaseModel):
    ok: bool
    snapshot: PageSnapshot
    omitted_fields: List[str] = Field(default_factory=list)


class FailureContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str = "unknown"
    test_name: str = "unknown"
    test_file: Optional[str] = None
    project: Optional[str] = None
    retry: int = Field(0, ge=0)
    duration_ms: Optional[float] = None
    additional_info: Dict[str, Any] = Field(default_factory=dict)
    details: Optional[FailureDetails] = Field(None, discriminator="kind")
    page: Optional[PageSnapshot] = None


class FailureRecord(BaseModel):
    # One failure, created once; only `recovery` is ever replaced
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="<session_id>-<sequence>, sortable by creation order")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    session_id: str
    category: Category = Category.UNKNOWN
    message: str
    stack: Optional[str] = None
    context: FailureContext = Field(default_factory=FailureContext)
    artifacts: List[str] = Field(default_factory=list)
    recovery: RecoveryOutcome = Field(default_factory=RecoveryOutcome)

    @field_validator('category', mode='before')
    @classmethod
    def coerce_category(cls, v):
        # Unrecognised values from old logs degrade to UNKNOWN
        if isinstance(v, Category):
            return v
        try:
            return Category(str(v).upper())
        except ValueError:
            return Category.UNKNOWN

    @property
    def test_name(self) -> str:
        return self.context.test_name

    def with_recovery(self, outcome: RecoveryOutcome) -> "FailureRecord":
        return self.model_copy(update={"recovery": outcome})


class RunSummary(BaseModel):
    # Aggregate of one session, written next to its failure records
    session_id: str
    total_tests: int = Field(0, ge=0)
    passed: int = Field(0, ge=0)
    failed: int = Field(0, ge=0)
    skipped: int = Field(0, ge=0)
    start_time: datetime
    end_time: datetime
    workers: int = Field(1, ge=1)
    failures: List[FailureRecord] = Field(default_factory=list)
    error_patterns: Dict[str, int] = Field(default_factory=dict)

    @computed_field
    @property
    def failure_rate(self) -> float:
        # Ratio in [0, 1]
        if self.total_tests <= 0:
            return 0.0
        return self.failed / self.total_tests

    @computed_field
    @property
    def duration_seconds(self) -> float:
        return max(0.0, (self.end_time - self.start_time).total_seconds())

    def failing_tests(self) -> List[str]:
        # Distinct failing test names in first-seen order
        seen = {}
        for record in self.failures:
            seen.setdefault(record.test_name, None)
        return list(seen)


class InsightPriority(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 0, "medium": 1, "low": 2}[self.value]


@dataclass
class Insight:
    # Actionable finding derived from a set of failures
    category: str
    description: str
    affected_tests: List[str]
    recommendations: List[str]
    priority: InsightPriority


@dataclass
class TrendingPattern:
    category: Category
    label: str
    count: int
    percentage: float
    examples: List[str] = field(default_factory=list)
    debugging_hints: List[str] = field(default_factory=list)


@dataclass
class HistoricalAnalysis:
    # Cross-run view over a window of run summaries
    total_runs: int
    average_failure_rate: float
    trending_patterns: List[TrendingPattern] = field(default_factory=list)
    flaky_tests: List[str] = field(default_factory=list)
    consistent_failures: List[str] = field(default_factory=list)
    run_labels: List[str] = field(default_factory=list)
    run_failure_rates: List[float] = field(default_factory=list)
