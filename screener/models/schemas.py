"""
Pydantic request/response and domain models for the signal engine.

Field names are camelCase to match the JSON contract consumed by the screener
frontend; from_record() helpers map snake_case database columns onto them.

Model groups:
- Quarterly data: QuarterlyMetricPoint, QuarterGroup, ExtractedMetricSet
- Formulas: Formula, FormulaCreate, FormulaUpdate, CompanyTarget
- Signals and calculation: SignalRecord, CompanyOutcome, CalculationSummary
- API payloads: validation/evaluation requests, reassignment results, job status

All models use Pydantic v2 syntax.
"""

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from screener.models.enums import (
    FormulaScope,
    FormulaType,
    JobStatus,
    JobType,
    OutcomeKind,
)


# =============================================================================
# Quarterly Data
# =============================================================================


class QuarterlyMetricPoint(BaseModel):
    """
    One scraped metric value for one company and quarter.

    metricValue is the raw scraped text ("25.3%", "1,204", None). Re-scrapes may
    write another point for the same triple; scrapedAt decides which one wins.
    """
    companyId: str
    quarter: str
    metricName: str
    metricValue: Optional[Any] = None
    scrapedAt: Optional[datetime] = None


class QuarterGroup(BaseModel):
    """All metric values of one company for one fiscal quarter."""
    quarter: str = Field(..., description="Quarter label, e.g. 'Mar 2024' or '2024-Q1'")
    metrics: Dict[str, Any] = Field(
        default_factory=dict,
        description="Metric name to raw value (text, number or null)"
    )


class ExtractedMetricSet(BaseModel):
    """
    Fixed-shape inputs of the canonical signal rule.

    Q-slots hold the most recent quarter and P-slots the quarter before it:
    12 = Sales Growth YoY %, 13 = EPS Growth YoY %, 14 = OPM %,
    15 = Sales Growth QoQ %, 16 = EPS Growth QoQ %.

    Values are raw percentages (25.0 means 25%). A slot is None when the metric is
    absent or non-numeric; it is never coerced to zero.
    """
    Q12: Optional[float] = None
    Q13: Optional[float] = None
    Q14: Optional[float] = None
    Q15: Optional[float] = None
    Q16: Optional[float] = None
    P12: Optional[float] = None
    P13: Optional[float] = None
    P14: Optional[float] = None
    P15: Optional[float] = None
    P16: Optional[float] = None

    def slots(self) -> Dict[str, Optional[float]]:
        return self.model_dump()

    @property
    def is_complete(self) -> bool:
        """True when every one of the ten slots holds a number."""
        return all(value is not None for value in self.slots().values())


# =============================================================================
# Formulas
# =============================================================================


class Formula(BaseModel):
    """
    A user-authored signal rule.

    Lower priority numbers take precedence among formulas of equal scope. At most
    one enabled global formula carries isActiveGlobal; it is the ultimate fallback.
    """
    id: str
    name: str
    scope: FormulaScope = FormulaScope.GLOBAL
    scopeValue: Optional[str] = Field(
        default=None,
        description="Sector id or company id for scoped formulas; null for global"
    )
    condition: str = Field(..., description="Formula source text")
    signal: str = Field(
        default="BUY",
        description="Label assigned when the condition yields TRUE or a truthy number"
    )
    priority: int = 0
    enabled: bool = True
    isActiveGlobal: bool = False
    formulaType: FormulaType = FormulaType.EXCEL
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "Formula":
        return cls(
            id=str(row["id"]),
            name=row["name"],
            scope=row["scope"],
            scopeValue=row.get("scope_value"),
            condition=row["condition"],
            signal=row["signal"],
            priority=row.get("priority") or 0,
            enabled=row.get("enabled", True),
            isActiveGlobal=row.get("is_active_global", False) or False,
            formulaType=row.get("formula_type") or FormulaType.EXCEL,
            createdAt=row.get("created_at"),
            updatedAt=row.get("updated_at"),
        )


class FormulaCreate(BaseModel):
    """Request body for creating a formula."""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        json_schema_extra={
            "example": {
                "name": "Growth breakout",
                "scope": "sector",
                "scopeValue": "sector-it",
                "condition": 'IF(AND(Q12>=20%, Q15>=20%), "BUY", "No Signal")',
                "signal": "BUY",
                "priority": 1,
            }
        },
    )

    name: str = Field(..., min_length=1)
    scope: FormulaScope = FormulaScope.GLOBAL
    scopeValue: Optional[str] = None
    condition: str = Field(..., min_length=1)
    signal: str = Field(default="BUY", min_length=1)
    priority: int = 0
    enabled: bool = True
    formulaType: FormulaType = FormulaType.EXCEL


class FormulaUpdate(BaseModel):
    """Partial update; fields left as None are unchanged."""
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = None
    scope: Optional[FormulaScope] = None
    scopeValue: Optional[str] = None
    condition: Optional[str] = None
    signal: Optional[str] = None
    priority: Optional[int] = None
    enabled: Optional[bool] = None
    formulaType: Optional[FormulaType] = None


class CompanyTarget(BaseModel):
    """
    A company as seen by rule resolution: its sector and explicit overrides.
    """
    id: str
    name: Optional[str] = None
    sectorId: Optional[str] = None
    assignedFormulaId: Optional[str] = None
    sectorAssignedFormulaId: Optional[str] = None

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> "CompanyTarget":
        return cls(
            id=str(row["id"]),
            name=row.get("name"),
            sectorId=row.get("sector_id"),
            assignedFormulaId=row.get("assigned_formula_id"),
            sectorAssignedFormulaId=row.get("sector_assigned_formula_id"),
        )


# =============================================================================
# Signals and Calculation Results
# =============================================================================


class SignalRecord(BaseModel):
    """A persisted signal row."""
    companyId: str
    formulaId: str
    signal: str
    value: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CompanyOutcome(BaseModel):
    """Result of calculating one company within a run."""
    companyId: str
    formulaId: Optional[str] = None
    kind: OutcomeKind
    signal: Optional[str] = None
    error: Optional[str] = None


class CompanyFailure(BaseModel):
    """A company whose processing raised; recorded instead of aborting the run."""
    companyId: str
    error: str


class CalculationSummary(BaseModel):
    """Aggregate counters for one orchestrator run."""
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    signalsGenerated: int = 0
    noSignal: int = 0
    missingData: int = 0
    noFormula: int = 0
    syntaxErrors: int = 0
    cancelled: bool = False
    failures: List[CompanyFailure] = Field(default_factory=list)

    def record(self, outcome: CompanyOutcome) -> None:
        """Fold one company outcome into the counters."""
        self.processed += 1
        if outcome.kind == OutcomeKind.FAILED:
            self.failed += 1
            self.failures.append(
                CompanyFailure(companyId=outcome.companyId, error=outcome.error or "unknown error")
            )
            return

        self.succeeded += 1
        if outcome.kind == OutcomeKind.SIGNAL:
            self.signalsGenerated += 1
        elif outcome.kind == OutcomeKind.NO_SIGNAL:
            self.noSignal += 1
        elif outcome.kind == OutcomeKind.MISSING_DATA:
            self.missingData += 1
        elif outcome.kind == OutcomeKind.NO_FORMULA:
            self.noFormula += 1
        elif outcome.kind == OutcomeKind.SYNTAX_ERROR:
            self.syntaxErrors += 1


# =============================================================================
# API Payloads
# =============================================================================

EnvironmentValue = Union[bool, float, str, None]


class FormulaValidateRequest(BaseModel):
    condition: str


class FormulaValidation(BaseModel):
    """Outcome of compiling a formula for the editor."""
    valid: bool
    error: Optional[str] = None
    position: Optional[int] = Field(
        default=None,
        description="Zero-based character offset of the syntax error"
    )


class FormulaEvaluateRequest(BaseModel):
    """
    Test-time evaluation of a formula.

    Provide either a literal environment or a companyId whose quarterly data
    builds the environment. signal is the label used for TRUE results.
    """
    condition: str
    environment: Optional[Dict[str, EnvironmentValue]] = None
    companyId: Optional[str] = None
    signal: str = "BUY"


class FormulaReferenceTrace(BaseModel):
    """One name a formula reads, with the value it resolved to."""
    name: str
    value: Any = None
    quarter: Optional[str] = Field(
        default=None,
        description="Quarter label the value was read from, e.g. 'Mar 2024'"
    )


class FormulaEvaluateResponse(BaseModel):
    result: Any = None
    resultType: str
    missing: bool = False
    mappedSignal: Optional[str] = Field(
        default=None,
        description="Label a calculation run would persist; null means no signal"
    )
    references: List[FormulaReferenceTrace] = Field(default_factory=list)


class ReassignmentResult(BaseModel):
    """Counts reported by replace-and-delete and reset-all-to-global."""
    companiesUpdated: int = 0
    sectorsUpdated: int = 0
    targetFormulaId: Optional[str] = None
    deletedFormulaId: Optional[str] = None
    signalsDeleted: int = 0


class CalculateSignalsRequest(BaseModel):
    """Trigger for a signal calculation job."""
    companyIds: Optional[List[str]] = Field(
        default=None,
        description="Restrict the run to these companies; all companies when omitted or empty"
    )
    incremental: bool = False
    batchSize: Optional[int] = Field(default=None, ge=1, le=5000)


class SignalJobResponse(BaseModel):
    """Public view of a calculation job."""
    jobId: str
    jobType: JobType
    status: JobStatus
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    signalsGenerated: int = 0
    createdAt: datetime
    startedAt: Optional[datetime] = None
    finishedAt: Optional[datetime] = None
    error: Optional[str] = None
    failures: List[CompanyFailure] = Field(default_factory=list)


class SignalStatistics(BaseModel):
    totalSignals: int = 0
    companiesWithSignals: int = 0
    staleCompanies: int = 0
    byLabel: Dict[str, int] = Field(default_factory=dict)
