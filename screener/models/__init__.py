"""
Data models for the signal engine.

Re-exports enums and Pydantic schemas so callers can import from
screener.models directly.
"""

from screener.models.enums import (
    FormulaScope,
    FormulaType,
    MainSignal,
    OutcomeKind,
    JobStatus,
    JobType,
)
from screener.models.schemas import (
    QuarterlyMetricPoint,
    QuarterGroup,
    ExtractedMetricSet,
    Formula,
    FormulaCreate,
    FormulaUpdate,
    CompanyTarget,
    SignalRecord,
    CompanyOutcome,
    CompanyFailure,
    CalculationSummary,
    FormulaValidateRequest,
    FormulaValidation,
    FormulaEvaluateRequest,
    FormulaEvaluateResponse,
    FormulaReferenceTrace,
    ReassignmentResult,
    CalculateSignalsRequest,
    SignalJobResponse,
    SignalStatistics,
)

__all__ = [
    "FormulaScope",
    "FormulaType",
    "MainSignal",
    "OutcomeKind",
    "JobStatus",
    "JobType",
    "QuarterlyMetricPoint",
    "QuarterGroup",
    "ExtractedMetricSet",
    "Formula",
    "FormulaCreate",
    "FormulaUpdate",
    "CompanyTarget",
    "SignalRecord",
    "CompanyOutcome",
    "CompanyFailure",
    "CalculationSummary",
    "FormulaValidateRequest",
    "FormulaValidation",
    "FormulaEvaluateRequest",
    "FormulaEvaluateResponse",
    "FormulaReferenceTrace",
    "ReassignmentResult",
    "CalculateSignalsRequest",
    "SignalJobResponse",
    "SignalStatistics",
]
