"""
Enumeration definitions for the signal engine.

All enums inherit from both `str` and `Enum` so they serialize as plain strings
in Pydantic models and API responses and compare equal to the stored database
values.

Signal labels are deliberately NOT an enum: formulas may emit any custom label.
MainSignal only covers the three outcomes of the fixed classifier.
"""

from enum import Enum


class FormulaScope(str, Enum):
    """
    Applicability scope of a formula.

    Specificity order used by rule resolution: company > sector > global.
    """
    GLOBAL = "global"
    SECTOR = "sector"
    COMPANY = "company"

    @property
    def specificity(self) -> int:
        """Ranking weight: company=3, sector=2, global=1."""
        return _SCOPE_SPECIFICITY[self]


_SCOPE_SPECIFICITY = {
    FormulaScope.GLOBAL: 1,
    FormulaScope.SECTOR: 2,
    FormulaScope.COMPANY: 3,
}


class FormulaType(str, Enum):
    """
    How a formula's condition is evaluated.

    - excel: condition is spreadsheet-style formula text run by the evaluator
    - main: the fixed BUY/SELL classifier; condition text is informational only
    """
    EXCEL = "excel"
    MAIN = "main"


class MainSignal(str, Enum):
    """
    Outcomes of the fixed-formula classifier.

    The string values are a published contract consumed by dashboards.
    """
    BUY = "BUY"
    SELL = "Check_OPM (Sell)"
    NO_SIGNAL = "No Signal"


class OutcomeKind(str, Enum):
    """
    Per-company result of one calculation step.

    - signal: a label was produced and persisted
    - no_signal: the rule evaluated to a neutral/false result
    - missing_data: the formula hit unresolved metrics (MISSING)
    - no_formula: no enabled formula applies to the company
    - syntax_error: the resolved formula failed to compile
    - failed: unexpected error while processing the company
    """
    SIGNAL = "signal"
    NO_SIGNAL = "no_signal"
    MISSING_DATA = "missing_data"
    NO_FORMULA = "no_formula"
    SYNTAX_ERROR = "syntax_error"
    FAILED = "failed"


class JobStatus(str, Enum):
    """
    Signal calculation job lifecycle.

    - pending: accepted, waiting for the previous run to release the lock
    - running: processing companies
    - completed / failed / cancelled: terminal states
    """
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class JobType(str, Enum):
    """Which companies a calculation job targets."""
    FULL = "full"
    INCREMENTAL = "incremental"
    COMPANIES = "companies"
