"""
Signal Calculation Orchestrator

Drives metric resolution, rule resolution and evaluation across companies and
persists the results. One call to run_signal_calculation() is one run:

1. Snapshot the formula table (edits made during the run apply to the next run)
2. Walk the target companies in keyset-ordered batches of `batch_size`, so the
   full company set is never held in memory
3. For each company: resolve its formula, evaluate it (the fixed classifier for
   "main" formulas, the expression evaluator for "excel" formulas), map the
   value to a label and replace the company's signal rows
4. Record every outcome in a CalculationSummary

A failure while processing one company is logged and recorded against that
company; the run carries on with the next one. The cancellation callback is
checked before every company, so a cancelled run stops promptly.

Label mapping for formula results:
- Text passes through as the label, except blanks and "No Signal"
- TRUE or a non-zero number yields the formula's configured signal label
- FALSE, zero, NaN and MISSING yield no signal (MISSING is reported separately)
"""

import asyncio
import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from screener.core.config import get_settings
from screener.models.enums import FormulaType, MainSignal, OutcomeKind
from screener.models.schemas import (
    CalculationSummary,
    CompanyOutcome,
    CompanyTarget,
    Formula,
    QuarterGroup,
    SignalRecord,
)
from screener.services.formula_environment import QuarterlyEnvironment
from screener.services.formula_evaluator import (
    MISSING,
    FormulaSyntaxError,
    FormulaValue,
    compile_formula,
    describe_value_type,
)
from screener.services.main_signal import classify, explain
from screener.services.scope_resolution import FormulaSnapshot


logger = logging.getLogger(__name__)


NO_SIGNAL_LABEL = MainSignal.NO_SIGNAL.value


class SignalStore(Protocol):
    """Storage operations a calculation run needs."""

    async def load_formulas(self) -> List[Formula]: ...

    async def count_targets(
        self, company_ids: Optional[Sequence[str]] = None, incremental: bool = False
    ) -> int: ...

    async def fetch_target_batch(
        self,
        after_id: str,
        limit: int,
        company_ids: Optional[Sequence[str]] = None,
        incremental: bool = False,
    ) -> List[CompanyTarget]: ...

    async def fetch_quarterly_groups(self, company_ids: Sequence[str]) -> Dict[str, List[QuarterGroup]]: ...

    async def save_outcome(
        self, company_id: str, record: Optional[SignalRecord], calculated_at: datetime
    ) -> None: ...


# =============================================================================
# Label Mapping
# =============================================================================


def map_to_signal(value: FormulaValue, formula: Formula) -> Optional[str]:
    """
    Map an evaluated formula value to the label to persist.

    Args:
        value: The evaluator result.
        formula: The formula that produced it (supplies the label for TRUE).

    Returns:
        The signal label, or None when the result is neutral.
    """
    if value is MISSING:
        return None
    if isinstance(value, bool):
        return formula.signal if value else None
    if isinstance(value, float):
        return formula.signal if value != 0 and not math.isnan(value) else None
    label = value.strip()
    if not label or label.lower() == NO_SIGNAL_LABEL.lower():
        return None
    return label


def _numeric_value(value: FormulaValue) -> Optional[float]:
    if isinstance(value, float) and math.isfinite(value):
        return value
    return None


# =============================================================================
# Per-Company Calculation
# =============================================================================


def calculate_company(
    target: CompanyTarget,
    snapshot: FormulaSnapshot,
    groups: Sequence[QuarterGroup],
    percent_as_fraction: bool = True,
) -> Tuple[CompanyOutcome, Optional[SignalRecord]]:
    """
    Resolve and evaluate the applicable formula for one company.

    Returns:
        (outcome, record) where record is the signal row to persist, or None
        when the company ends up without a signal.

    Syntax errors in a stored formula are logged and reported as a
    syntax_error outcome rather than raised, so one bad formula cannot stop
    a run.
    """
    formula = snapshot.resolve(target)
    if formula is None:
        return CompanyOutcome(companyId=target.id, kind=OutcomeKind.NO_FORMULA), None

    metadata: Dict[str, Any] = {
        "formulaName": formula.name,
        "formulaType": formula.formulaType.value,
        "outcome": OutcomeKind.SIGNAL.value,
        "quarters": [group.quarter for group in groups[:2]],
    }

    if formula.formulaType == FormulaType.MAIN:
        environment = QuarterlyEnvironment(groups, percent_as_fraction=False)
        explanation = explain(environment.metric_set)
        label = classify(environment.metric_set)
        metadata["explanation"] = explanation
        metadata["valueType"] = "text"

        if label == NO_SIGNAL_LABEL:
            kind = OutcomeKind.NO_SIGNAL if environment.metric_set.is_complete else OutcomeKind.MISSING_DATA
            return CompanyOutcome(companyId=target.id, formulaId=formula.id, kind=kind), None

        record = SignalRecord(
            companyId=target.id,
            formulaId=formula.id,
            signal=label,
            metadata=metadata,
        )
        return CompanyOutcome(
            companyId=target.id, formulaId=formula.id, kind=OutcomeKind.SIGNAL, signal=label
        ), record

    try:
        compiled = compile_formula(formula.condition)
    except FormulaSyntaxError as e:
        logger.error(f"Formula {formula.id} ({formula.name}) failed to compile: {e}")
        return CompanyOutcome(
            companyId=target.id,
            formulaId=formula.id,
            kind=OutcomeKind.SYNTAX_ERROR,
            error=str(e),
        ), None

    value = compiled.evaluate(QuarterlyEnvironment(groups, percent_as_fraction=percent_as_fraction))
    if value is MISSING:
        return CompanyOutcome(companyId=target.id, formulaId=formula.id, kind=OutcomeKind.MISSING_DATA), None

    label = map_to_signal(value, formula)
    if label is None:
        return CompanyOutcome(companyId=target.id, formulaId=formula.id, kind=OutcomeKind.NO_SIGNAL), None

    metadata["valueType"] = describe_value_type(value)
    record = SignalRecord(
        companyId=target.id,
        formulaId=formula.id,
        signal=label,
        value=_numeric_value(value),
        metadata=metadata,
    )
    return CompanyOutcome(
        companyId=target.id, formulaId=formula.id, kind=OutcomeKind.SIGNAL, signal=label
    ), record


# =============================================================================
# Run
# =============================================================================


async def run_signal_calculation(
    store: SignalStore,
    company_ids: Optional[Sequence[str]] = None,
    incremental: bool = False,
    batch_size: Optional[int] = None,
    summary: Optional[CalculationSummary] = None,
    should_cancel: Optional[Callable[[], bool]] = None,
    calculated_at: Optional[datetime] = None,
) -> CalculationSummary:
    """
    Calculate and persist signals for a set of companies.

    Args:
        store: Storage backend (PostgresSignalStore in production).
        company_ids: Restrict the run to these companies; all when None or empty.
        incremental: Skip companies whose quarterly data has not changed since
            their last calculation.
        batch_size: Companies per batch; defaults to SIGNAL_BATCH_SIZE.
        summary: Summary to update in place, letting a job expose live progress.
        should_cancel: Polled before each company; True stops the run.
        calculated_at: Timestamp recorded as each company's calculation time.
            Defaults to the run start, so data written during the run is picked
            up by the next incremental run.

    Returns:
        CalculationSummary: Counters for the run, with per-company failures.
    """
    settings = get_settings()
    size = batch_size or settings.signal_batch_size
    summary = summary if summary is not None else CalculationSummary()
    calculated_at = calculated_at or datetime.now(timezone.utc)
    ids = list(dict.fromkeys(company_ids)) if company_ids else None

    snapshot = FormulaSnapshot(await store.load_formulas())
    summary.total = await store.count_targets(ids, incremental)
    logger.info(
        f"Signal calculation started: {summary.total} companies, "
        f"{len(snapshot)} formulas, batch size {size}, incremental={incremental}"
    )

    after_id = ""
    while True:
        if should_cancel is not None and should_cancel():
            summary.cancelled = True
            break

        batch = await store.fetch_target_batch(after_id, size, ids, incremental)
        if not batch:
            break

        groups_by_company = await store.fetch_quarterly_groups([target.id for target in batch])

        for target in batch:
            if should_cancel is not None and should_cancel():
                summary.cancelled = True
                break

            try:
                outcome, record = calculate_company(
                    target,
                    snapshot,
                    groups_by_company.get(target.id, []),
                    percent_as_fraction=settings.formula_percent_as_fraction,
                )
                await store.save_outcome(target.id, record, calculated_at)
            except Exception as e:
                logger.exception(f"Signal calculation failed for company {target.id}")
                outcome = CompanyOutcome(
                    companyId=target.id,
                    kind=OutcomeKind.FAILED,
                    error=f"{type(e).__name__}: {e}",
                )

            summary.record(outcome)
            # Yield to the event loop so status requests are served mid-batch
            await asyncio.sleep(0)

        if summary.cancelled or len(batch) < size:
            break

        after_id = batch[-1].id
        logger.debug(f"Signal calculation progress: {summary.processed}/{summary.total}")
        if settings.signal_batch_delay_seconds > 0:
            await asyncio.sleep(settings.signal_batch_delay_seconds)

    logger.info(
        f"Signal calculation finished: processed={summary.processed} "
        f"signals={summary.signalsGenerated} failed={summary.failed} "
        f"cancelled={summary.cancelled}"
    )
    return summary
