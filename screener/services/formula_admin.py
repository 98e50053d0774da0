"""
Formula administration.

Database side of the formula lifecycle: CRUD, replace-and-delete, reset of all
explicit assignments and activation of the global fallback formula. Validation
rules live in scope_resolution; this module loads the formula table, asks for a
plan and applies it inside a single transaction.

Multi-statement operations lock the formula rows first (SELECT ... FOR UPDATE)
so two administrators cannot interleave, for example both deleting the last two
global formulas at once.

Errors:
- FormulaSyntaxError: the condition of an excel formula does not compile
- FormulaNotFoundError: unknown formula id
- FormulaAdminError: the operation would break a fallback invariant
"""

import logging
from typing import Any, List, Mapping, Optional, Sequence
from uuid import uuid4

from screener.core.database import get_db_pool, rows_affected
from screener.models.enums import FormulaScope, FormulaType
from screener.models.schemas import (
    Formula,
    FormulaCreate,
    FormulaEvaluateRequest,
    FormulaEvaluateResponse,
    FormulaReferenceTrace,
    FormulaUpdate,
    ReassignmentResult,
)
from screener.services.formula_environment import QuarterlyEnvironment
from screener.services.formula_evaluator import (
    MISSING,
    coerce_environment_value,
    compile_formula,
    describe_value_type,
)
from screener.services.scope_resolution import (
    FormulaNotFoundError,
    FormulaSnapshot,
    check_activation,
    check_reset_target,
    check_update,
    enabled_globals,
    plan_formula_deletion,
    validate_scope,
)
from screener.services.signal_calculation import map_to_signal
from screener.services.signal_store import PostgresSignalStore
from screener.sql.formula_queries import (
    ASSIGN_ALL_COMPANIES,
    ASSIGN_ALL_SECTORS,
    CLEAR_ACTIVE_GLOBAL,
    CLEAR_COMPANY_OVERRIDES,
    CLEAR_SECTOR_OVERRIDES,
    DELETE_FORMULA,
    DELETE_SIGNALS_FOR_FORMULA,
    INSERT_FORMULA,
    REASSIGN_COMPANY_OVERRIDES,
    REASSIGN_SECTOR_OVERRIDES,
    SELECT_FORMULA_BY_ID,
    SELECT_FORMULAS,
    SELECT_FORMULAS_FOR_UPDATE,
    SET_ACTIVE_GLOBAL,
    UPDATE_FORMULA,
)


logger = logging.getLogger(__name__)


def _check_condition(condition: str, formula_type: FormulaType) -> None:
    # main formulas ignore their condition text
    if formula_type == FormulaType.EXCEL:
        compile_formula(condition)


# =============================================================================
# CRUD
# =============================================================================


async def list_formulas() -> List[Formula]:
    """Return every formula ordered by priority, then name."""
    pool = await get_db_pool()
    async with pool.acquire() as conn:
        rows = await conn.fetch(SELECT_FORMULAS)
    return [Formula.from_record(row) for row in rows]


async def get_formula(formula_id: str) -> Formula:
    """
    Fetch one formula.

    Raises:
        FormulaNotFoundError: If the id is unknown.
    """
    pool = await get_db_pool()
    async with pool.acquire() as conn:
        row = await conn.fetchrow(SELECT_FORMULA_BY_ID, formula_id)
    if row is None:
        raise FormulaNotFoundError(f"Formula {formula_id} not found")
    return Formula.from_record(row)


async def create_formula(payload: FormulaCreate) -> Formula:
    """
    Validate and insert a new formula.

    The first enabled global formula is flagged as the active global formula
    automatically, so a fresh installation always has a fallback.

    Raises:
        FormulaSyntaxError: If an excel condition does not compile.
        FormulaAdminError: If scopeValue does not match the scope.
    """
    _check_condition(payload.condition, payload.formulaType)
    scope_value = validate_scope(payload.scope, payload.scopeValue)
    formula_id = str(uuid4())

    pool = await get_db_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            existing = [Formula.from_record(row) for row in await conn.fetch(SELECT_FORMULAS_FOR_UPDATE)]
            make_active = (
                payload.enabled
                and payload.scope == FormulaScope.GLOBAL
                and FormulaSnapshot(existing).active_global is None
            )
            row = await conn.fetchrow(
                INSERT_FORMULA,
                formula_id,
                payload.name,
                payload.scope.value,
                scope_value,
                payload.condition,
                payload.signal,
                payload.priority,
                payload.enabled,
                make_active,
                payload.formulaType.value,
            )

    formula = Formula.from_record(row)
    logger.info(f"Created formula {formula.id} ({formula.name}), scope={formula.scope.value}")
    return formula


async def update_formula(formula_id: str, payload: FormulaUpdate) -> Formula:
    """
    Apply a partial update to a formula.

    Disabling or re-scoping the only enabled global formula is refused. A
    formula that stops being an enabled global formula loses the active flag,
    which then moves to the best-ranked remaining global formula.

    Raises:
        FormulaNotFoundError: If the id is unknown.
        FormulaSyntaxError: If the new excel condition does not compile.
        FormulaAdminError: If the edit breaks a fallback invariant.
    """
    pool = await get_db_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            formulas = [Formula.from_record(row) for row in await conn.fetch(SELECT_FORMULAS_FOR_UPDATE)]
            current = next((f for f in formulas if f.id == formula_id), None)
            if current is None:
                raise FormulaNotFoundError(f"Formula {formula_id} not found")

            changes = payload.model_dump(exclude_unset=True, exclude_none=True)
            if payload.scope == FormulaScope.GLOBAL:
                changes["scopeValue"] = None
            updated = current.model_copy(update=changes)
            updated = updated.model_copy(
                update={"scopeValue": validate_scope(updated.scope, updated.scopeValue)}
            )
            _check_condition(updated.condition, updated.formulaType)

            keep_active = check_update(formulas, current, updated)
            others = FormulaSnapshot(f for f in formulas if f.id != formula_id)
            if updated.enabled and updated.scope == FormulaScope.GLOBAL and others.active_global is None:
                keep_active = True

            row = await conn.fetchrow(
                UPDATE_FORMULA,
                formula_id,
                updated.name,
                updated.scope.value,
                updated.scopeValue,
                updated.condition,
                updated.signal,
                updated.priority,
                updated.enabled,
                keep_active,
                updated.formulaType.value,
            )

            if current.isActiveGlobal and not keep_active:
                successors = enabled_globals(formulas, exclude_id=formula_id)
                if successors:
                    await conn.execute(SET_ACTIVE_GLOBAL, successors[0].id)
                    logger.info(f"Active global formula moved from {formula_id} to {successors[0].id}")

    logger.info(f"Updated formula {formula_id}")
    return Formula.from_record(row)


# =============================================================================
# Assignment Operations
# =============================================================================


async def replace_and_delete(formula_id: str, replacement_id: Optional[str] = None) -> ReassignmentResult:
    """
    Delete a formula, moving its explicit assignments to a replacement.

    Every company and sector override pointing at the deleted formula is
    re-pointed at the replacement (or cleared when no replacement is given),
    the formula's signals are removed and the formula row is deleted, all in
    one transaction.

    Args:
        formula_id: Formula to delete.
        replacement_id: Formula inheriting the assignments.

    Returns:
        ReassignmentResult: Number of companies and sectors re-pointed.

    Raises:
        FormulaNotFoundError: If either id is unknown.
        FormulaAdminError: If the deletion would leave no global fallback.
    """
    pool = await get_db_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            formulas = [Formula.from_record(row) for row in await conn.fetch(SELECT_FORMULAS_FOR_UPDATE)]
            plan = plan_formula_deletion(formulas, formula_id, replacement_id)
            target_id = plan.replacement.id if plan.replacement is not None else None

            companies = await conn.execute(REASSIGN_COMPANY_OVERRIDES, formula_id, target_id)
            sectors = await conn.execute(REASSIGN_SECTOR_OVERRIDES, formula_id, target_id)
            signals = await conn.execute(DELETE_SIGNALS_FOR_FORMULA, formula_id)
            await conn.execute(DELETE_FORMULA, formula_id)

            if plan.new_active_global_id is not None:
                await conn.execute(SET_ACTIVE_GLOBAL, plan.new_active_global_id)

    result = ReassignmentResult(
        companiesUpdated=rows_affected(companies),
        sectorsUpdated=rows_affected(sectors),
        targetFormulaId=target_id,
        deletedFormulaId=formula_id,
        signalsDeleted=rows_affected(signals),
    )
    logger.info(
        f"Deleted formula {formula_id}: {result.companiesUpdated} companies and "
        f"{result.sectorsUpdated} sectors reassigned to {target_id}"
    )
    return result


async def reset_all_to_global(formula_id: Optional[str] = None) -> ReassignmentResult:
    """
    Reset every explicit company and sector assignment.

    Args:
        formula_id: When given, pin every company and sector to this global
            formula; otherwise clear all assignments so scope ranking decides.

    Raises:
        FormulaNotFoundError: If formula_id is unknown.
        FormulaAdminError: If formula_id is not an enabled global formula.
    """
    pool = await get_db_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            formulas = [Formula.from_record(row) for row in await conn.fetch(SELECT_FORMULAS_FOR_UPDATE)]
            target = check_reset_target(formulas, formula_id)

            if target is None:
                companies = await conn.execute(CLEAR_COMPANY_OVERRIDES)
                sectors = await conn.execute(CLEAR_SECTOR_OVERRIDES)
            else:
                companies = await conn.execute(ASSIGN_ALL_COMPANIES, target.id)
                sectors = await conn.execute(ASSIGN_ALL_SECTORS, target.id)

    result = ReassignmentResult(
        companiesUpdated=rows_affected(companies),
        sectorsUpdated=rows_affected(sectors),
        targetFormulaId=formula_id,
    )
    logger.info(
        f"Reset assignments to {formula_id or 'scope ranking'}: "
        f"{result.companiesUpdated} companies, {result.sectorsUpdated} sectors"
    )
    return result


async def set_active_global(formula_id: str) -> Formula:
    """
    Flag one enabled global formula as the active global fallback.

    The flag is cleared on every other formula in the same transaction, so at
    most one formula carries it.

    Raises:
        FormulaNotFoundError: If the id is unknown.
        FormulaAdminError: If the formula is not an enabled global formula.
    """
    pool = await get_db_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            formulas = [Formula.from_record(row) for row in await conn.fetch(SELECT_FORMULAS_FOR_UPDATE)]
            check_activation(formulas, formula_id)
            await conn.execute(CLEAR_ACTIVE_GLOBAL, formula_id)
            await conn.execute(SET_ACTIVE_GLOBAL, formula_id)
            row = await conn.fetchrow(SELECT_FORMULA_BY_ID, formula_id)

    logger.info(f"Formula {formula_id} is now the active global formula")
    return Formula.from_record(row)


# =============================================================================
# Resolution and Preview
# =============================================================================


async def resolve_formula_for_company(company_id: str, store: Optional[PostgresSignalStore] = None) -> Optional[Formula]:
    """
    Return the formula a calculation run would apply to a company.

    Returns None when the company exists but no formula applies.

    Raises:
        LookupError: If the company does not exist.
    """
    store = store or PostgresSignalStore()
    target = await store.fetch_target(company_id)
    if target is None:
        raise LookupError(f"Company {company_id} not found")
    return FormulaSnapshot(await store.load_formulas()).resolve(target)


async def preview_formula(
    request: FormulaEvaluateRequest,
    store: Optional[PostgresSignalStore] = None,
    percent_as_fraction: bool = True,
) -> FormulaEvaluateResponse:
    """
    Evaluate a formula without persisting anything.

    The environment is either the literal mapping in the request or, when
    companyId is set, the company's quarterly data.

    Raises:
        FormulaSyntaxError: If the condition does not compile.
    """
    compiled = compile_formula(request.condition)

    if request.companyId is not None:
        store = store or PostgresSignalStore()
        groups = (await store.fetch_quarterly_groups([request.companyId])).get(request.companyId, [])
        environment = QuarterlyEnvironment(groups, percent_as_fraction=percent_as_fraction)
    else:
        environment = {
            name: coerce_environment_value(value)
            for name, value in (request.environment or {}).items()
        }

    value = compiled.evaluate(environment)
    draft = Formula(id="preview", name="preview", condition=request.condition, signal=request.signal)
    return FormulaEvaluateResponse(
        result=None if value is MISSING else value,
        resultType=describe_value_type(value),
        missing=value is MISSING,
        mappedSignal=map_to_signal(value, draft),
        references=_trace_references(compiled.references, environment),
    )


def _trace_references(
    names: Sequence[str],
    environment: Mapping[str, Any],
) -> List[FormulaReferenceTrace]:
    """Value each referenced name resolved to, with its quarter when read from company data."""
    trace = []
    for name in names:
        resolved = coerce_environment_value(environment.get(name))
        quarter = None
        if isinstance(environment, QuarterlyEnvironment):
            quarter = environment.quarter_of(name)
        trace.append(FormulaReferenceTrace(
            name=name,
            value=None if resolved is MISSING else resolved,
            quarter=quarter,
        ))
    return trace
