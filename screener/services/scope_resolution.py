"""
Rule Scope Resolver

Decides which formula applies to a company. Resolution order:

1. The company's explicit override (companies.assigned_formula_id), if that
   formula exists and is enabled
2. The sector's explicit override (sectors.assigned_formula_id), same condition
3. Scope ranking over enabled formulas that apply to the company:
   company-scoped (3) > sector-scoped (2) > global (1), then the active global
   formula ahead of other globals, then ascending priority (lower wins)

No match means no signal for the company; that is a normal outcome, not an error.

This module is pure: it works on an in-memory snapshot of the formula table so
that one calculation run sees a consistent rule set even if formulas are edited
meanwhile. It also holds the validation logic of the administrative operations
(deletion with replacement, reset of all overrides, activation of a global
formula); formula_admin executes the resulting plans against the database.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from screener.models.enums import FormulaScope
from screener.models.schemas import CompanyTarget, Formula


class FormulaAdminError(ValueError):
    """An administrative formula operation was refused."""


class FormulaNotFoundError(FormulaAdminError):
    """The referenced formula does not exist."""


# =============================================================================
# Ranking
# =============================================================================


def applies_to(formula: Formula, company_id: str, sector_id: Optional[str]) -> bool:
    """True when an enabled formula's scope covers the company."""
    if not formula.enabled:
        return False
    if formula.scope == FormulaScope.GLOBAL:
        return True
    if formula.scope == FormulaScope.COMPANY:
        return formula.scopeValue is not None and formula.scopeValue == company_id
    if formula.scope == FormulaScope.SECTOR:
        return sector_id is not None and formula.scopeValue == sector_id
    return False


def rank_key(formula: Formula) -> Tuple[int, int, int, str, str]:
    """Sort key: most specific first, active global first, then lowest priority."""
    active = 0 if (formula.scope == FormulaScope.GLOBAL and formula.isActiveGlobal) else 1
    return (-formula.scope.specificity, active, formula.priority, formula.name, formula.id)


def resolve(
    formulas: Iterable[Formula],
    company_id: str,
    sector_id: Optional[str],
) -> Optional[Formula]:
    """
    Pick the top-ranked enabled formula for a company by scope and priority.

    Args:
        formulas: Candidate formulas (any mix of scopes, enabled or not).
        company_id: The company being evaluated.
        sector_id: The company's sector, if any.

    Returns:
        The winning formula, or None when nothing applies.

    Example:
        A sector formula with priority 1 beats a global formula with priority 5
        for a company in that sector, and would still beat it at priority 50.
    """
    candidates = [f for f in formulas if applies_to(f, company_id, sector_id)]
    if not candidates:
        return None
    return min(candidates, key=rank_key)


class FormulaSnapshot:
    """
    Read-once view of the formula table used for a whole calculation run.

    Args:
        formulas: Every formula row, enabled or not.
    """

    def __init__(self, formulas: Iterable[Formula]):
        self.formulas: List[Formula] = list(formulas)
        self.by_id: Dict[str, Formula] = {f.id: f for f in self.formulas}

    def __len__(self) -> int:
        return len(self.formulas)

    def _enabled(self, formula_id: Optional[str]) -> Optional[Formula]:
        if formula_id is None:
            return None
        formula = self.by_id.get(formula_id)
        if formula is None or not formula.enabled:
            return None
        return formula

    def resolve(self, target: CompanyTarget) -> Optional[Formula]:
        """Apply explicit overrides, then scope ranking, for one company."""
        explicit = self._enabled(target.assignedFormulaId)
        if explicit is not None:
            return explicit
        explicit = self._enabled(target.sectorAssignedFormulaId)
        if explicit is not None:
            return explicit
        return resolve(self.formulas, target.id, target.sectorId)

    @property
    def active_global(self) -> Optional[Formula]:
        for formula in self.formulas:
            if formula.enabled and formula.scope == FormulaScope.GLOBAL and formula.isActiveGlobal:
                return formula
        return None


# =============================================================================
# Administrative Plans
# =============================================================================


def enabled_globals(formulas: Iterable[Formula], exclude_id: Optional[str] = None) -> List[Formula]:
    """Enabled global formulas ordered by rank, optionally excluding one id."""
    found = [
        f for f in formulas
        if f.enabled and f.scope == FormulaScope.GLOBAL and f.id != exclude_id
    ]
    return sorted(found, key=rank_key)


def _require(formulas: Dict[str, Formula], formula_id: str) -> Formula:
    formula = formulas.get(formula_id)
    if formula is None:
        raise FormulaNotFoundError(f"Formula {formula_id} not found")
    return formula


@dataclass
class DeletionPlan:
    """
    Validated replace-and-delete operation.

    Attributes:
        formula: The formula being deleted.
        replacement: Formula inheriting the explicit overrides; None clears them.
        new_active_global_id: Global formula to flag as active afterwards, when
            the deleted formula held the flag.
    """
    formula: Formula
    replacement: Optional[Formula]
    new_active_global_id: Optional[str] = None


def plan_formula_deletion(
    formulas: Iterable[Formula],
    formula_id: str,
    replacement_id: Optional[str] = None,
) -> DeletionPlan:
    """
    Validate deleting a formula and decide what inherits its role.

    Rules:
    - The replacement must exist, be enabled and differ from the deleted formula
    - Deleting the last enabled global formula requires a global replacement,
      so that every company keeps a fallback rule
    - If the deleted formula was the active global, the flag moves to the
      replacement when it is global, else to the best-ranked remaining global

    Raises:
        FormulaNotFoundError: If either formula id is unknown.
        FormulaAdminError: If the deletion would leave no fallback formula.
    """
    by_id = {f.id: f for f in formulas}
    formula = _require(by_id, formula_id)

    replacement: Optional[Formula] = None
    if replacement_id is not None:
        if replacement_id == formula_id:
            raise FormulaAdminError("A formula cannot replace itself")
        replacement = _require(by_id, replacement_id)
        if not replacement.enabled:
            raise FormulaAdminError(f"Replacement formula {replacement.name!r} is disabled")

    remaining_globals = enabled_globals(by_id.values(), exclude_id=formula_id)
    deleting_global = formula.enabled and formula.scope == FormulaScope.GLOBAL

    if deleting_global and not remaining_globals:
        if replacement is None:
            raise FormulaAdminError(
                f"Cannot delete {formula.name!r}: it is the only global formula. "
                "Select a replacement global formula first."
            )
        raise FormulaAdminError(
            f"Cannot delete {formula.name!r}: it is the only global formula and "
            f"replacement {replacement.name!r} is not global."
        )

    new_active: Optional[str] = None
    if formula.isActiveGlobal:
        if replacement is not None and replacement.scope == FormulaScope.GLOBAL:
            new_active = replacement.id
        elif remaining_globals:
            new_active = remaining_globals[0].id

    return DeletionPlan(formula=formula, replacement=replacement, new_active_global_id=new_active)


def check_reset_target(formulas: Iterable[Formula], formula_id: Optional[str]) -> Optional[Formula]:
    """
    Validate the optional target of a reset-all-to-global operation.

    Returns:
        The target formula, or None when overrides are simply cleared.

    Raises:
        FormulaNotFoundError: If the id is unknown.
        FormulaAdminError: If the target is disabled or not global.
    """
    if formula_id is None:
        return None
    formula = _require({f.id: f for f in formulas}, formula_id)
    if formula.scope != FormulaScope.GLOBAL:
        raise FormulaAdminError(f"Formula {formula.name!r} is not a global formula")
    if not formula.enabled:
        raise FormulaAdminError(f"Formula {formula.name!r} is disabled")
    return formula


def check_activation(formulas: Iterable[Formula], formula_id: str) -> Formula:
    """
    Validate flagging a formula as the active global formula.

    Raises:
        FormulaNotFoundError: If the id is unknown.
        FormulaAdminError: If the formula is not an enabled global formula.
    """
    formula = _require({f.id: f for f in formulas}, formula_id)
    if formula.scope != FormulaScope.GLOBAL or not formula.enabled:
        raise FormulaAdminError("Only an enabled global formula can be the active global formula")
    return formula


def check_update(formulas: Iterable[Formula], current: Formula, updated: Formula) -> bool:
    """
    Validate an edit against the fallback invariants.

    Returns:
        Whether the edited formula must keep the active global flag.

    Raises:
        FormulaAdminError: If the edit would leave no enabled global formula.
    """
    was_global = current.enabled and current.scope == FormulaScope.GLOBAL
    stays_global = updated.enabled and updated.scope == FormulaScope.GLOBAL
    if was_global and not stays_global and not enabled_globals(formulas, exclude_id=current.id):
        raise FormulaAdminError(
            f"Cannot disable or re-scope {current.name!r}: it is the only global formula"
        )
    return current.isActiveGlobal and stays_global


def validate_scope(scope: FormulaScope, scope_value: Optional[str]) -> Optional[str]:
    """
    Check that scopeValue matches the scope and return its normalized value.

    Raises:
        FormulaAdminError: If a sector/company formula has no scopeValue.
    """
    if scope == FormulaScope.GLOBAL:
        return None
    if not scope_value:
        raise FormulaAdminError(f"A {scope.value}-scoped formula needs a scopeValue")
    return scope_value
