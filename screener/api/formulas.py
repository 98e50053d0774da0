"""
FastAPI router for formula management.

Endpoints:
- GET    /formulas                      list formulas
- POST   /formulas                      create a formula
- GET    /formulas/{id}                 formula details
- PUT    /formulas/{id}                 partial update
- DELETE /formulas/{id}?replacementId=  replace-and-delete
- POST   /formulas/validate             compile a condition for the editor
- POST   /formulas/evaluate             test a condition against data
- POST   /formulas/{id}/activate-global flag the active global formula
- POST   /formulas/reset-assignments    clear or pin every explicit assignment
- GET    /formulas/resolve/{companyId}  which formula applies to a company

Error mapping:
- FormulaSyntaxError -> 400 with the error position
- FormulaNotFoundError / unknown company -> 404
- FormulaAdminError -> 409 (the operation would break a fallback invariant)
"""

import logging
from typing import List, NoReturn, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from screener.core.dependencies import SettingsDep
from screener.models.schemas import (
    Formula,
    FormulaCreate,
    FormulaEvaluateRequest,
    FormulaEvaluateResponse,
    FormulaUpdate,
    FormulaValidateRequest,
    FormulaValidation,
    ReassignmentResult,
)
from screener.services import formula_admin
from screener.services.formula_evaluator import FormulaSyntaxError, validate_formula
from screener.services.scope_resolution import FormulaAdminError, FormulaNotFoundError


logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Local Pydantic Models for API Responses
# =============================================================================


class FormulaListResponse(BaseModel):
    formulas: List[Formula] = Field(default_factory=list)


class ResetAssignmentsRequest(BaseModel):
    """Body of POST /formulas/reset-assignments."""
    formulaId: Optional[str] = Field(
        default=None,
        description="Global formula to pin everything to; omit to clear all assignments"
    )


class ResolvedFormulaResponse(BaseModel):
    companyId: str
    formula: Optional[Formula] = Field(
        default=None,
        description="Formula a calculation run would apply; null means no signal"
    )


def _raise_http(e: Exception) -> NoReturn:
    """Translate service errors into HTTP errors."""
    if isinstance(e, FormulaSyntaxError):
        raise HTTPException(
            status_code=400,
            detail={"error": e.message, "position": e.position},
        )
    if isinstance(e, FormulaNotFoundError):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, FormulaAdminError):
        raise HTTPException(status_code=409, detail=str(e))
    raise e


# =============================================================================
# CRUD
# =============================================================================


@router.get("", response_model=FormulaListResponse)
async def list_formulas() -> FormulaListResponse:
    try:
        return FormulaListResponse(formulas=await formula_admin.list_formulas())
    except Exception as e:
        logger.error(f"Error listing formulas: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to list formulas")


@router.post("", response_model=Formula, status_code=201)
async def create_formula(payload: FormulaCreate) -> Formula:
    """
    Create a formula.

    Excel conditions are compiled before anything is written; a syntax error
    returns 400 with the character position of the problem.

    Example Request:
        POST /formulas
        {
            "name": "Growth breakout",
            "scope": "global",
            "condition": "=AND(Q12>=20%, Q15>=20%)",
            "signal": "BUY",
            "priority": 1
        }
    """
    try:
        return await formula_admin.create_formula(payload)
    except (FormulaSyntaxError, FormulaAdminError) as e:
        logger.warning(f"POST /formulas rejected: {e}")
        _raise_http(e)


@router.get("/{formula_id}", response_model=Formula)
async def get_formula(formula_id: str) -> Formula:
    try:
        return await formula_admin.get_formula(formula_id)
    except FormulaNotFoundError as e:
        _raise_http(e)


@router.put("/{formula_id}", response_model=Formula)
async def update_formula(formula_id: str, payload: FormulaUpdate) -> Formula:
    """Apply a partial update. Fields omitted from the body are unchanged."""
    try:
        return await formula_admin.update_formula(formula_id, payload)
    except (FormulaSyntaxError, FormulaAdminError) as e:
        logger.warning(f"PUT /formulas/{formula_id} rejected: {e}")
        _raise_http(e)


@router.delete("/{formula_id}", response_model=ReassignmentResult)
async def delete_formula(
    formula_id: str,
    replacementId: Optional[str] = Query(
        default=None,
        description="Formula that inherits the explicit company and sector assignments"
    ),
) -> ReassignmentResult:
    """
    Delete a formula, reassigning its explicit assignments to a replacement.

    Deleting the only enabled global formula requires a global replacement.
    """
    try:
        return await formula_admin.replace_and_delete(formula_id, replacementId)
    except FormulaAdminError as e:
        logger.warning(f"DELETE /formulas/{formula_id} rejected: {e}")
        _raise_http(e)


# =============================================================================
# Editor Support
# =============================================================================


@router.post("/validate", response_model=FormulaValidation)
async def validate(request: FormulaValidateRequest) -> FormulaValidation:
    """Compile a condition; invalid formulas return 200 with valid=false."""
    return validate_formula(request.condition)


@router.post("/evaluate", response_model=FormulaEvaluateResponse)
async def evaluate(request: FormulaEvaluateRequest, settings: SettingsDep) -> FormulaEvaluateResponse:
    """
    Evaluate a condition without persisting anything.

    Example Request:
        POST /formulas/evaluate
        {
            "condition": "IF(Q12>=20%, \\"BUY\\", \\"No Signal\\")",
            "environment": {"Q12": 0.25}
        }

    Example Response:
        {"result": "BUY", "resultType": "text", "missing": false, "mappedSignal": "BUY"}
    """
    try:
        return await formula_admin.preview_formula(
            request, percent_as_fraction=settings.formula_percent_as_fraction
        )
    except FormulaSyntaxError as e:
        _raise_http(e)


# =============================================================================
# Assignment Operations
# =============================================================================


@router.post("/{formula_id}/activate-global", response_model=Formula)
async def activate_global(formula_id: str) -> Formula:
    try:
        return await formula_admin.set_active_global(formula_id)
    except FormulaAdminError as e:
        logger.warning(f"Activation of formula {formula_id} rejected: {e}")
        _raise_http(e)


@router.post("/reset-assignments", response_model=ReassignmentResult)
async def reset_assignments(request: ResetAssignmentsRequest) -> ReassignmentResult:
    """Clear every explicit assignment, or pin everything to one global formula."""
    try:
        return await formula_admin.reset_all_to_global(request.formulaId)
    except FormulaAdminError as e:
        logger.warning(f"Reset of assignments rejected: {e}")
        _raise_http(e)


@router.get("/resolve/{company_id}", response_model=ResolvedFormulaResponse)
async def resolve_for_company(company_id: str) -> ResolvedFormulaResponse:
    try:
        formula = await formula_admin.resolve_formula_for_company(company_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return ResolvedFormulaResponse(companyId=company_id, formula=formula)
