"""
Business logic for the signal engine.

Modules:
    metric_resolver: Metric-name normalization, quarter ordering and slot extraction
    main_signal: The fixed BUY / Check_OPM (Sell) classifier
    formula_evaluator: Spreadsheet-style formula compiler and evaluator
    formula_environment: Variable environments built from quarterly data
    scope_resolution: Which formula applies to a company; admin validation
    formula_admin: Formula CRUD and assignment operations against the database
    signal_store: asyncpg data access for calculation runs
    signal_calculation: The batch calculation orchestrator
"""

from screener.services.formula_evaluator import (
    MISSING,
    FormulaSyntaxError,
    compile_formula,
    evaluate,
    validate_formula,
)
from screener.services.main_signal import classify, evaluate_main_signal
from screener.services.metric_resolver import extract_metric_set, group_quarterly_points
from screener.services.scope_resolution import (
    FormulaAdminError,
    FormulaNotFoundError,
    FormulaSnapshot,
    resolve,
)
from screener.services.signal_calculation import calculate_company, run_signal_calculation

__all__ = [
    "MISSING",
    "FormulaSyntaxError",
    "compile_formula",
    "evaluate",
    "validate_formula",
    "classify",
    "evaluate_main_signal",
    "extract_metric_set",
    "group_quarterly_points",
    "FormulaAdminError",
    "FormulaNotFoundError",
    "FormulaSnapshot",
    "resolve",
    "calculate_company",
    "run_signal_calculation",
]
