"""
SQL query module for the signal engine.

Submodules:
    formula_queries: Formula rows, active-global flag and explicit
                     company/sector assignment statements.
    signal_queries: Target-company batching, quarterly data loading,
                    signal persistence and statistics.
"""

from screener.sql.formula_queries import (
    SELECT_FORMULAS,
    SELECT_FORMULA_BY_ID,
)
from screener.sql.signal_queries import (
    get_target_batch_query,
    get_target_count_query,
)

__all__ = [
    "SELECT_FORMULAS",
    "SELECT_FORMULA_BY_ID",
    "get_target_batch_query",
    "get_target_count_query",
]
