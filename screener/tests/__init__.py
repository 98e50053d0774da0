'''
Signal Engine Test Suite

Test Modules:
-------------
- test_metric_resolver.py: Metric-name normalization and quarter ordering
  - Exact, variant and containment matching
  - Numeric parsing of scraped text (commas, percent signs, blanks)
  - Latest-scrape-wins grouping of quarterly points

- test_main_signal.py: The fixed BUY / Check_OPM (Sell) rule
  - Every BUY clause and both SELL branches
  - Missing slots never count as zero

- test_formula_evaluator.py: Formula compiler and evaluator
  - Operators, precedence, percent literals, functions
  - Missing-value propagation and syntax errors

- test_formula_environment.py: Environments built from quarter groups
- test_scope_resolution.py: Rule precedence and admin invariants
- test_formula_admin.py: Formula CRUD and reassignment against a mocked pool
- test_signal_store.py: asyncpg data access against a mocked pool
- test_signal_calculation.py: Per-company outcomes and batch runs
- test_signal_processor.py: Job lifecycle, serialization and cancellation

Running Tests:
--------------
    pip install -e ".[test]"
    pytest

Configuration:
--------------
See conftest.py for shared fixtures and the in-memory signal store.
'''

__all__ = []
