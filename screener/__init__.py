"""
Screener Signal Engine Package.

FastAPI service layer for the stock screener's formula evaluation and signal
generation engine. Evaluates user-authored spreadsheet-style formulas (and the
canonical fixed BUY/SELL rule) against scraped quarterly metrics and persists one
signal per company.

Subpackages:
    - api: FastAPI route handlers (formulas, signal jobs)
    - core: Configuration, database, and dependencies
    - models: Pydantic schemas and enums
    - services: Metric resolution, formula evaluation, rule scoping, calculation
    - jobs: Background signal calculation jobs
    - sql: Parameterized SQL queries
"""

__version__ = "1.0.0"
