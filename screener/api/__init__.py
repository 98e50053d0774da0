"""
FastAPI routers for the signal engine.

Routers:
    formulas: Formula CRUD, validation, preview and assignment operations
    signals: Signal calculation jobs and statistics
"""

from screener.api.formulas import router as formulas_router
from screener.api.signals import router as signals_router

__all__ = [
    "formulas_router",
    "signals_router",
]
