"""
FastAPI application entry point for the screener signal engine.

Configures logging, CORS and the database pool lifecycle, and registers the
formula and signal routers.

Run locally:
    uvicorn screener.main:app --reload
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from screener import __version__
from screener.api.formulas import router as formulas_router
from screener.api.signals import router as signals_router
from screener.core.config import get_settings
from screener.core.dependencies import DBSessionDep
from screener.core.database import close_db, init_db
from screener.jobs.signal_processor import get_signal_processor


logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Startup: initialize the database pool.
    Shutdown: stop running calculation jobs, then close the pool.
    """
    logger.info("Screener signal engine starting")
    try:
        await init_db()
        logger.info("Database connection pool initialized")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        # The pool is created lazily on the next request

    yield

    logger.info("Screener signal engine shutting down")
    await get_signal_processor().shutdown()
    try:
        await close_db()
        logger.info("Database connection pool closed")
    except Exception as e:
        logger.error(f"Error closing database pool: {e}")


app = FastAPI(
    title="Screener Signal Engine",
    version=__version__,
    description=(
        "Formula management and BUY/SELL signal generation from scraped "
        "quarterly fundamentals."
    ),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(formulas_router, prefix="/formulas", tags=["formulas"])
app.include_router(signals_router, prefix="/signals", tags=["signals"])


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


@app.get("/health/db")
async def database_health(db: DBSessionDep):
    await db.fetchval("SELECT 1")
    return {"status": "healthy", "database": "connected"}


@app.get("/")
async def root():
    return {
        "name": "Screener Signal Engine",
        "version": __version__,
        "docs": "/docs",
        "openapi": "/openapi.json",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "screener.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
