"""
Signal Store

Data access used by signal calculation runs. PostgresSignalStore reads target
companies, formulas and quarterly data through the shared asyncpg pool and
writes signal rows. The orchestrator only depends on the method set below, so
tests can drive it with an in-memory store.

Persistence rules:
- A company's signal rows are replaced as a unit: delete, then insert the new
  row when there is a signal. Exactly one rule applies to a company per run, so
  this also retires rows left by a rule that no longer applies.
- No row is written for a neutral result; absence of a row is the steady state.
- The calculation time is recorded per company for incremental runs.
"""

import json
import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence
from uuid import uuid4

from screener.core.database import get_db_pool
from screener.models.schemas import CompanyTarget, Formula, QuarterGroup, SignalRecord, SignalStatistics
from screener.services.metric_resolver import group_quarterly_points
from screener.sql.formula_queries import SELECT_FORMULAS
from screener.sql.signal_queries import (
    DELETE_COMPANY_SIGNALS,
    INSERT_SIGNAL,
    SELECT_QUARTERLY_POINTS,
    SELECT_SIGNAL_COUNTS_BY_LABEL,
    SELECT_SIGNAL_TOTALS,
    SELECT_STALE_COMPANY_COUNT,
    SELECT_TARGET_BY_ID,
    UPSERT_CALCULATION_STATE,
    get_target_batch_query,
    get_target_count_query,
)


logger = logging.getLogger(__name__)


class PostgresSignalStore:
    """asyncpg-backed store for calculation runs."""

    async def load_formulas(self) -> List[Formula]:
        """Load every formula row; the caller snapshots them for the run."""
        pool = await get_db_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SELECT_FORMULAS)
        return [Formula.from_record(row) for row in rows]

    async def count_targets(
        self,
        company_ids: Optional[Sequence[str]] = None,
        incremental: bool = False,
    ) -> int:
        query = get_target_count_query(filter_ids=company_ids is not None, incremental=incremental)
        args = [list(company_ids)] if company_ids is not None else []

        pool = await get_db_pool()
        async with pool.acquire() as conn:
            total = await conn.fetchval(query, *args)
        return int(total or 0)

    async def fetch_target_batch(
        self,
        after_id: str,
        limit: int,
        company_ids: Optional[Sequence[str]] = None,
        incremental: bool = False,
    ) -> List[CompanyTarget]:
        """
        Fetch the next batch of target companies ordered by id.

        Args:
            after_id: Last id of the previous batch ('' for the first batch).
            limit: Maximum number of companies to return.
            company_ids: Optional explicit restriction.
            incremental: Skip companies whose data has not changed.
        """
        query = get_target_batch_query(filter_ids=company_ids is not None, incremental=incremental)
        args: List[object] = [after_id, limit]
        if company_ids is not None:
            args.append(list(company_ids))

        pool = await get_db_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(query, *args)
        return [CompanyTarget.from_record(row) for row in rows]

    async def fetch_target(self, company_id: str) -> Optional[CompanyTarget]:
        pool = await get_db_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SELECT_TARGET_BY_ID, company_id)
        return CompanyTarget.from_record(row) if row else None

    async def fetch_quarterly_groups(self, company_ids: Sequence[str]) -> Dict[str, List[QuarterGroup]]:
        """Load and group the latest quarterly points of a batch of companies."""
        if not company_ids:
            return {}

        pool = await get_db_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SELECT_QUARTERLY_POINTS, list(company_ids))
        return group_quarterly_points(dict(row) for row in rows)

    async def save_outcome(
        self,
        company_id: str,
        record: Optional[SignalRecord],
        calculated_at: datetime,
    ) -> None:
        """
        Replace the company's signal rows and stamp its calculation time.

        Runs in one transaction so readers never see the company without its
        previous row and without its new one at the same time.
        """
        pool = await get_db_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(DELETE_COMPANY_SIGNALS, company_id)
                if record is not None:
                    await conn.execute(
                        INSERT_SIGNAL,
                        str(uuid4()),
                        record.companyId,
                        record.formulaId,
                        record.signal,
                        record.value,
                        json.dumps(record.metadata, default=str),
                    )
                await conn.execute(UPSERT_CALCULATION_STATE, company_id, calculated_at)

    async def fetch_statistics(self) -> SignalStatistics:
        """Signal totals per label and the number of companies due for recalculation."""
        pool = await get_db_pool()
        async with pool.acquire() as conn:
            totals = await conn.fetchrow(SELECT_SIGNAL_TOTALS)
            labels = await conn.fetch(SELECT_SIGNAL_COUNTS_BY_LABEL)
            stale = await conn.fetchval(SELECT_STALE_COMPANY_COUNT)

        return SignalStatistics(
            totalSignals=int(totals["total_signals"] or 0) if totals else 0,
            companiesWithSignals=int(totals["companies_with_signals"] or 0) if totals else 0,
            staleCompanies=int(stale or 0),
            byLabel={row["signal"]: int(row["count"]) for row in labels},
        )
