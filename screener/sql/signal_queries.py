"""
Parameterized SQL for signal calculation runs.

Covers:
- Selecting target companies in keyset-paginated batches (ordered by id), with
  optional restriction to explicit ids and to companies whose quarterly data
  changed since their last calculation (incremental mode)
- Loading the latest scrape of every quarterly metric for a batch
- Replacing a company's signal rows and recording its calculation time
- Signal statistics for dashboards

Freshness is tracked in signal_calculation_state(company_id, last_calculated_at)
and compared against the newest quarterly_data write for the company.
"""

from typing import List


# Newest quarterly write per company; scrape_timestamp may be NULL on old rows
LATEST_QUARTERLY_WRITE = """
    (SELECT MAX(COALESCE(q.scrape_timestamp, q.created_at))
     FROM quarterly_data q
     WHERE q.company_id = c.id)
"""


def _target_conditions(
    first_param: int,
    filter_ids: bool,
    incremental: bool,
) -> List[str]:
    conditions: List[str] = []
    param = first_param
    if filter_ids:
        conditions.append(f"c.id = ANY(${param}::varchar[])")
        param += 1
    if incremental:
        conditions.append(
            "(st.last_calculated_at IS NULL "
            f"OR st.last_calculated_at < {LATEST_QUARTERLY_WRITE.strip()})"
        )
    return conditions


def get_target_batch_query(filter_ids: bool = False, incremental: bool = False) -> str:
    """
    Build the keyset-paginated query for the next batch of target companies.

    Parameters: $1 = last company id of the previous batch ('' for the first),
    $2 = batch size, $3 = company id array when filter_ids is set.

    Args:
        filter_ids: Restrict to an explicit list of company ids.
        incremental: Only companies whose data changed since their last calculation.

    Returns:
        str: SQL selecting id, name, sector_id, assigned_formula_id and
            sector_assigned_formula_id.
    """
    conditions = _target_conditions(3, filter_ids, incremental)
    where_clause = " AND ".join(["c.id > $1"] + conditions)

    return f"""
    SELECT
        c.id,
        c.name,
        c.sector_id,
        c.assigned_formula_id,
        sec.assigned_formula_id AS sector_assigned_formula_id
    FROM companies c
    LEFT JOIN sectors sec ON sec.id = c.sector_id
    LEFT JOIN signal_calculation_state st ON st.company_id = c.id
    WHERE {where_clause}
    ORDER BY c.id
    LIMIT $2
    """


def get_target_count_query(filter_ids: bool = False, incremental: bool = False) -> str:
    """
    Build the query counting every company a run will visit.

    Parameters: $1 = company id array when filter_ids is set.
    """
    conditions = _target_conditions(1, filter_ids, incremental)
    where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

    return f"""
    SELECT COUNT(*) AS total
    FROM companies c
    LEFT JOIN signal_calculation_state st ON st.company_id = c.id
    {where_clause}
    """


SELECT_TARGET_BY_ID = """
    SELECT
        c.id,
        c.name,
        c.sector_id,
        c.assigned_formula_id,
        sec.assigned_formula_id AS sector_assigned_formula_id
    FROM companies c
    LEFT JOIN sectors sec ON sec.id = c.sector_id
    WHERE c.id = $1
"""

# One row per (company, quarter, metric): the most recent scrape wins
SELECT_QUARTERLY_POINTS = """
    SELECT DISTINCT ON (company_id, quarter, metric_name)
        company_id,
        quarter,
        metric_name,
        metric_value,
        COALESCE(scrape_timestamp, created_at) AS scraped_at
    FROM quarterly_data
    WHERE company_id = ANY($1::varchar[])
    ORDER BY company_id, quarter, metric_name,
             COALESCE(scrape_timestamp, created_at) DESC NULLS LAST
"""

DELETE_COMPANY_SIGNALS = """
    DELETE FROM signals WHERE company_id = $1
"""

INSERT_SIGNAL = """
    INSERT INTO signals (id, company_id, formula_id, signal, value, metadata, created_at, updated_at)
    VALUES ($1, $2, $3, $4, $5, $6::jsonb, NOW(), NOW())
"""

UPSERT_CALCULATION_STATE = """
    INSERT INTO signal_calculation_state (company_id, last_calculated_at)
    VALUES ($1, $2)
    ON CONFLICT (company_id) DO UPDATE SET
        last_calculated_at = EXCLUDED.last_calculated_at
"""

SELECT_SIGNAL_COUNTS_BY_LABEL = """
    SELECT signal, COUNT(*) AS count
    FROM signals
    GROUP BY signal
    ORDER BY count DESC
"""

SELECT_SIGNAL_TOTALS = """
    SELECT
        COUNT(*) AS total_signals,
        COUNT(DISTINCT company_id) AS companies_with_signals
    FROM signals
"""

SELECT_STALE_COMPANY_COUNT = f"""
    SELECT COUNT(*) AS stale
    FROM companies c
    LEFT JOIN signal_calculation_state st ON st.company_id = c.id
    WHERE st.last_calculated_at IS NULL
       OR st.last_calculated_at < {LATEST_QUARTERLY_WRITE.strip()}
"""
