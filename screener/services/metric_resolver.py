"""
Metric Resolver Service

Maps logical metric names ("Sales Growth YoY %", "OPM %", ...) to numeric values
pulled from a company's scraped quarterly data. Scraper column names drift over
time (spacing, parentheses, percent signs, casing), so lookups try an ordered list
of known variants, first exactly and then with normalized containment matching.

Resolution rules:
- Quarter groups are ordered most recent first by period, not by raw label text
- Exact key lookup across all variants before any fuzzy matching
- Fuzzy matching lowercases and strips "()%" and whitespace from both sides and
  accepts a match when either string contains the other
- The first variant that yields a number wins; variant order is precedence
- Values that are absent or non-numeric resolve to None, never to zero

This module performs no formula evaluation; it is a pure lookup layer shared by
the fixed classifier and the formula environment.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd

from screener.models.schemas import ExtractedMetricSet, QuarterGroup, QuarterlyMetricPoint


logger = logging.getLogger(__name__)


# =============================================================================
# Logical Metrics
# =============================================================================


@dataclass(frozen=True)
class LogicalMetric:
    """
    A metric the engine knows by meaning rather than by scraped column name.

    Attributes:
        key: Stable identifier used in logs and explanations.
        variants: Accepted column names, in precedence order.
        fallback: Variants tried only when none of `variants` resolves.
    """
    key: str
    variants: Tuple[str, ...]
    fallback: Tuple[str, ...] = field(default_factory=tuple)


SALES_YOY = LogicalMetric(
    key="sales_yoy",
    variants=(
        "Sales Growth(YoY) %",  # scraper format
        "Sales Growth (YoY) %",
        "Sales Growth YoY %",
        "Sales YoY %",
        "Revenue Growth YoY %",
        "sales_yoy_percent",
    ),
)

EPS_YOY = LogicalMetric(
    key="eps_yoy",
    variants=(
        "EPS Growth(YoY) %",  # scraper format
        "EPS Growth (YoY) %",
        "EPS Growth YoY %",
        "EPS YoY %",
        "eps_yoy_percent",
    ),
)

# Banks and NBFCs publish Financing Margin where other companies publish OPM
OPM = LogicalMetric(
    key="opm",
    variants=(
        "OPM %",
        "Operating Profit Margin %",
        "Operating Margin %",
        "opm_percent",
        "operating_profit_margin",
    ),
    fallback=(
        "Financing Margin %",
        "Financing Margin",
        "financing_margin",
        "FinancingMargin",
    ),
)

SALES_QOQ = LogicalMetric(
    key="sales_qoq",
    variants=(
        "Sales Growth(QoQ) %",  # scraper format
        "Sales Growth (QoQ) %",
        "Sales Growth QoQ %",
        "Sales QoQ %",
        "Revenue Growth QoQ %",
        "sales_qoq_percent",
    ),
)

EPS_QOQ = LogicalMetric(
    key="eps_qoq",
    variants=(
        "EPS Growth(QoQ) %",  # scraper format
        "EPS Growth (QoQ) %",
        "EPS Growth QoQ %",
        "EPS QoQ %",
        "eps_qoq_percent",
    ),
)

# Slot number -> logical metric, shared by the Q (current) and P (prior) slots
SLOT_METRICS: Dict[int, LogicalMetric] = {
    12: SALES_YOY,
    13: EPS_YOY,
    14: OPM,
    15: SALES_QOQ,
    16: EPS_QOQ,
}

LOGICAL_METRICS: Tuple[LogicalMetric, ...] = tuple(SLOT_METRICS.values())


# =============================================================================
# Value Parsing and Name Normalization
# =============================================================================

_STRIP_CHARS = re.compile(r"[()%]")
_WHITESPACE = re.compile(r"\s+")


def parse_metric_value(raw: Any) -> Optional[float]:
    """
    Parse a scraped metric value into a float.

    Text may carry a trailing percent sign and thousands separators
    ("25.3%", "1,204.5"). Decimal values (asyncpg numeric columns) and plain
    numbers pass through. Booleans, blanks, unparseable text and non-finite
    numbers yield None.

    Examples:
        >>> parse_metric_value("25.3%")
        25.3
        >>> parse_metric_value("-1,204")
        -1204.0
        >>> parse_metric_value("n/a") is None
        True
    """
    if raw is None or isinstance(raw, bool):
        return None

    if isinstance(raw, (int, float, Decimal)):
        value = float(raw)
    elif isinstance(raw, str):
        cleaned = raw.strip()
        if cleaned.endswith("%"):
            cleaned = cleaned[:-1].strip()
        cleaned = cleaned.replace(",", "")
        if not cleaned:
            return None
        try:
            value = float(cleaned)
        except ValueError:
            return None
    else:
        return None

    return value if math.isfinite(value) else None


def normalize_metric_key(name: str) -> str:
    """Lowercase and drop "()%" and all whitespace: "Sales Growth (YoY) %" -> "salesgrowthyoy"."""
    return _WHITESPACE.sub("", _STRIP_CHARS.sub("", name.lower()))


def is_percentage_metric(name: str) -> bool:
    """
    Heuristic for metrics stored as percentage points (20 meaning 20%).

    Growth rates, margins and anything labelled with a percent sign qualify.
    Absolute figures such as Sales or EPS do not.
    """
    lowered = name.lower()
    return (
        "%" in lowered
        or "growth" in lowered
        or "yoy" in lowered
        or "qoq" in lowered
        or "opm" in lowered
        or "margin" in lowered
    )


# =============================================================================
# Lookup
# =============================================================================


def find_metric(metrics: Mapping[str, Any], variants: Sequence[str]) -> Optional[float]:
    """
    Resolve the first variant that yields a number within one quarter's metrics.

    Args:
        metrics: Metric name to raw value for a single quarter.
        variants: Acceptable names in precedence order.

    Returns:
        The parsed value, or None if no variant resolves to a number.
    """
    for variant in variants:
        if variant in metrics:
            value = parse_metric_value(metrics[variant])
            if value is not None:
                return value

    normalized_keys = [(key, normalize_metric_key(key)) for key in metrics]
    for variant in variants:
        wanted = normalize_metric_key(variant)
        if not wanted:
            continue
        for key, normalized in normalized_keys:
            if not normalized:
                continue
            if normalized == wanted or wanted in normalized or normalized in wanted:
                value = parse_metric_value(metrics[key])
                if value is not None:
                    return value

    return None


def _identifier_key(name: str) -> str:
    return normalize_metric_key(name).replace("_", "")


def find_metric_by_identifier(metrics: Mapping[str, Any], identifier: str) -> Optional[float]:
    """
    Resolve a metric named by a formula identifier such as Net_Profit or NetProfit.

    Identifiers cannot contain spaces or punctuation, so after an exact lookup the
    comparison also ignores underscores. Unlike find_metric, partial containment
    is not accepted: a short identifier must not silently bind to an unrelated
    column.
    """
    if identifier in metrics:
        value = parse_metric_value(metrics[identifier])
        if value is not None:
            return value

    wanted = _identifier_key(identifier)
    if not wanted:
        return None
    for key in metrics:
        if _identifier_key(key) == wanted:
            value = parse_metric_value(metrics[key])
            if value is not None:
                return value
    return None


def resolve_logical_metric(metrics: Mapping[str, Any], metric: LogicalMetric) -> Optional[float]:
    """Resolve a logical metric, trying its fallback variants last."""
    value = find_metric(metrics, metric.variants)
    if value is None and metric.fallback:
        value = find_metric(metrics, metric.fallback)
        if value is not None:
            logger.debug(f"Resolved {metric.key} through fallback variants")
    return value


def lookup_logical_metric(name: str) -> Optional[LogicalMetric]:
    """Return the known logical metric whose variants include `name` (normalized)."""
    wanted = normalize_metric_key(name)
    for metric in LOGICAL_METRICS:
        if metric.key == name.lower():
            return metric
        if any(normalize_metric_key(variant) == wanted for variant in metric.variants):
            return metric
    return None


# =============================================================================
# Quarter Ordering
# =============================================================================

_QUARTER_YEAR_FIRST = re.compile(r"^\s*(\d{4})\s*[-_/ ]?\s*Q([1-4])\s*$", re.IGNORECASE)
_QUARTER_YEAR_LAST = re.compile(r"^\s*Q([1-4])\s*[-_/ ]?\s*(?:FY)?\s*(\d{4})\s*$", re.IGNORECASE)


@lru_cache(maxsize=4096)
def quarter_sort_key(label: str) -> Tuple[int, int, str]:
    """
    Sortable key for a quarter label; larger means more recent.

    "2024-Q3", "2024Q3" and "Q3 2024" map to the quarter's closing month;
    "Mar 2024" and "2024-03-31" are parsed with pandas. Labels that cannot be
    read as a period rank below every parseable label and compare as text.
    """
    match = _QUARTER_YEAR_FIRST.match(label)
    if match:
        return (1, int(match.group(1)) * 12 + int(match.group(2)) * 3, label)

    match = _QUARTER_YEAR_LAST.match(label)
    if match:
        return (1, int(match.group(2)) * 12 + int(match.group(1)) * 3, label)

    timestamp = pd.to_datetime(label, errors="coerce")
    if timestamp is not None and not pd.isna(timestamp):
        return (1, timestamp.year * 12 + timestamp.month, label)

    return (0, 0, label)


def sort_quarter_groups(groups: Iterable[QuarterGroup]) -> List[QuarterGroup]:
    """Return quarter groups ordered most recent first."""
    return sorted(groups, key=lambda group: quarter_sort_key(group.quarter), reverse=True)


# =============================================================================
# Grouping Raw Points
# =============================================================================

_POINT_COLUMNS = ["company_id", "quarter", "metric_name", "metric_value", "scraped_at"]


def _point_to_row(point: Union[QuarterlyMetricPoint, Mapping[str, Any]]) -> Dict[str, Any]:
    if isinstance(point, QuarterlyMetricPoint):
        return {
            "company_id": point.companyId,
            "quarter": point.quarter,
            "metric_name": point.metricName,
            "metric_value": point.metricValue,
            "scraped_at": point.scrapedAt,
        }
    return {column: point.get(column) for column in _POINT_COLUMNS}


def group_quarterly_points(
    points: Iterable[Union[QuarterlyMetricPoint, Mapping[str, Any]]]
) -> Dict[str, List[QuarterGroup]]:
    """
    Group long-format quarterly points into per-company quarter groups.

    Accepts QuarterlyMetricPoint models or database rows with snake_case keys.
    When the same (company, quarter, metric) was scraped several times, the
    point with the latest scraped_at wins (ties go to the later row).

    Returns:
        Dict mapping company id to its quarter groups, most recent first.
    """
    rows = [_point_to_row(point) for point in points]
    if not rows:
        return {}

    df = pd.DataFrame.from_records(rows, columns=_POINT_COLUMNS)
    df["company_id"] = df["company_id"].astype(str)
    df["scraped_at"] = pd.to_datetime(df["scraped_at"], errors="coerce", utc=True)
    df["_row"] = range(len(df))

    df = df.sort_values(["scraped_at", "_row"], na_position="first", kind="mergesort")
    df = df.drop_duplicates(subset=["company_id", "quarter", "metric_name"], keep="last")
    df = df.sort_values("_row", kind="mergesort")

    grouped: Dict[str, List[QuarterGroup]] = {}
    for (company_id, quarter), frame in df.groupby(["company_id", "quarter"], sort=False):
        metrics = dict(zip(frame["metric_name"].tolist(), frame["metric_value"].tolist()))
        grouped.setdefault(company_id, []).append(QuarterGroup(quarter=str(quarter), metrics=metrics))

    return {company_id: sort_quarter_groups(groups) for company_id, groups in grouped.items()}


# =============================================================================
# Extraction
# =============================================================================


def resolve_metric_pair(
    groups: Sequence[QuarterGroup],
    variants: Sequence[str],
) -> Tuple[Optional[float], Optional[float]]:
    """
    Resolve a metric for the most recent quarter and the one before it.

    Args:
        groups: Quarter groups of one company, in any order.
        variants: Acceptable metric names in precedence order.

    Returns:
        (current, previous); either is None when unresolvable or when the company
        has fewer quarters.
    """
    ordered = sort_quarter_groups(groups)
    current = find_metric(ordered[0].metrics, variants) if ordered else None
    previous = find_metric(ordered[1].metrics, variants) if len(ordered) > 1 else None
    return current, previous


def extract_metric_set(groups: Sequence[QuarterGroup]) -> ExtractedMetricSet:
    """
    Build the ten-slot input of the fixed classifier from a company's quarters.

    Q12..Q16 come from the most recent quarter and P12..P16 from the quarter
    before it. Missing quarters leave their slots None.
    """
    ordered = sort_quarter_groups(groups)
    if not ordered:
        return ExtractedMetricSet()

    current = ordered[0]
    previous = ordered[1] if len(ordered) > 1 else None

    values: Dict[str, Optional[float]] = {}
    for slot, metric in SLOT_METRICS.items():
        values[f"Q{slot}"] = resolve_logical_metric(current.metrics, metric)
        values[f"P{slot}"] = resolve_logical_metric(previous.metrics, metric) if previous else None

    return ExtractedMetricSet(**values)


def resolve_metric_at(
    ordered_groups: Sequence[QuarterGroup],
    name: str,
    offset: int,
) -> Optional[float]:
    """
    Resolve any metric `offset` quarters before the most recent one.

    Names that match a known logical metric use its full variant list (so
    "OPM" also finds "OPM %" or the Financing Margin fallback); other names must
    match a column exactly or after normalization, without containment.

    Args:
        ordered_groups: Quarter groups already sorted most recent first.
        name: Metric name as written in a formula.
        offset: 0 for the most recent quarter, 1 for the one before, ...
    """
    if offset < 0 or offset >= len(ordered_groups):
        return None

    metrics = ordered_groups[offset].metrics
    logical = lookup_logical_metric(name)
    if logical is not None:
        return resolve_logical_metric(metrics, logical)
    return find_metric_by_identifier(metrics, name)
