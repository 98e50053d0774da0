"""
Fixed-Formula Signal Classifier

Compiled form of the canonical screening rule that the product ships as its
default formula. It reads the ten extracted quarterly slots and returns one of
"BUY", "Check_OPM (Sell)" or "No Signal".

Slot layout (Q = most recent quarter, P = the quarter before):
- 12: Sales Growth YoY %
- 13: EPS Growth YoY %
- 14: OPM %
- 15: Sales Growth QoQ %
- 16: EPS Growth QoQ %

Values are percentage points (25.0 means 25%). The thresholds below are a
published contract: dashboards and saved comparisons depend on the exact
comparison operators, so ">=" and ">" must not be interchanged.

Any missing slot short-circuits to "No Signal"; the rule needs full coverage of
both quarters and never treats unknown values as zero.
"""

from typing import Dict, List, Sequence

from screener.models.enums import MainSignal
from screener.models.schemas import ExtractedMetricSet, QuarterGroup
from screener.services.metric_resolver import extract_metric_set


# Percentage-change threshold for the SELL deterioration test (-15%)
DETERIORATION_THRESHOLD = -0.15


def crosses_deterioration(current: float, prior: float) -> bool:
    """
    True when a metric fell by 15% or more relative to its prior value.

    The change is measured against |prior|. A zero prior has no defined
    relative change, so the test degrades to "current is negative".
    """
    if prior != 0:
        return (current - prior) / abs(prior) <= DETERIORATION_THRESHOLD
    return current < 0


def _buy_clauses(m: ExtractedMetricSet) -> Dict[str, bool]:
    q12, q13, q14, q15, q16 = m.Q12, m.Q13, m.Q14, m.Q15, m.Q16
    p12, p13, p14, p15, p16 = m.P12, m.P13, m.P14, m.P15, m.P16

    return {
        "positive_margins": q14 > 0 and p14 > 0,
        "sales_momentum": q12 >= 20 and q15 >= 20,
        "eps_strength": (
            (min(q13, q16) >= 5 and (q13 >= 10 or q16 >= 10))
            or (5 <= q16 < 10 and q13 >= 100)
            or (q13 < 0 and q16 >= 10)
        ),
        "prior_sales_growth": p12 >= 10,
        "prior_eps_pairs_positive": (
            (p13 > 0 and p15 > 0)
            or (p13 > 0 and p16 > 0)
            or (p15 > 0 and p16 > 0)
        ),
        "prior_eps_consistency": (p16 >= 0 or p13 >= 10) and (p13 >= 0 or p16 >= 10),
        "prior_sales_qoq_recovery": p15 >= 0 or (p15 < 0 and q13 >= 0 and q16 >= 0),
    }


def _sell_clauses(m: ExtractedMetricSet) -> Dict[str, bool]:
    q12, q13, q15, q16 = m.Q12, m.Q13, m.Q15, m.Q16
    p12, p13, p15, p16 = m.P12, m.P13, m.P15, m.P16

    return {
        "decelerating_growth": p13 < 10 and q13 < 10 and q15 < p15 and q16 < p16,
        "negative_eps": q13 < 0 and q16 < 0,
        "contracting": q16 < 0 and q15 < 0 and (q13 < 0 or q12 < 10),
        "sales_deterioration": (
            (q13 < 5 or q16 < 5)
            and (crosses_deterioration(q12, p12) or crosses_deterioration(q15, p15))
        ),
        "weak_growth": q12 < 20 and q13 < 5,
    }


def classify(metrics: ExtractedMetricSet) -> str:
    """
    Classify a company from its extracted quarterly slots.

    Args:
        metrics: The ten Q/P slots for one company.

    Returns:
        "BUY" when every BUY clause holds, otherwise "Check_OPM (Sell)" when any
        SELL clause holds, otherwise "No Signal". Incomplete input is "No Signal".
    """
    if not metrics.is_complete:
        return MainSignal.NO_SIGNAL.value

    if all(_buy_clauses(metrics).values()):
        return MainSignal.BUY.value

    if any(_sell_clauses(metrics).values()):
        return MainSignal.SELL.value

    return MainSignal.NO_SIGNAL.value


def explain(metrics: ExtractedMetricSet) -> Dict[str, object]:
    """
    Report which clauses decided the classification.

    Returns a JSON-friendly dict with the label, the inputs, the missing slots
    and, when the input is complete, the outcome of every BUY and SELL clause.
    """
    slots = metrics.slots()
    missing: List[str] = [name for name, value in slots.items() if value is None]
    result: Dict[str, object] = {
        "signal": classify(metrics),
        "inputs": slots,
        "missing": missing,
    }
    if not missing:
        result["buy"] = _buy_clauses(metrics)
        result["sell"] = _sell_clauses(metrics)
    return result


def evaluate_main_signal(groups: Sequence[QuarterGroup]) -> str:
    """Extract the slots from a company's quarter groups and classify them."""
    return classify(extract_metric_set(groups))
