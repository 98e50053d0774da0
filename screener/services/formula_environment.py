"""
Formula environments built from scraped quarterly data.

QuarterlyEnvironment is the read-only mapping a calculation run hands to the
formula evaluator for one company. It answers three kinds of names:

- Q12..Q16 / P12..P16: the canonical slots of the fixed classifier
  (current and prior quarter Sales YoY, EPS YoY, OPM, Sales QoQ, EPS QoQ)
- Metric[Qn]: any metric in a twelve-quarter window where Q12 is the most
  recent quarter and Q1 is eleven quarters before it, as produced by the
  parser for Metric[Qn], Metric[Pn] and Metric[n] references
- A bare metric identifier (OPM, Sales, Net_Profit): the most recent quarter

Unresolvable names raise KeyError, which the evaluator turns into MISSING.

Scraped percentages are stored as percentage points (25 for 25%). With
percent_as_fraction enabled they are divided by 100, so formulas written
against percent literals (Q12 >= 20%) compare like-for-like.
"""

import re
from typing import Any, Dict, Iterator, Mapping, Optional, Sequence, Tuple

from screener.models.schemas import ExtractedMetricSet, QuarterGroup
from screener.services.metric_resolver import (
    extract_metric_set,
    is_percentage_metric,
    lookup_logical_metric,
    resolve_metric_at,
    sort_quarter_groups,
)


_REFERENCE_KEY = re.compile(r"^(?P<metric>.+)\[Q(?P<quarter>\d+)\]$")

# Quarter index of the most recent quarter in Metric[Qn] references
LATEST_QUARTER_INDEX = 12


class QuarterlyEnvironment(Mapping[str, Any]):
    """
    Lazily resolved variable environment for one company.

    Args:
        groups: The company's quarter groups, in any order.
        percent_as_fraction: Divide percentage metrics by 100.
    """

    def __init__(self, groups: Sequence[QuarterGroup], percent_as_fraction: bool = True):
        self.groups = sort_quarter_groups(groups)
        self.percent_as_fraction = percent_as_fraction
        self.metric_set: ExtractedMetricSet = extract_metric_set(self.groups)
        self._slots: Dict[str, Optional[float]] = {
            name: self._scale(value, percentage=True)
            for name, value in self.metric_set.slots().items()
        }
        self._resolved: Dict[str, Optional[float]] = {}

    def _scale(self, value: Optional[float], percentage: bool) -> Optional[float]:
        if value is None or not (percentage and self.percent_as_fraction):
            return value
        return value / 100

    @staticmethod
    def _split_key(key: str) -> Tuple[str, int]:
        """Metric name and offset from the most recent quarter."""
        match = _REFERENCE_KEY.match(key)
        if match:
            return match.group("metric"), LATEST_QUARTER_INDEX - int(match.group("quarter"))
        return key, 0

    def quarter_of(self, key: str) -> Optional[str]:
        """Quarter label a name reads from, or None when it falls outside the data."""
        if key in self._slots:
            index = 0 if key.startswith("Q") else 1
        else:
            _, index = self._split_key(key)
        if 0 <= index < len(self.groups):
            return self.groups[index].quarter
        return None

    def _resolve(self, key: str) -> Optional[float]:
        if key in self._resolved:
            return self._resolved[key]

        metric, offset = self._split_key(key)
        value = resolve_metric_at(self.groups, metric, offset)
        percentage = is_percentage_metric(metric) or lookup_logical_metric(metric) is not None
        value = self._scale(value, percentage)
        self._resolved[key] = value
        return value

    def __getitem__(self, key: str) -> float:
        if key in self._slots:
            value = self._slots[key]
        else:
            value = self._resolve(key)
        if value is None:
            raise KeyError(key)
        return value

    def __iter__(self) -> Iterator[str]:
        return (name for name, value in self._slots.items() if value is not None)

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def __repr__(self) -> str:
        quarters = [group.quarter for group in self.groups]
        return f"QuarterlyEnvironment(quarters={quarters!r})"
