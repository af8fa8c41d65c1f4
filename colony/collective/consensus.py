"""
Insight aggregation algorithms.

Each algorithm takes the insights of one task and returns a plain dict whose
``result`` key holds the aggregated value.
"""

from typing import Any, Callable, Dict, List, Optional, Sequence, TYPE_CHECKING
import json
import math
import re

from colony.errors import AggregationError

if TYPE_CHECKING:
    from .intelligence import Insight

AggregationAlgorithm = Callable[[Sequence["Insight"]], Dict[str, Any]]

# Leading decimal number, the way parseFloat reads "3.5 points" as 3.5
_NUMERIC_PREFIX = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|[+-]?Infinity)")


def numeric_value(content: Any) -> Optional[float]:
    """Numeric reading of an insight's content, or None when it is not numeric."""
    if isinstance(content, bool):
        return None
    if isinstance(content, (int, float)):
        return None if math.isnan(content) else float(content)
    if isinstance(content, str):
        match = _NUMERIC_PREFIX.match(content)
        if match:
            return float(match.group(1).replace("Infinity", "inf"))
    return None


def _structural(content: Any) -> Any:
    # equal numbers compare equal whatever their type; bools stay distinct
    if isinstance(content, bool):
        return content
    if isinstance(content, float) and content.is_integer():
        return int(content)
    if isinstance(content, dict):
        return {str(k): _structural(v) for k, v in content.items()}
    if isinstance(content, (list, tuple)):
        return [_structural(v) for v in content]
    return content


def _numeric(insights: Sequence["Insight"]) -> List["Insight"]:
    return [i for i in insights if numeric_value(i.content) is not None]


def _textual(insights: Sequence["Insight"]) -> List["Insight"]:
    return [i for i in insights if isinstance(i.content, str) and numeric_value(i.content) is None]


def average(insights: Sequence["Insight"]) -> Dict[str, Any]:
    """Plain mean of the numeric insights."""
    values = [numeric_value(i.content) for i in _numeric(insights)]
    if not values:
        raise AggregationError("No numeric insights found for averaging")

    return {
        "result": sum(values) / len(values),
        "count": len(values),
        "min": min(values),
        "max": max(values),
    }


def weighted_average(insights: Sequence["Insight"]) -> Dict[str, Any]:
    """Confidence-weighted mean of the numeric insights."""
    numeric = _numeric(insights)
    if not numeric:
        raise AggregationError("No numeric insights found for weighted averaging")

    weighted_sum = 0.0
    total_weight = 0.0
    for insight in numeric:
        weighted_sum += numeric_value(insight.content) * insight.confidence
        total_weight += insight.confidence

    if total_weight == 0:
        raise AggregationError("Numeric insights carry zero total confidence")

    return {
        "result": weighted_sum / total_weight,
        "count": len(numeric),
        "total_weight": total_weight,
    }


def text_summary(insights: Sequence["Insight"], top: int = 3) -> Dict[str, Any]:
    """Concatenate the most confident textual insights."""
    textual = _textual(insights)
    if not textual:
        raise AggregationError("No text insights found for summarization")

    best = sorted(textual, key=lambda i: i.confidence, reverse=True)[:top]
    return {
        "result": " ".join(i.content for i in best),
        "count": len(textual),
        "top_contributors": [i.agent_id for i in best],
    }


def majority(insights: Sequence["Insight"]) -> Dict[str, Any]:
    """Most frequent content by structural equality; the first seen wins ties."""
    if not insights:
        raise AggregationError("No insights to tally")

    tally: Dict[str, int] = {}
    leader_count = 0
    leader = None

    for insight in insights:
        key = json.dumps(_structural(insight.content), sort_keys=True, default=str)
        tally[key] = tally.get(key, 0) + 1
        if tally[key] > leader_count:
            leader_count = tally[key]
            leader = insight.content

    return {
        "result": leader,
        "count": len(insights),
        "majority_count": leader_count,
        "majority_percentage": leader_count / len(insights) * 100,
    }


def numeric_or_text(insights: Sequence["Insight"]) -> Dict[str, Any]:
    """Weighted mean when any insight is numeric, otherwise a text summary."""
    if _numeric(insights):
        return weighted_average(insights)
    if _textual(insights):
        return text_summary(insights)
    raise AggregationError("Unsupported insight type for aggregation")


AGGREGATION_ALGORITHMS: Dict[str, AggregationAlgorithm] = {
    "weighted": numeric_or_text,
    "consensus": numeric_or_text,
    "majority": majority,
    "average": average,
}
