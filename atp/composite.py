# FILE: atp/composite.py
from __future__ import annotations

"""
Weighted multi-metric composite score.

    score = sum(value / threshold * weight)  over weighted metrics with a value

threshold resolution per metric:
  - static threshold when configured;
  - replaced by the dynamic threshold when dynamic thresholds are enabled
    and that value is > 0;
  - with no static threshold at all, 1.5 * value (see DESIGN.md).
Metrics whose resolved threshold is <= 0 do not contribute.
"""

from dataclasses import dataclass, field
from typing import Callable, List, Mapping, Optional, Tuple

FALLBACK_THRESHOLD_MULTIPLIER = 1.5


@dataclass(frozen=True)
class ScoreTerm:
    metric: str
    value: float
    threshold: float
    weight: float

    @property
    def contribution(self) -> float:
        return self.value / self.threshold * self.weight

    def render(self) -> str:
        return f"({self.metric}:{self.value:.2f}/{self.threshold:.2f}×{self.weight:.2f})"


@dataclass(frozen=True)
class CompositeScore:
    score: float = 0.0
    terms: Tuple[ScoreTerm, ...] = field(default_factory=tuple)

    @property
    def reason(self) -> str:
        if not self.terms:
            return ""
        return f"Score {self.score:.2f} = " + " + ".join(t.render() for t in self.terms)


class CompositeScorer:
    def __init__(
        self,
        weights: Mapping[str, float],
        thresholds: Mapping[str, float],
        *,
        dynamic_lookup: Optional[Callable[[str], Optional[float]]] = None,
    ) -> None:
        self._weights = dict(weights)
        self._thresholds = dict(thresholds)
        self._dynamic_lookup = dynamic_lookup

    def _threshold_for(self, metric: str, value: float) -> float:
        if metric in self._thresholds:
            t = self._thresholds[metric]
            if self._dynamic_lookup is not None:
                dyn = self._dynamic_lookup(metric)
                if dyn is not None and dyn > 0:
                    t = dyn
            return t
        return value * FALLBACK_THRESHOLD_MULTIPLIER

    def score(self, values: Mapping[str, float]) -> CompositeScore:
        terms: List[ScoreTerm] = []
        total = 0.0
        for metric in sorted(self._weights):
            if metric not in values:
                continue
            value = values[metric]
            threshold = self._threshold_for(metric, value)
            if threshold <= 0:
                continue
            term = ScoreTerm(metric=metric, value=value, threshold=threshold, weight=self._weights[metric])
            total += term.contribution
            terms.append(term)
        return CompositeScore(score=total, terms=tuple(terms))


__all__ = ["CompositeScorer", "CompositeScore", "ScoreTerm", "FALLBACK_THRESHOLD_MULTIPLIER"]
