"""Pass/fail thresholds evaluated against the metric sink at the end of a run."""

from __future__ import annotations

import logging
import operator
import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from pvz_metrics import CHECKS, ERRORS, HTTP_REQ_DURATION, HTTP_REQ_FAILED, MetricSink

LOGGER = logging.getLogger("pvz_load.thresholds")

DEFAULT_THRESHOLDS: Dict[str, List[str]] = {
    HTTP_REQ_DURATION: ["p(95)<100"],  # ms
    HTTP_REQ_FAILED: ["rate<0.001"],  # network errors and unexpected statuses
    CHECKS: ["rate>0.98"],
    ERRORS: ["rate<0.01"],
}

_OPERATORS: Dict[str, Callable[[float, float], bool]] = {
    "<=": operator.le,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    ">": operator.gt,
}

_EXPRESSION = re.compile(
    r"^\s*(?P<agg>avg|min|max|med|count|rate|passes|fails|p\((?P<pct>\d+(?:\.\d+)?)\))"
    r"\s*(?P<op><=|>=|==|!=|<|>)\s*(?P<value>-?\d+(?:\.\d+)?)\s*$"
)


class ThresholdError(ValueError):
    """Raised for threshold expressions that cannot be parsed."""


@dataclass(frozen=True)
class Threshold:
    metric: str
    expression: str
    aggregation: str
    argument: Optional[float]
    op: str
    value: float

    @classmethod
    def parse(cls, metric: str, expression: str) -> "Threshold":
        match = _EXPRESSION.match(expression)
        if match is None:
            raise ThresholdError(f"Invalid threshold for '{metric}': {expression!r}")
        pct = match.group("pct")
        if pct is not None:
            aggregation, argument = "p", float(pct)
            if not 0 <= argument <= 100:
                raise ThresholdError(f"Percentile out of range in {expression!r}")
        else:
            aggregation, argument = match.group("agg"), None
        return cls(
            metric=metric,
            expression=expression.strip(),
            aggregation=aggregation,
            argument=argument,
            op=match.group("op"),
            value=float(match.group("value")),
        )

    def holds(self, observed: float) -> bool:
        return _OPERATORS[self.op](observed, self.value)


@dataclass(frozen=True)
class ThresholdResult:
    threshold: Threshold
    observed: Optional[float]
    passed: bool

    @property
    def no_data(self) -> bool:
        return self.observed is None


def parse_thresholds(raw: Dict[str, Iterable[str]]) -> List[Threshold]:
    """Parse ``{metric: [expression, ...]}`` into threshold objects."""

    parsed: List[Threshold] = []
    for metric, expressions in raw.items():
        if isinstance(expressions, str):
            expressions = [expressions]
        for expression in expressions:
            parsed.append(Threshold.parse(metric, expression))
    return parsed


class ThresholdEvaluator:
    """Compares aggregated series against fixed criteria."""

    def __init__(self, thresholds: Iterable[Threshold]) -> None:
        self.thresholds = list(thresholds)

    @classmethod
    def from_dict(cls, raw: Dict[str, Iterable[str]]) -> "ThresholdEvaluator":
        return cls(parse_thresholds(raw))

    def evaluate(self, sink: MetricSink) -> List[ThresholdResult]:
        results = []
        for threshold in self.thresholds:
            series = sink.get(threshold.metric)
            if series is None or series.count == 0:
                # Nothing was recorded; the criterion cannot be violated.
                results.append(ThresholdResult(threshold, None, True))
                continue
            try:
                observed = series.aggregate(threshold.aggregation, threshold.argument)
            except ValueError as exc:
                raise ThresholdError(
                    f"Threshold {threshold.expression!r} does not apply to '{threshold.metric}': {exc}"
                ) from exc
            results.append(ThresholdResult(threshold, observed, threshold.holds(observed)))
        return results

    @staticmethod
    def all_passed(results: Iterable[ThresholdResult]) -> bool:
        return all(result.passed for result in results)

    @staticmethod
    def log_results(results: Iterable[ThresholdResult]) -> None:
        for result in results:
            threshold = result.threshold
            if result.no_data:
                LOGGER.info("THRESHOLD %s %s -> no data", threshold.metric, threshold.expression)
                continue
            LOGGER.log(
                logging.INFO if result.passed else logging.ERROR,
                "THRESHOLD %s %s -> %s (observed %.4f)",
                threshold.metric,
                threshold.expression,
                "ok" if result.passed else "FAILED",
                result.observed,
            )
