"""Batch result aggregation, scoring and recommendations."""

import json
import statistics
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping

from .config import AggregatorConfig
from .result import ProbeResult
from .types import ResultStatus

# (substring, category) checked in order against the lower-cased probe name
CATEGORY_PATTERNS = (
    ("ssl", "security"),
    ("security", "security"),
    ("response_time", "performance"),
    ("performance", "performance"),
    ("status", "availability"),
    ("availability", "availability"),
)

# Metrics compared against history; execution time improves when it drops
COMPARED_METRICS = {
    "success_rate": True,
    "average_score": True,
    "average_execution_time": False,
}

STABLE_VARIANCE = 0.1


@dataclass
class AggregatedResult:
    """Summary of one batch of results."""

    summary: dict[str, Any]
    category_stats: dict[str, dict[str, Any]]
    score_breakdown: dict[str, Any]
    trends: dict[str, Any]
    recommendations: list[dict[str, str]]
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def overall_score(self) -> float | None:
        return self.score_breakdown.get("overall_score")

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "category_stats": self.category_stats,
            "score_breakdown": self.score_breakdown,
            "trends": self.trends,
            "recommendations": self.recommendations,
            "metadata": self.metadata,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, default=str)


def categorize(probe_name: str) -> str:
    name = probe_name.lower()
    for pattern, category in CATEGORY_PATTERNS:
        if pattern in name:
            return category
    return "general"


class ResultAggregator:
    """Turns a batch of ProbeResults into statistics and recommendations."""

    def __init__(self, config: AggregatorConfig | None = None):
        self.config = config or AggregatorConfig()

    def aggregate(
        self,
        results: Iterable[ProbeResult] | Mapping[str, ProbeResult],
        metadata: dict[str, Any] | None = None,
    ) -> AggregatedResult:
        """
        Aggregate results (a list, or a dict keyed by job id).

        Returns:
            AggregatedResult with summary, category_stats, score_breakdown,
            trends, recommendations and metadata
        """
        start = time.perf_counter()
        if isinstance(results, Mapping):
            results = results.values()
        results = [r for r in results if isinstance(r, ProbeResult)]

        summary = self.summary_statistics(results)
        aggregated = AggregatedResult(
            summary=summary,
            category_stats=self.category_statistics(results),
            score_breakdown=self.score_breakdown(results),
            trends=self.trends(results),
            recommendations=self.recommendations(summary),
            metadata={
                **(metadata or {}),
                "aggregation_time": time.perf_counter() - start,
                "aggregated_at": datetime.utcnow().isoformat(),
            },
        )
        return aggregated

    @staticmethod
    def summary_statistics(results: list[ProbeResult]) -> dict[str, Any]:
        total = len(results)
        counts = {status: 0 for status in ResultStatus}
        for result in results:
            counts[result.status] += 1

        scores = [r.score for r in results if r.score is not None]
        total_time = sum(r.execution_time for r in results)
        total_memory = sum(r.memory_usage for r in results)

        return {
            "total_tests": total,
            "passed": counts[ResultStatus.PASS],
            "failed": counts[ResultStatus.FAIL],
            "warnings": counts[ResultStatus.WARNING],
            "errors": counts[ResultStatus.ERROR],
            "skipped": counts[ResultStatus.SKIP],
            "timeouts": counts[ResultStatus.TIMEOUT],
            "success_rate": round(counts[ResultStatus.PASS] / total * 100, 2) if total else 0.0,
            "average_score": round(sum(scores) / len(scores), 2) if scores else None,
            "total_execution_time": round(total_time, 3),
            "average_execution_time": round(total_time / total, 3) if total else 0.0,
            "total_memory_usage": total_memory,
            "average_memory_usage": round(total_memory / total) if total else 0,
        }

    @staticmethod
    def category_statistics(results: list[ProbeResult]) -> dict[str, dict[str, Any]]:
        grouped: dict[str, list[ProbeResult]] = {}
        for result in results:
            grouped.setdefault(categorize(result.probe_name), []).append(result)

        categories = {}
        for category, members in grouped.items():
            scores = [r.score for r in members if r.score is not None]
            total = len(members)
            passed = sum(1 for r in members if r.status == ResultStatus.PASS)
            categories[category] = {
                "total": total,
                "passed": passed,
                "failed": sum(1 for r in members if r.status == ResultStatus.FAIL),
                "warnings": sum(1 for r in members if r.status == ResultStatus.WARNING),
                "errors": sum(1 for r in members if r.status == ResultStatus.ERROR),
                "success_rate": round(passed / total * 100, 2),
                "average_score": round(sum(scores) / len(scores), 2) if scores else None,
                "average_execution_time": round(sum(r.execution_time for r in members) / total, 3),
            }
        return categories

    def weight_for(self, category: str) -> float:
        return self.config.category_weights.get(category, self.config.default_weight)

    def score_breakdown(self, results: list[ProbeResult]) -> dict[str, Any]:
        """Per-category average scores and overall_score = sum(avg * weight)."""
        scores: dict[str, list[int]] = {}
        for result in results:
            if result.score is not None:
                scores.setdefault(categorize(result.probe_name), []).append(result.score)

        breakdown: dict[str, Any] = {}
        overall = 0.0
        for category, values in scores.items():
            average = sum(values) / len(values)
            weight = self.weight_for(category)
            breakdown[category] = {
                "average_score": round(average, 2),
                "test_count": len(values),
                "weight": weight,
                "weighted_score": round(average * weight, 2),
            }
            overall += average * weight

        if scores:
            breakdown["overall_score"] = round(overall, 2)
        return breakdown

    @staticmethod
    def trends(results: list[ProbeResult]) -> dict[str, Any]:
        trends: dict[str, Any] = {
            "execution_time_trend": "stable",
            "success_rate_trend": "stable",
            "score_trend": "stable",
        }
        times = [r.execution_time for r in results]
        if len(times) > 1:
            variance = statistics.pvariance(times)
            trends["execution_time_variance"] = round(variance, 4)
            trends["execution_time_stability"] = "stable" if variance < STABLE_VARIANCE else "variable"
        return trends

    def recommendations(self, summary: dict[str, Any]) -> list[dict[str, str]]:
        recommendations = []

        if summary["success_rate"] < self.config.success_rate_threshold:
            recommendations.append({
                "type": "critical",
                "category": "reliability",
                "message": "Low success rate detected. Review failing probes and address underlying issues.",
                "priority": "high",
            })

        if summary["average_execution_time"] > self.config.slow_execution_threshold:
            recommendations.append({
                "type": "warning",
                "category": "performance",
                "message": "High average execution time. Consider optimizing slow probes or infrastructure.",
                "priority": "medium",
            })

        if summary["errors"] > 0:
            recommendations.append({
                "type": "warning",
                "category": "stability",
                "message": "Probe execution errors detected. Review probe implementations and dependencies.",
                "priority": "medium",
            })

        if summary["timeouts"] > 0:
            recommendations.append({
                "type": "warning",
                "category": "performance",
                "message": "Probe timeouts detected. Consider increasing timeout values or optimizing probe performance.",
                "priority": "medium",
            })

        return recommendations

    @staticmethod
    def compare_with_historical(
        current: AggregatedResult, history: Iterable[AggregatedResult]
    ) -> dict[str, Any]:
        """Compare the current summary with the mean of earlier summaries."""
        history = [h for h in history if isinstance(h, AggregatedResult)]
        if not history:
            return {"message": "No historical data available for comparison"}

        comparison = {}
        for metric, higher_is_better in COMPARED_METRICS.items():
            current_value = current.summary.get(metric)
            past = [h.summary[metric] for h in history if h.summary.get(metric) is not None]
            if current_value is None or not past:
                continue

            historical = sum(past) / len(past)
            change = current_value - historical
            if change == 0:
                trend = "stable"
            elif (change > 0) == higher_is_better:
                trend = "improved"
            else:
                trend = "declined"

            comparison[metric] = {
                "current": current_value,
                "historical_average": historical,
                "change": round(change, 3),
                "percent_change": round(change / historical * 100, 2) if historical else 0.0,
                "trend": trend,
            }
        return comparison
