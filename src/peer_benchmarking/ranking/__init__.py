"""Percentile ranking of scores within peer groups."""

from peer_benchmarking.ranking.engine import (
    BENCHMARK_CATEGORIES,
    PercentileRankingEngine,
    category_for,
    score_tier_for,
)
from peer_benchmarking.ranking.models import (
    BEHAVIORAL_COMPONENTS,
    SCORE_COMPONENTS,
    BenchmarkCategory,
    BenchmarkRankings,
    ComparativeAnalysis,
    ComparisonSignificance,
    ComponentComparison,
    PercentileCategory,
    PercentileRanking,
    ScoreBreakdown,
    ScoreTier,
)

__all__ = [
    "BEHAVIORAL_COMPONENTS",
    "BENCHMARK_CATEGORIES",
    "SCORE_COMPONENTS",
    "BenchmarkCategory",
    "BenchmarkRankings",
    "ComparativeAnalysis",
    "ComparisonSignificance",
    "ComponentComparison",
    "PercentileCategory",
    "PercentileRanking",
    "PercentileRankingEngine",
    "ScoreBreakdown",
    "ScoreTier",
    "category_for",
    "score_tier_for",
]
