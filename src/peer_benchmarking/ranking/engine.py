"""Percentile ranking against parametric peer distributions.

This module provides the PercentileRankingEngine class that maps raw scores
onto [1, 99] percentiles by piecewise-linear interpolation between the
breakpoints of a peer group's score distribution.
"""

from __future__ import annotations

import bisect
import logging
import math

from peer_benchmarking.peers.models import (
    BREAKPOINT_PERCENTILES,
    PeerGroupDefinition,
    ScoreDistribution,
)
from peer_benchmarking.ranking.models import (
    BEHAVIORAL_COMPONENTS,
    INVERTED_COMPONENTS,
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

logger = logging.getLogger(__name__)

# Percentile clamping
MIN_PERCENTILE = 1.0
MAX_PERCENTILE = 99.0
PERCENTILE_PRECISION = 1

# Category thresholds (minimum percentile), best first
CATEGORY_THRESHOLDS: tuple[tuple[PercentileCategory, float], ...] = (
    (PercentileCategory.EXCELLENT, 90.0),
    (PercentileCategory.GOOD, 70.0),
    (PercentileCategory.AVERAGE, 40.0),
    (PercentileCategory.BELOW_AVERAGE, 20.0),
    (PercentileCategory.POOR, 0.0),
)

# Absolute score tiers (minimum raw score), best first
SCORE_TIER_THRESHOLDS: tuple[tuple[ScoreTier, float], ...] = (
    (ScoreTier.EXCELLENT, 800.0),
    (ScoreTier.GOOD, 600.0),
    (ScoreTier.FAIR, 400.0),
    (ScoreTier.POOR, 0.0),
)

# Component distributions derived from the overall distribution
COMPONENT_RANGE_FACTORS: tuple[float, ...] = (0.8, 0.9, 1.0, 1.1, 1.15, 1.2)
BEHAVIORAL_DISTRIBUTION = ScoreDistribution(min=0, p25=40, p50=60, p75=80, p90=90, max=100)
BEHAVIORAL_SCALE_MAX = 100.0

# Component comparison bands (absolute percent difference from the peer average)
SIGNIFICANCE_THRESHOLDS: tuple[tuple[ComparisonSignificance, float], ...] = (
    (ComparisonSignificance.HIGH, 25.0),
    (ComparisonSignificance.MEDIUM, 10.0),
)
STRENGTH_THRESHOLD_PCT = 10.0

# Benchmark categories, best first
BENCHMARK_CATEGORIES: tuple[BenchmarkCategory, ...] = (
    BenchmarkCategory(
        "elite_performer",
        "Elite Performer",
        "Top 5% of users with exceptional performance across all metrics",
        5.0,
        (
            "95th percentile or higher overall",
            "Account older than 180 days",
            "Consistency in the 75th percentile or higher",
        ),
    ),
    BenchmarkCategory(
        "high_achiever",
        "High Achiever",
        "Strong performers in the top 25% of their peer group",
        15.0,
        (
            "75th percentile or higher overall",
            "Account older than 90 days",
            "At least 3 score components in the 60th percentile or higher",
        ),
    ),
    BenchmarkCategory(
        "solid_performer",
        "Solid Performer",
        "Above-average users with consistent performance",
        40.0,
        ("50th percentile or higher overall", "No score component below the 25th percentile"),
    ),
    BenchmarkCategory(
        "emerging_user",
        "Emerging User",
        "Users showing growth potential and improving metrics",
        25.0,
        ("Account older than 30 days", "At least 10 transactions", "Score confidence of 60 or higher"),
    ),
    BenchmarkCategory(
        "new_user",
        "New User",
        "Recently joined users building their on-chain presence",
        15.0,
        ("Account younger than 90 days", "At least 1 transaction"),
    ),
)


def category_for(percentile: float) -> PercentileCategory:
    for category, threshold in CATEGORY_THRESHOLDS:
        if percentile >= threshold:
            return category
    return PercentileCategory.POOR


def next_category_threshold(category: PercentileCategory) -> float | None:
    """Minimum percentile of the next better category, None at the top."""
    for index, (candidate, _) in enumerate(CATEGORY_THRESHOLDS):
        if candidate == category:
            return None if index == 0 else CATEGORY_THRESHOLDS[index - 1][1]
    return None


def score_tier_for(score: float) -> ScoreTier:
    for tier, threshold in SCORE_TIER_THRESHOLDS:
        if score >= threshold:
            return tier
    return ScoreTier.POOR


def significance_for(difference_pct: float) -> ComparisonSignificance:
    for significance, threshold in SIGNIFICANCE_THRESHOLDS:
        if abs(difference_pct) > threshold:
            return significance
    return ComparisonSignificance.LOW


class PercentileRankingEngine:
    """Maps scores onto percentiles within a peer group.

    Breakpoints (min, p25, p50, p75, p90, max) anchor the percentiles
    0, 25, 50, 75, 90 and 100. A score between two breakpoints maps
    linearly into the corresponding percentile interval. Results are
    clamped to [1, 99], so no score is ever ranked 0 or 100.

    Example:
        ```python
        engine = PercentileRankingEngine()
        ranking = engine.rank(700, catalog.get("veteran_active"))
        print(ranking.percentile, ranking.category)
        ```
    """

    def percentile(self, score: float, distribution: ScoreDistribution) -> float:
        """Interpolate the percentile of ``score``; monotonic in score."""
        values = distribution.values()
        if math.isnan(score) or score < values[0]:
            return MIN_PERCENTILE
        if score > values[-1]:
            return MAX_PERCENTILE

        # bisect_right never selects a zero-width segment
        upper = bisect.bisect_right(values, score)
        if upper >= len(values):
            raw = BREAKPOINT_PERCENTILES[-1]
        else:
            lo, hi = values[upper - 1], values[upper]
            p_lo, p_hi = BREAKPOINT_PERCENTILES[upper - 1], BREAKPOINT_PERCENTILES[upper]
            raw = p_lo + (score - lo) / (hi - lo) * (p_hi - p_lo)

        clamped = max(MIN_PERCENTILE, min(MAX_PERCENTILE, raw))
        return round(clamped, PERCENTILE_PRECISION)

    def score_at_percentile(self, percentile: float, distribution: ScoreDistribution) -> float:
        """Inverse of the interpolation: lowest score reaching ``percentile``."""
        values = distribution.values()
        if percentile <= BREAKPOINT_PERCENTILES[0]:
            return values[0]
        if percentile >= BREAKPOINT_PERCENTILES[-1]:
            return values[-1]
        upper = bisect.bisect_left(BREAKPOINT_PERCENTILES, percentile)
        p_lo, p_hi = BREAKPOINT_PERCENTILES[upper - 1], BREAKPOINT_PERCENTILES[upper]
        lo, hi = values[upper - 1], values[upper]
        return lo + (percentile - p_lo) / (p_hi - p_lo) * (hi - lo)

    def rank(
        self,
        score: float,
        peer_group: PeerGroupDefinition,
        *,
        distribution: ScoreDistribution | None = None,
        total_in_group: int | None = None,
        metric_name: str = "Overall Score",
        with_tier: bool = True,
    ) -> PercentileRanking:
        """Rank a score within a peer group.

        Args:
            score: Raw score.
            peer_group: Peer group whose nominal distribution is used.
            distribution: Optional override (e.g. the latest active snapshot).
            total_in_group: Optional member count override.
            metric_name: Name used in the explanation.
            with_tier: Attach the absolute score tier (0-1000 scale only).

        Returns:
            The percentile ranking.
        """
        return self._rank(
            score,
            distribution or peer_group.score_range,
            total_in_group if total_in_group is not None else peer_group.member_count,
            metric_name=metric_name,
            with_tier=with_tier,
        )

    def rank_component(
        self,
        component: str,
        score: float,
        peer_group: PeerGroupDefinition,
        *,
        distribution: ScoreDistribution | None = None,
        total_in_group: int | None = None,
    ) -> PercentileRanking:
        """Rank a single score component or behavioral metric."""
        total = total_in_group if total_in_group is not None else peer_group.member_count
        metric_name = component.replace("_", " ").title()

        if component in BEHAVIORAL_COMPONENTS:
            value = BEHAVIORAL_SCALE_MAX - score if component in INVERTED_COMPONENTS else score
            return self._rank(value, BEHAVIORAL_DISTRIBUTION, total, metric_name=metric_name, with_tier=False)

        base = distribution or peer_group.score_range
        return self._rank(
            score,
            base.scaled(COMPONENT_RANGE_FACTORS),
            total,
            metric_name=metric_name,
            with_tier=False,
        )

    def rank_breakdown(
        self,
        breakdown: ScoreBreakdown,
        peer_group: PeerGroupDefinition,
        *,
        distribution: ScoreDistribution | None = None,
        total_in_group: int | None = None,
    ) -> BenchmarkRankings:
        """Rank the overall score and every component present in the breakdown."""
        overall = self.rank(
            breakdown.overall_score,
            peer_group,
            distribution=distribution,
            total_in_group=total_in_group,
        )
        components = {
            name: self.rank_component(
                name,
                value,
                peer_group,
                distribution=distribution,
                total_in_group=total_in_group,
            )
            for name, value in sorted(breakdown.component_scores().items())
        }
        return BenchmarkRankings(overall=overall, components=components)

    def compare(
        self,
        breakdown: ScoreBreakdown,
        peer_group: PeerGroupDefinition,
        rankings: BenchmarkRankings,
        *,
        distribution: ScoreDistribution | None = None,
        average_score: float | None = None,
    ) -> ComparativeAnalysis:
        """Compare a score breakdown with its peer group's average and top bands.

        Score components share the overall 0-1000 scale, so each one is
        compared with the group average directly. Behavioral metrics are
        not compared.

        Args:
            breakdown: Score being compared.
            peer_group: Peer group the breakdown was ranked in.
            rankings: Rankings of ``breakdown`` within ``peer_group``.
            distribution: Optional override (e.g. the latest active snapshot).
            average_score: Optional average override (e.g. the snapshot's).

        Returns:
            The comparative analysis.
        """
        base = distribution or peer_group.score_range
        average = peer_group.average_score if average_score is None else average_score
        score = breakdown.overall_score

        difference = round(score - average, 2)
        percentage = round(difference / average * 100, 2) if average > 0 else 0.0
        better_than = rankings.overall.percentile
        gap_to_top10 = round(max(0.0, base.p90 - score), 2)
        gap_to_top25 = round(max(0.0, base.p75 - score), 2)

        comparisons = [
            self._compare_component(name, breakdown.components[name], average)
            for name in SCORE_COMPONENTS
            if name in breakdown.components
        ]
        return ComparativeAnalysis(
            peer_average=average,
            score_difference=difference,
            percentage_difference=percentage,
            better_than=better_than,
            group_explanation=_explain_group_average(difference, better_than, peer_group.name),
            gap_to_top10=gap_to_top10,
            gap_to_top25=gap_to_top25,
            top_performers_explanation=_explain_top_performers(gap_to_top10, gap_to_top25),
            strengths=tuple(c for c in comparisons if c.difference_pct > STRENGTH_THRESHOLD_PCT),
            weaknesses=tuple(c for c in comparisons if c.difference_pct < -STRENGTH_THRESHOLD_PCT),
        )

    def _compare_component(self, component: str, score: float, peer_average: float) -> ComponentComparison:
        difference_pct = round((score - peer_average) / peer_average * 100, 1) if peer_average > 0 else 0.0
        direction = "above" if difference_pct > 0 else "below"
        metric_name = component.replace("_", " ")
        return ComponentComparison(
            component=component,
            user_score=score,
            peer_average=peer_average,
            difference_pct=difference_pct,
            significance=significance_for(difference_pct),
            explanation=(
                f"Your {metric_name} score of {score:g} is {abs(difference_pct):.1f}% "
                f"{direction} the peer average of {peer_average:g}."
            ),
        )

    def qualify_categories(
        self,
        rankings: BenchmarkRankings,
        *,
        account_age_days: float,
        total_transactions: float,
        score_confidence: float | None = None,
    ) -> tuple[BenchmarkCategory, ...]:
        """Return the benchmark categories an address qualifies for, best first.

        Args:
            rankings: Rankings of the address within its peer group.
            account_age_days: Account age in days.
            total_transactions: Lifetime transaction count.
            score_confidence: Upstream score confidence (0-100). Without it the
                address cannot qualify as an emerging user.
        """
        overall = rankings.overall.percentile
        score_percentiles = rankings.score_component_percentiles()
        consistency = rankings.components.get("consistency_score")

        qualified = {
            "elite_performer": (
                overall >= 95 and account_age_days > 180 and consistency is not None and consistency.percentile >= 75
            ),
            "high_achiever": (
                overall >= 75 and account_age_days > 90 and sum(1 for p in score_percentiles if p >= 60) >= 3
            ),
            "solid_performer": overall >= 50 and all(p >= 25 for p in score_percentiles),
            "emerging_user": (
                account_age_days > 30
                and total_transactions >= 10
                and score_confidence is not None
                and score_confidence >= 60
            ),
            "new_user": account_age_days < 90 and total_transactions >= 1,
        }
        return tuple(category for category in BENCHMARK_CATEGORIES if qualified[category.id])

    def _rank(
        self,
        score: float,
        distribution: ScoreDistribution,
        total_in_group: int,
        *,
        metric_name: str,
        with_tier: bool,
    ) -> PercentileRanking:
        total = max(1, int(total_in_group))
        percentile = self.percentile(score, distribution)
        rank = max(1, round((1 - percentile / 100) * total))
        category = category_for(percentile)

        improvement = 0
        threshold = next_category_threshold(category)
        if threshold is not None:
            target = self.score_at_percentile(threshold, distribution)
            improvement = max(0, math.ceil(target - score))

        return PercentileRanking(
            percentile=percentile,
            rank=rank,
            total_in_group=total,
            category=category,
            improvement_potential=improvement,
            explanation=_explain(percentile, category, metric_name, total),
            score_tier=score_tier_for(score) if with_tier else None,
        )


def _explain(percentile: float, category: PercentileCategory, metric_name: str, total: int) -> str:
    better_than = max(0, round(percentile / 100 * total) - 1)
    label = category.value.replace("_", " ").lower()
    return (
        f"{metric_name} is in the {percentile:g}th percentile of {total:,} peers "
        f"({label}), ahead of roughly {better_than:,} of them."
    )


def _explain_group_average(difference: float, better_than: float, group_name: str) -> str:
    if difference > 0:
        return (
            f"You score {difference:g} points above the average for {group_name}, "
            f"performing better than {better_than:g}% of your peers."
        )
    return (
        f"You score {abs(difference):g} points below the average for {group_name}, "
        "with room for improvement to match peer performance."
    )


def _explain_top_performers(gap_to_top10: float, gap_to_top25: float) -> str:
    if gap_to_top10 <= 0:
        return "You are already among the top 10% of performers in your peer group."
    if gap_to_top25 <= 0:
        return f"You are in the top 25% and need {gap_to_top10:g} more points to reach the top 10%."
    return (
        f"You need {gap_to_top25:g} more points to reach the top 25% "
        f"and {gap_to_top10:g} points to reach the top 10%."
    )
