"""Data models for percentile rankings."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Score components on the 0-1000 scale, ranked against the group's distribution
SCORE_COMPONENTS: tuple[str, ...] = (
    "transaction_volume",
    "transaction_frequency",
    "staking_activity",
    "defi_interactions",
)

# Behavioral metrics on the 0-100 scale, ranked against a fixed distribution
BEHAVIORAL_COMPONENTS: tuple[str, ...] = (
    "consistency_score",
    "diversification_score",
    "gas_efficiency",
    "risk_score",
)

# Lower raw values are better for these components
INVERTED_COMPONENTS: frozenset[str] = frozenset({"risk_score"})


class PercentileCategory(str, Enum):
    """Percentile band relative to the peer group."""

    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    AVERAGE = "AVERAGE"
    BELOW_AVERAGE = "BELOW_AVERAGE"
    POOR = "POOR"


class ScoreTier(str, Enum):
    """Absolute band of a raw score on the 0-1000 scale."""

    EXCELLENT = "EXCELLENT"
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"


@dataclass(frozen=True)
class PercentileRanking:
    """Position of a score within a peer group's distribution.

    Attributes:
        percentile: Percentile in [1, 99].
        rank: Position within the group, 1 being best.
        total_in_group: Group size used for the rank.
        category: Percentile band.
        improvement_potential: Score points needed to reach the next category.
        explanation: Human-readable summary.
        score_tier: Absolute band of the raw score.
    """

    percentile: float
    rank: int
    total_in_group: int
    category: PercentileCategory
    improvement_potential: int
    explanation: str = ""
    score_tier: ScoreTier | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "percentile": self.percentile,
            "rank": self.rank,
            "total_in_group": self.total_in_group,
            "category": self.category.value,
            "improvement_potential": self.improvement_potential,
            "explanation": self.explanation,
            "score_tier": self.score_tier.value if self.score_tier else None,
        }


@dataclass(frozen=True)
class ScoreBreakdown:
    """Score supplied by the upstream score calculator.

    Attributes:
        overall_score: Overall score on the 0-1000 scale.
        components: Score components keyed by SCORE_COMPONENTS names.
        behavioral: Behavioral metrics keyed by BEHAVIORAL_COMPONENTS names.
        confidence: Upstream confidence in the score (0-100), if reported.
    """

    overall_score: float
    components: dict[str, float] = field(default_factory=dict)
    behavioral: dict[str, float] = field(default_factory=dict)
    confidence: float | None = None

    def component_scores(self) -> dict[str, float]:
        """All component values in one mapping."""
        return {**self.components, **self.behavioral}


@dataclass(frozen=True)
class BenchmarkRankings:
    """Overall and per-component rankings for one address."""

    overall: PercentileRanking
    components: dict[str, PercentileRanking] = field(default_factory=dict)

    def component_percentiles(self) -> dict[str, float]:
        return {name: ranking.percentile for name, ranking in self.components.items()}

    def score_component_percentiles(self) -> list[float]:
        """Percentiles of the SCORE_COMPONENTS present, behavioral metrics excluded."""
        return [self.components[name].percentile for name in SCORE_COMPONENTS if name in self.components]


class ComparisonSignificance(str, Enum):
    """Size of a component's deviation from the peer average."""

    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


@dataclass(frozen=True)
class ComponentComparison:
    """One score component compared with the peer group average."""

    component: str
    user_score: float
    peer_average: float
    difference_pct: float
    significance: ComparisonSignificance
    explanation: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "component": self.component,
            "user_score": self.user_score,
            "peer_average": self.peer_average,
            "difference_pct": self.difference_pct,
            "significance": self.significance.value,
            "explanation": self.explanation,
        }


@dataclass(frozen=True)
class ComparativeAnalysis:
    """How an address compares with its peer group.

    Attributes:
        peer_average: Group average the score is compared with.
        score_difference: Overall score minus ``peer_average``.
        percentage_difference: ``score_difference`` as a percentage of the average.
        better_than: Overall percentile, read as the share of peers outranked.
        group_explanation: Summary of the comparison with the group average.
        gap_to_top10: Points needed to reach the group's p90, 0 once reached.
        gap_to_top25: Points needed to reach the group's p75, 0 once reached.
        top_performers_explanation: Summary of the gaps to the top bands.
        strengths: Components more than 10% above the peer average.
        weaknesses: Components more than 10% below the peer average.
    """

    peer_average: float
    score_difference: float
    percentage_difference: float
    better_than: float
    group_explanation: str
    gap_to_top10: float
    gap_to_top25: float
    top_performers_explanation: str
    strengths: tuple[ComponentComparison, ...] = ()
    weaknesses: tuple[ComponentComparison, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "vs_group_average": {
                "peer_average": self.peer_average,
                "score_difference": self.score_difference,
                "percentage_difference": self.percentage_difference,
                "better_than": self.better_than,
                "explanation": self.group_explanation,
            },
            "vs_top_performers": {
                "gap_to_top10": self.gap_to_top10,
                "gap_to_top25": self.gap_to_top25,
                "explanation": self.top_performers_explanation,
            },
            "strengths": [c.to_dict() for c in self.strengths],
            "weaknesses": [c.to_dict() for c in self.weaknesses],
        }


@dataclass(frozen=True)
class BenchmarkCategory:
    """A named achievement band an address can qualify for.

    Attributes:
        id: Stable identifier (e.g. ``elite_performer``).
        name: Human-readable name.
        description: Short description.
        percentage_of_users: Nominal share of users in the band.
        requirements: Human-readable qualification rules.
    """

    id: str
    name: str
    description: str
    percentage_of_users: float
    requirements: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "percentage_of_users": self.percentage_of_users,
            "requirements": list(self.requirements),
        }
