"""Static peer group catalog.

This module provides the PeerGroupCatalog class that holds the immutable
peer group definitions and estimates their nominal statistics (member
count, average score and score distribution) once at construction time.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Iterator

from peer_benchmarking.exceptions import UnknownPeerGroupError
from peer_benchmarking.peers.models import (
    ANY_COUNT,
    ANY_RATIO,
    PeerGroupCriteria,
    PeerGroupDefinition,
    PeerGroupMetrics,
    Range,
    ScoreDistribution,
)

logger = logging.getLogger(__name__)

DEFAULT_GROUP_ID = "new_conservative"
FALLBACK_GROUP_ID = "general"

# Score scale shared by all nominal distributions
SCORE_FLOOR = 0.0
SCORE_CEILING = 1000.0

# Member count estimation
BASE_MEMBER_COUNT = 1000
MIN_MEMBER_COUNT = 10

# Average score estimation
BASE_AVERAGE_SCORE = 500.0
MIN_AVERAGE_SCORE = 100.0
MAX_AVERAGE_SCORE = 900.0

# Score range estimation
BASE_SCORE_SPREAD = 200.0
NEW_ACCOUNT_SPREAD_BONUS = 100.0
HIGH_ACTIVITY_SPREAD_BONUS = 50.0

# Share of members per absolute score band (excellent, good, fair, poor)
SCORE_BAND_SHARES = {"excellent": 0.15, "good": 0.35, "fair": 0.35, "poor": 0.15}

# (id, name, description, criteria)
DEFAULT_GROUP_SPECS: tuple[tuple[str, str, str, PeerGroupCriteria], ...] = (
    (
        "new_conservative",
        "New Conservative Users",
        "Recently joined users with conservative trading patterns and moderate activity",
        PeerGroupCriteria(
            account_age_days=Range(0, 90),
            activity_level=Range(1, 50),
            portfolio_size=Range(0, 10),
            protocol_diversity=Range(0, 2),
        ),
    ),
    (
        "new_active",
        "New Active Users",
        "Recently joined users with high activity levels and growing portfolios",
        PeerGroupCriteria(
            account_age_days=Range(0, 90),
            activity_level=Range(51, 200),
            portfolio_size=Range(1, 50),
        ),
    ),
    (
        "established_conservative",
        "Established Conservative Users",
        "Mature accounts with steady, conservative investment patterns",
        PeerGroupCriteria(
            account_age_days=Range(91, 365),
            activity_level=Range(10, 100),
            portfolio_size=Range(1, 100),
        ),
    ),
    (
        "established_active",
        "Established Active Users",
        "Mature accounts with high activity and substantial portfolios",
        PeerGroupCriteria(
            account_age_days=Range(91, 365),
            activity_level=Range(101, 500),
            portfolio_size=Range(10, 500),
        ),
    ),
    (
        "veteran_conservative",
        "Veteran Conservative Users",
        "Long-term users with stable, conservative investment strategies",
        PeerGroupCriteria(
            account_age_days=Range(366, 1095),
            activity_level=Range(20, 200),
            portfolio_size=Range(5, 1000),
        ),
    ),
    (
        "veteran_active",
        "Veteran Active Users",
        "Long-term users with high activity and large portfolios",
        PeerGroupCriteria(
            account_age_days=Range(366, 1095),
            activity_level=Range(201, 1000),
            portfolio_size=Range(50, 5000),
        ),
    ),
    (
        "whale_conservative",
        "Conservative Whales",
        "High-value users with conservative, long-term investment strategies",
        PeerGroupCriteria(
            account_age_days=Range(180, 3650),
            activity_level=Range(50, 500),
            portfolio_size=Range(1000, 100_000),
            protocol_diversity=Range(0, 5),
        ),
    ),
    (
        "whale_active",
        "Active Whales",
        "High-value users with frequent trading and DeFi participation",
        PeerGroupCriteria(
            account_age_days=Range(90, 3650),
            activity_level=Range(500, 10_000),
            portfolio_size=Range(1000, 100_000),
            protocol_diversity=Range(3),
        ),
    ),
    (
        "defi_native",
        "DeFi Natives",
        "Users with extensive DeFi protocol usage regardless of portfolio size",
        PeerGroupCriteria(
            account_age_days=Range(30, 3650),
            activity_level=Range(100, 10_000),
            portfolio_size=Range(5, 100_000),
            protocol_diversity=Range(5),
        ),
    ),
    (
        "staking_focused",
        "Staking-Focused Users",
        "Users primarily focused on staking with moderate trading activity",
        PeerGroupCriteria(
            account_age_days=Range(60, 3650),
            activity_level=Range(10, 300),
            portfolio_size=Range(1, 10_000),
            staking_ratio=Range(0.3),
        ),
    ),
)


def _log_width(r: Range) -> float:
    upper = r.max if math.isfinite(r.max) else r.min * 1000
    return math.log10(max(upper, 0.01)) - math.log10(max(r.min, 0.01))


def estimate_member_count(group_id: str, criteria: PeerGroupCriteria) -> int:
    """Estimate member count; narrower and wealthier groups are smaller."""
    estimate = float(BASE_MEMBER_COUNT)
    if criteria.account_age_days.width < 100:
        estimate *= 0.7
    if criteria.activity_level.width < 100:
        estimate *= 0.8
    if _log_width(criteria.portfolio_size) < 2:
        estimate *= 0.6

    if criteria.portfolio_size.min > 100:
        estimate *= 0.1
    elif criteria.portfolio_size.min > 10:
        estimate *= 0.3

    return max(MIN_MEMBER_COUNT, round(estimate))


def estimate_average_score(group_id: str, criteria: PeerGroupCriteria) -> float:
    """Estimate the nominal average score from how demanding the criteria are."""
    score = BASE_AVERAGE_SCORE

    if criteria.account_age_days.min > 365:
        score += 100
    elif criteria.account_age_days.min > 90:
        score += 50

    if criteria.activity_level.min > 500:
        score += 150
    elif criteria.activity_level.min > 100:
        score += 75

    if criteria.portfolio_size.min > 1000:
        score += 200
    elif criteria.portfolio_size.min > 100:
        score += 100
    elif criteria.portfolio_size.min > 10:
        score += 50

    if "defi" in group_id:
        score += 75
    if "staking" in group_id:
        score += 50

    return max(MIN_AVERAGE_SCORE, min(MAX_AVERAGE_SCORE, score))


def estimate_score_range(group_id: str, criteria: PeerGroupCriteria) -> ScoreDistribution:
    """Estimate a score distribution centred on the nominal average."""
    average = estimate_average_score(group_id, criteria)

    spread = BASE_SCORE_SPREAD
    if criteria.account_age_days.max < 90:
        spread += NEW_ACCOUNT_SPREAD_BONUS
    if criteria.activity_level.max > 500:
        spread += HIGH_ACTIVITY_SPREAD_BONUS

    low = max(SCORE_FLOOR, average - spread)
    high = min(SCORE_CEILING, average + spread)
    width = high - low
    return ScoreDistribution(
        min=low,
        p25=round(low + width * 0.25),
        p50=round(average),
        p75=round(low + width * 0.75),
        p90=round(low + width * 0.9),
        max=high,
    )


def build_definition(
    group_id: str,
    name: str,
    description: str,
    criteria: PeerGroupCriteria,
) -> PeerGroupDefinition:
    """Build a definition with estimated nominal statistics."""
    return PeerGroupDefinition(
        id=group_id,
        name=name,
        description=description,
        criteria=criteria,
        member_count=estimate_member_count(group_id, criteria),
        average_score=estimate_average_score(group_id, criteria),
        score_range=estimate_score_range(group_id, criteria),
    )


def build_fallback_definition() -> PeerGroupDefinition:
    """Catch-all group used when no peer group matches closely."""
    return PeerGroupDefinition(
        id=FALLBACK_GROUP_ID,
        name="General Users",
        description="Users with mixed characteristics not fitting standard peer groups",
        criteria=PeerGroupCriteria(
            account_age_days=Range(0),
            activity_level=Range(0),
            portfolio_size=Range(0),
            staking_ratio=ANY_RATIO,
            protocol_diversity=ANY_COUNT,
        ),
        member_count=BASE_MEMBER_COUNT,
        average_score=500.0,
        score_range=ScoreDistribution(min=0, p25=300, p50=500, p75=700, p90=850, max=1000),
        is_fallback=True,
    )


class PeerGroupCatalog:
    """Immutable registry of peer group definitions.

    The catalog is loaded once; nominal statistics are estimated at
    construction and never change afterwards.

    Example:
        ```python
        catalog = PeerGroupCatalog()
        group = catalog.get("veteran_active")
        print(group.score_range.p50)
        ```
    """

    def __init__(
        self,
        definitions: Iterable[PeerGroupDefinition] | None = None,
        *,
        default_group_id: str = DEFAULT_GROUP_ID,
    ) -> None:
        """Initialize the catalog.

        Args:
            definitions: Peer group definitions. Defaults to the built-in groups
                plus the general fallback group.
            default_group_id: Group used for degenerate metrics.

        Raises:
            ValueError: If ids are duplicated or required groups are missing.
        """
        if definitions is None:
            definitions = [build_definition(*spec) for spec in DEFAULT_GROUP_SPECS]
            definitions.append(build_fallback_definition())

        self._groups: dict[str, PeerGroupDefinition] = {}
        for definition in definitions:
            if definition.id in self._groups:
                raise ValueError(f"Duplicate peer group id: {definition.id}")
            self._groups[definition.id] = definition

        if default_group_id not in self._groups:
            raise ValueError(f"Default peer group {default_group_id!r} not in catalog")
        self._default_group_id = default_group_id

        fallbacks = [g for g in self._groups.values() if g.is_fallback]
        self._fallback = fallbacks[0] if fallbacks else self._groups[default_group_id]

        logger.debug("Loaded peer group catalog with %d groups", len(self._groups))

    def __iter__(self) -> Iterator[PeerGroupDefinition]:
        return iter(self._groups.values())

    def __len__(self) -> int:
        return len(self._groups)

    def __contains__(self, group_id: object) -> bool:
        return group_id in self._groups

    @property
    def default_group(self) -> PeerGroupDefinition:
        """Lowest-activity group used for degenerate metrics."""
        return self._groups[self._default_group_id]

    @property
    def fallback_group(self) -> PeerGroupDefinition:
        """Group used when no candidate matches closely."""
        return self._fallback

    def ids(self) -> list[str]:
        return list(self._groups)

    def candidates(self) -> list[PeerGroupDefinition]:
        """Groups that compete during classification, ordered by id."""
        return sorted((g for g in self._groups.values() if not g.is_fallback), key=lambda g: g.id)

    def find(self, group_id: str) -> PeerGroupDefinition | None:
        return self._groups.get(group_id)

    def get(self, group_id: str) -> PeerGroupDefinition:
        """Get a peer group definition by id.

        Raises:
            UnknownPeerGroupError: If the id is not in the catalog.
        """
        group = self._groups.get(group_id)
        if group is None:
            raise UnknownPeerGroupError(f"Peer group {group_id!r} not found")
        return group

    def metrics_for(self, group_id: str) -> PeerGroupMetrics:
        """Estimate population metrics for a peer group.

        Raises:
            UnknownPeerGroupError: If the id is not in the catalog.
        """
        group = self.get(group_id)
        criteria = group.criteria

        score_distribution = {
            band: round(group.member_count * share) for band, share in SCORE_BAND_SHARES.items()
        }

        avg_volume = _midpoint(criteria.portfolio_size)
        staking_ratio = 0.2
        if "staking" in group.id:
            staking_ratio = 0.6
        if "conservative" in group.id:
            staking_ratio = 0.4
        if "defi" in group.id:
            staking_ratio = 0.1

        return PeerGroupMetrics(
            peer_group_id=group.id,
            total_users=group.member_count,
            average_score=group.average_score,
            score_distribution=score_distribution,
            behavioral_distribution=_estimate_behavioral_distribution(group.id),
            average_transactions=round(_midpoint(criteria.activity_level)),
            average_volume_eth=round(avg_volume, 2),
            average_account_age_days=round(_midpoint(criteria.account_age_days)),
            average_staking_balance_eth=round(avg_volume * staking_ratio, 2),
        )


def _midpoint(r: Range) -> float:
    upper = r.max if math.isfinite(r.max) else r.min
    return (r.min + upper) / 2


def _estimate_behavioral_distribution(group_id: str) -> dict[str, int]:
    conservative, moderate, aggressive, speculative = 25, 40, 25, 10

    if "conservative" in group_id or "staking" in group_id:
        conservative += 20
        moderate += 10
        aggressive -= 15
        speculative -= 15
    if "active" in group_id or "defi" in group_id:
        conservative -= 10
        moderate -= 5
        aggressive += 10
        speculative += 5
    if "whale" in group_id:
        conservative += 10
        moderate += 5
        aggressive -= 10
        speculative -= 5

    values = {
        "conservative": max(0, conservative),
        "moderate": max(0, moderate),
        "aggressive": max(0, aggressive),
        "speculative": max(0, speculative),
    }
    total = sum(values.values()) or 1
    return {key: round(value / total * 100) for key, value in values.items()}
