"""Data models for peer groups and address metrics."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

# Breakpoint order used by every score distribution.
BREAKPOINT_KEYS: tuple[str, ...] = ("min", "p25", "p50", "p75", "p90", "max")
BREAKPOINT_PERCENTILES: tuple[float, ...] = (0.0, 25.0, 50.0, 75.0, 90.0, 100.0)


@dataclass(frozen=True)
class Range:
    """Inclusive numeric range."""

    min: float
    max: float = math.inf

    def __post_init__(self) -> None:
        if self.min > self.max:
            raise ValueError(f"Range min {self.min} exceeds max {self.max}")

    def contains(self, value: float) -> bool:
        return self.min <= value <= self.max

    @property
    def width(self) -> float:
        return self.max - self.min

    def describe(self) -> str:
        if math.isinf(self.max):
            return f">= {self.min:g}"
        return f"{self.min:g}-{self.max:g}"


ANY_RATIO = Range(0.0)
ANY_COUNT = Range(0.0)


@dataclass(frozen=True)
class PeerGroupCriteria:
    """Criteria ranges an address must fall into to match a peer group.

    Attributes:
        account_age_days: Days since the first transaction.
        activity_level: Total transaction count.
        portfolio_size: Total volume in ETH.
        staking_ratio: Staking balance divided by total volume.
        protocol_diversity: Number of distinct DeFi protocols used.
    """

    account_age_days: Range
    activity_level: Range
    portfolio_size: Range
    staking_ratio: Range = ANY_RATIO
    protocol_diversity: Range = ANY_COUNT


@dataclass(frozen=True)
class ScoreDistribution:
    """Parametric score distribution described by six breakpoints.

    Breakpoints must be non-decreasing: min <= p25 <= p50 <= p75 <= p90 <= max.
    """

    min: float
    p25: float
    p50: float
    p75: float
    p90: float
    max: float

    def __post_init__(self) -> None:
        values = self.values()
        if any(not math.isfinite(v) for v in values):
            raise ValueError("Score distribution breakpoints must be finite")
        if any(b < a for a, b in zip(values, values[1:])):
            raise ValueError(f"Score distribution breakpoints must be non-decreasing: {values}")

    def values(self) -> tuple[float, ...]:
        return (self.min, self.p25, self.p50, self.p75, self.p90, self.max)

    def scaled(self, factors: tuple[float, ...]) -> ScoreDistribution:
        """Return a distribution with each breakpoint multiplied by its factor."""
        return ScoreDistribution(*(v * f for v, f in zip(self.values(), factors)))

    def to_dict(self) -> dict[str, float]:
        return dict(zip(BREAKPOINT_KEYS, self.values()))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScoreDistribution:
        return cls(*(float(data[key]) for key in BREAKPOINT_KEYS))


@dataclass(frozen=True)
class PeerGroupDefinition:
    """Static peer group definition with nominal statistics.

    Attributes:
        id: Stable identifier (e.g. ``veteran_active``).
        name: Human-readable name.
        description: Short description of the cohort.
        criteria: Criteria ranges used for matching.
        member_count: Nominal number of members.
        average_score: Nominal average score (0-1000 scale).
        score_range: Nominal score distribution.
        is_fallback: True for the catch-all group that never competes in matching.
    """

    id: str
    name: str
    description: str
    criteria: PeerGroupCriteria
    member_count: int
    average_score: float
    score_range: ScoreDistribution
    is_fallback: bool = False


@dataclass(frozen=True)
class PeerGroupClassification:
    """Result of assigning an address to peer groups."""

    address: str
    primary_peer_group: PeerGroupDefinition
    alternative_peer_groups: tuple[PeerGroupDefinition, ...]
    classification_confidence: float
    classification_reasons: tuple[str, ...]
    match_scores: dict[str, float] = field(default_factory=dict)

    @property
    def primary_peer_group_id(self) -> str:
        return self.primary_peer_group.id

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "address": self.address,
            "primary_peer_group": self.primary_peer_group.id,
            "alternative_peer_groups": [g.id for g in self.alternative_peer_groups],
            "classification_confidence": self.classification_confidence,
            "classification_reasons": list(self.classification_reasons),
        }


@dataclass(frozen=True)
class PeerGroupMetrics:
    """Estimated population metrics for a peer group."""

    peer_group_id: str
    total_users: int
    average_score: float
    score_distribution: dict[str, int]
    behavioral_distribution: dict[str, int]
    average_transactions: float
    average_volume_eth: float
    average_account_age_days: float
    average_staking_balance_eth: float


@dataclass(frozen=True)
class TransactionRecord:
    """A single historical transaction supplied by the ingestion layer."""

    timestamp: datetime
    value_eth: Decimal = Decimal("0")
    tx_hash: str = ""


@dataclass(frozen=True)
class WalletMetrics:
    """Aggregate address metrics supplied by the ingestion layer.

    Amounts are kept as given by the upstream (decimal strings in ETH) and
    parsed lazily so that malformed values reach the classifier, which
    degrades them to the default group instead of raising.
    """

    total_transactions: int
    total_volume: str | Decimal
    account_age_days: float
    staking_balance: str | Decimal = "0"
    defi_protocols_used: tuple[str, ...] = ()
    avg_transaction_value: str | Decimal = "0"
    first_transaction_at: datetime | None = None
    last_transaction_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WalletMetrics:
        """Build metrics from an upstream payload (snake_case keys)."""
        return cls(
            total_transactions=data.get("total_transactions", 0),
            total_volume=data.get("total_volume", "0"),
            account_age_days=data.get("account_age_days", 0),
            staking_balance=data.get("staking_balance", "0"),
            defi_protocols_used=tuple(data.get("defi_protocols_used") or ()),
            avg_transaction_value=data.get("avg_transaction_value", "0"),
            first_transaction_at=data.get("first_transaction_at"),
            last_transaction_at=data.get("last_transaction_at"),
        )
