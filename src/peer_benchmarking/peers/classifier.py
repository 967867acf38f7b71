"""Peer group classification.

This module provides the PeerGroupClassifier class that assigns an address
to a primary peer group and up to two alternatives, with a bounded
confidence score and the reasons that decided the outcome.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation

from peer_benchmarking.peers.catalog import PeerGroupCatalog
from peer_benchmarking.peers.models import (
    PeerGroupClassification,
    PeerGroupCriteria,
    PeerGroupDefinition,
    TransactionRecord,
    WalletMetrics,
)

logger = logging.getLogger(__name__)

# Criterion weights (sum to 100)
CRITERION_WEIGHTS: dict[str, float] = {
    "activity_level": 30.0,
    "portfolio_size": 30.0,
    "account_age_days": 20.0,
    "staking_ratio": 10.0,
    "protocol_diversity": 10.0,
}

# Confidence scoring constants
MIN_CONFIDENCE = 30.0
MAX_CONFIDENCE = 95.0
CONFIDENCE_GAP_SCALE = 20.0  # match-score gap treated as full separation
MIN_PRIMARY_MATCH = 50.0
MIN_ALTERNATIVE_MATCH = 50.0
MAX_ALTERNATIVES = 2

# Recent activity (transaction history)
RECENT_ACTIVITY_WINDOW = timedelta(days=30)
RECENT_ACTIVITY_MIN_HISTORY = 10

_CRITERION_LABELS = {
    "activity_level": ("Activity level", "transactions"),
    "portfolio_size": ("Portfolio size", "ETH"),
    "account_age_days": ("Account age", "days"),
    "staking_ratio": ("Staking ratio", ""),
    "protocol_diversity": ("Protocol diversity", "protocols"),
}


@dataclass(frozen=True)
class ClassificationFeatures:
    account_age_days: float
    activity_level: float
    portfolio_size: float
    staking_ratio: float
    protocol_diversity: float

    def value(self, criterion: str) -> float:
        value: float = getattr(self, criterion)
        return value


def _to_float(value: object) -> float | None:
    try:
        number = float(Decimal(str(value)))
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not math.isfinite(number) or number < 0:
        return None
    return number


def extract_features(metrics: WalletMetrics) -> ClassificationFeatures | None:
    """Parse metrics into classification features.

    Account age and activity are floored to whole days and transactions,
    matching the integer bounds of the catalog's criteria ranges.

    Returns:
        Features, or None when the metrics are degenerate (malformed, negative,
        non-finite, or an address without any transactions).
    """
    activity = _to_float(metrics.total_transactions)
    volume = _to_float(metrics.total_volume)
    age = _to_float(metrics.account_age_days)
    staking = _to_float(metrics.staking_balance)
    if activity is None or volume is None or age is None or staking is None:
        return None
    activity = float(math.floor(activity))
    age = float(math.floor(age))
    if activity == 0:
        return None

    try:
        protocols = len({str(p).lower() for p in metrics.defi_protocols_used})
    except TypeError:
        return None

    return ClassificationFeatures(
        account_age_days=age,
        activity_level=activity,
        portfolio_size=volume,
        staking_ratio=staking / volume if volume > 0 else 0.0,
        protocol_diversity=float(protocols),
    )


class PeerGroupClassifier:
    """Assigns addresses to peer groups.

    Each candidate group gets a match score: the weighted share of its
    criteria the address satisfies, expressed as a percentage. The best
    match becomes the primary group; ties go to the smaller group id.

    Confidence Formula:
        gap = primary_match - runner_up_match
        confidence = 30 + 65 * min(1, gap / 20) * primary_match / 100

        Clamped to [30, 95].

    Example:
        ```python
        classifier = PeerGroupClassifier(PeerGroupCatalog())
        result = classifier.classify(address, metrics)
        print(result.primary_peer_group.id, result.classification_confidence)
        ```
    """

    def __init__(
        self,
        catalog: PeerGroupCatalog,
        *,
        weights: dict[str, float] | None = None,
    ) -> None:
        """Initialize the classifier.

        Args:
            catalog: Peer group catalog.
            weights: Optional per-criterion weights. Defaults to CRITERION_WEIGHTS.
        """
        self._catalog = catalog
        self._weights = dict(weights or CRITERION_WEIGHTS)
        self._total_weight = sum(self._weights.values())

    @property
    def catalog(self) -> PeerGroupCatalog:
        return self._catalog

    def match_score(self, features: ClassificationFeatures, criteria: PeerGroupCriteria) -> float:
        """Weighted percentage of criteria satisfied."""
        satisfied = sum(
            weight
            for criterion, weight in self._weights.items()
            if getattr(criteria, criterion).contains(features.value(criterion))
        )
        return round(satisfied / self._total_weight * 100, 4)

    def classify(
        self,
        address: str,
        metrics: WalletMetrics,
        transaction_history: Sequence[TransactionRecord] | None = None,
        *,
        now: datetime | None = None,
    ) -> PeerGroupClassification:
        """Classify an address into peer groups.

        Never raises for bad metrics: degenerate input falls back to the
        catalog's default group with minimum confidence.

        Args:
            address: Address being classified.
            metrics: Aggregate address metrics.
            transaction_history: Optional transaction history.
            now: Reference time for recent-activity checks.

        Returns:
            The classification result.
        """
        features = extract_features(metrics)
        if features is None:
            logger.debug("Degenerate metrics for %s; using default peer group", address)
            return PeerGroupClassification(
                address=address,
                primary_peer_group=self._catalog.default_group,
                alternative_peer_groups=(),
                classification_confidence=MIN_CONFIDENCE,
                classification_reasons=(
                    "Insufficient data: metrics are missing, malformed or show no activity",
                    f"Defaulted to {self._catalog.default_group.name}",
                ),
            )

        scored = [(self.match_score(features, g.criteria), g) for g in self._catalog.candidates()]
        scored.sort(key=lambda item: (-item[0], item[1].id))
        match_scores = {g.id: score for score, g in scored}

        if not scored or scored[0][0] < MIN_PRIMARY_MATCH:
            fallback = self._catalog.fallback_group
            return PeerGroupClassification(
                address=address,
                primary_peer_group=fallback,
                alternative_peer_groups=(),
                classification_confidence=MIN_CONFIDENCE,
                classification_reasons=(
                    "No peer group matched closely; using general classification",
                ),
                match_scores=match_scores,
            )

        primary_score, primary = scored[0]
        runner_up_score, runner_up = scored[1] if len(scored) > 1 else (0.0, None)

        alternatives = tuple(
            g for score, g in scored[1:] if score >= MIN_ALTERNATIVE_MATCH
        )[:MAX_ALTERNATIVES]

        confidence = self._confidence(primary_score, runner_up_score)
        reasons = self._reasons(features, primary, runner_up, transaction_history, now=now)
        if alternatives:
            reasons.append(f"Also matches {len(alternatives)} alternative group(s)")

        return PeerGroupClassification(
            address=address,
            primary_peer_group=primary,
            alternative_peer_groups=alternatives,
            classification_confidence=confidence,
            classification_reasons=tuple(reasons),
            match_scores=match_scores,
        )

    def _confidence(self, primary_score: float, runner_up_score: float) -> float:
        gap = max(0.0, primary_score - runner_up_score)
        separation = min(1.0, gap / CONFIDENCE_GAP_SCALE)
        raw = MIN_CONFIDENCE + (MAX_CONFIDENCE - MIN_CONFIDENCE) * separation * primary_score / 100
        return round(max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, raw)), 2)

    def _reasons(
        self,
        features: ClassificationFeatures,
        primary: PeerGroupDefinition,
        runner_up: PeerGroupDefinition | None,
        transaction_history: Sequence[TransactionRecord] | None,
        *,
        now: datetime | None,
    ) -> list[str]:
        reasons = [f"Primary classification: {primary.name}"]

        deciding = []
        for criterion in self._weights:
            value = features.value(criterion)
            in_primary = getattr(primary.criteria, criterion).contains(value)
            in_runner_up = runner_up is not None and getattr(runner_up.criteria, criterion).contains(value)
            if in_primary and not in_runner_up:
                deciding.append(criterion)

        for criterion in deciding:
            label, unit = _CRITERION_LABELS[criterion]
            value = features.value(criterion)
            shown = f"{value:.2f}" if criterion in ("portfolio_size", "staking_ratio") else f"{value:g}"
            rng = getattr(primary.criteria, criterion).describe()
            line = f"{label} {shown}{' ' + unit if unit else ''} fits {primary.id} ({rng})"
            if runner_up is not None:
                line += f" but not {runner_up.id}"
            reasons.append(line)

        if not deciding and runner_up is not None:
            reasons.append(f"Tied with {runner_up.id}; resolved by group id")

        if _has_recent_activity(transaction_history, now=now):
            reasons.append("Recent activity in the last 30 days")

        return reasons


def _has_recent_activity(
    transaction_history: Sequence[TransactionRecord] | None,
    *,
    now: datetime | None,
) -> bool:
    if not transaction_history or len(transaction_history) <= RECENT_ACTIVITY_MIN_HISTORY:
        return False
    reference = now or datetime.now(UTC)
    cutoff = reference - RECENT_ACTIVITY_WINDOW
    for tx in transaction_history:
        ts = tx.timestamp
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=UTC)
        if ts >= cutoff:
            return True
    return False
