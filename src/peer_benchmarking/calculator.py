"""Benchmark computation: classify an address, then rank its score.

Upstream data (metrics, score breakdown, transaction history) comes from an
AddressDataSource supplied by the caller; this module never talks to a chain.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

from peer_benchmarking.exceptions import BenchmarkError, TransientComputeError
from peer_benchmarking.peers.classifier import PeerGroupClassifier, extract_features
from peer_benchmarking.peers.models import (
    PeerGroupClassification,
    ScoreDistribution,
    TransactionRecord,
    WalletMetrics,
)
from peer_benchmarking.ranking.engine import PercentileRankingEngine
from peer_benchmarking.ranking.models import (
    BenchmarkCategory,
    BenchmarkRankings,
    ComparativeAnalysis,
    ScoreBreakdown,
)
from peer_benchmarking.storage.repos import BenchmarkRecordDTO
from peer_benchmarking.storage.store import BenchmarkStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AddressProfile:
    """Everything the upstream collaborators know about an address."""

    metrics: WalletMetrics
    score: ScoreBreakdown
    transactions: tuple[TransactionRecord, ...] = field(default_factory=tuple)


class AddressDataSource(Protocol):
    """Supplies metrics and the base score for an address."""

    async def get_profile(self, address: str) -> AddressProfile: ...


@dataclass(frozen=True)
class BenchmarkComputation:
    """A freshly computed benchmark, not yet persisted.

    Only ``record`` is stored; the analysis and categories are derived on
    every computation.
    """

    record: BenchmarkRecordDTO
    classification: PeerGroupClassification
    rankings: BenchmarkRankings
    analysis: ComparativeAnalysis | None = None
    categories: tuple[BenchmarkCategory, ...] = ()


class BenchmarkCalculator:
    """Computes benchmark records.

    Rankings use the peer group's latest active snapshot when one exists
    and fall back to the catalog's nominal distribution otherwise.

    Example:
        ```python
        calculator = BenchmarkCalculator(classifier, engine, store, data_source)
        computation = await calculator.compute("0xabc...", update_frequency_seconds=300)
        ```
    """

    def __init__(
        self,
        classifier: PeerGroupClassifier,
        engine: PercentileRankingEngine,
        store: BenchmarkStore,
        data_source: AddressDataSource,
    ) -> None:
        self._classifier = classifier
        self._engine = engine
        self._store = store
        self._data_source = data_source

    async def compute(
        self,
        address: str,
        *,
        update_frequency_seconds: int,
        now: datetime | None = None,
    ) -> BenchmarkComputation:
        """Classify and rank an address.

        Raises:
            TransientComputeError: If the data source, classification or
                ranking fails.
            PersistenceError: If the snapshot lookup fails.
        """
        ts = now or datetime.now(UTC)
        try:
            profile = await self._data_source.get_profile(address)
        except BenchmarkError:
            raise
        except Exception as e:
            raise TransientComputeError(f"Failed to load profile for {address}: {e}") from e

        classification = self._classifier.classify(address, profile.metrics, profile.transactions, now=ts)
        group = classification.primary_peer_group
        snapshot = await self._store.get_latest_active_snapshot(group.id)

        try:
            rankings = self._engine.rank_breakdown(
                profile.score,
                group,
                distribution=snapshot.score_distribution if snapshot else None,
                total_in_group=snapshot.member_count if snapshot else None,
            )
            analysis = self._engine.compare(
                profile.score,
                group,
                rankings,
                distribution=snapshot.score_distribution if snapshot else None,
                average_score=snapshot.average_score if snapshot else None,
            )
        except (ValueError, ArithmeticError, TypeError) as e:
            raise TransientComputeError(f"Ranking failed for {address}: {e}") from e

        features = extract_features(profile.metrics)
        categories = self._engine.qualify_categories(
            rankings,
            account_age_days=features.account_age_days if features else 0.0,
            total_transactions=features.activity_level if features else 0.0,
            score_confidence=profile.score.confidence,
        )

        record = BenchmarkRecordDTO(
            address=address,
            peer_group_id=group.id,
            overall_percentile=rankings.overall.percentile,
            component_percentiles=rankings.component_percentiles(),
            benchmark_timestamp=ts,
            last_updated=ts,
            update_frequency_seconds=update_frequency_seconds,
            is_stale=False,
            overall_score=float(profile.score.overall_score),
            component_scores={k: float(v) for k, v in profile.score.component_scores().items()},
            classification_confidence=classification.classification_confidence,
        )
        logger.debug(
            "Computed benchmark for %s: group=%s percentile=%.1f",
            address,
            group.id,
            record.overall_percentile,
        )
        return BenchmarkComputation(
            record=record,
            classification=classification,
            rankings=rankings,
            analysis=analysis,
            categories=categories,
        )

    def rerank(
        self,
        record: BenchmarkRecordDTO,
        *,
        distribution: ScoreDistribution | None,
        total_in_group: int | None,
    ) -> BenchmarkRankings | None:
        """Re-rank a stored record from its stored scores.

        Returns:
            New rankings, or None when the record carries no stored score.
        """
        if record.overall_score is None:
            return None
        group = self._classifier.catalog.get(record.peer_group_id)
        breakdown = ScoreBreakdown(overall_score=record.overall_score, components=dict(record.component_scores))
        try:
            return self._engine.rank_breakdown(
                breakdown,
                group,
                distribution=distribution,
                total_in_group=total_in_group,
            )
        except (ValueError, ArithmeticError, TypeError) as e:
            raise TransientComputeError(f"Re-ranking failed for {record.address}: {e}") from e
