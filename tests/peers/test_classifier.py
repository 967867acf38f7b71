"""Tests for peer group classification."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from peer_benchmarking.peers.catalog import PeerGroupCatalog
from peer_benchmarking.peers.classifier import (
    MAX_CONFIDENCE,
    MIN_CONFIDENCE,
    PeerGroupClassifier,
    extract_features,
)
from peer_benchmarking.peers.models import TransactionRecord, WalletMetrics

ADDRESS = "0x" + "ab" * 20
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


class TestExtractFeatures:
    """Tests for metric parsing."""

    def test_parses_decimal_strings(self, sample_metrics: WalletMetrics) -> None:
        features = extract_features(sample_metrics)
        assert features is not None
        assert features.portfolio_size == 150.0
        assert features.activity_level == 250.0
        assert features.staking_ratio == 0.0

    def test_staking_ratio(self) -> None:
        metrics = WalletMetrics(
            total_transactions=40,
            total_volume=Decimal("10"),
            account_age_days=100,
            staking_balance="4",
        )
        features = extract_features(metrics)
        assert features is not None
        assert features.staking_ratio == pytest.approx(0.4)

    def test_protocols_deduplicated_case_insensitively(self) -> None:
        metrics = WalletMetrics(
            total_transactions=40,
            total_volume="10",
            account_age_days=100,
            defi_protocols_used=("Aave", "aave", "Uniswap"),
        )
        features = extract_features(metrics)
        assert features is not None
        assert features.protocol_diversity == 2

    def test_fractional_age_and_activity_floored(self) -> None:
        metrics = WalletMetrics.from_dict({"total_transactions": 50.7, "total_volume": "5", "account_age_days": 90.5})
        features = extract_features(metrics)
        assert features is not None
        assert features.account_age_days == 90.0
        assert features.activity_level == 50.0
        assert features.portfolio_size == 5.0

    @pytest.mark.parametrize(
        "overrides",
        [
            {"total_transactions": 0},
            {"total_volume": "not-a-number"},
            {"total_volume": "-5"},
            {"account_age_days": float("nan")},
            {"account_age_days": -1},
            {"staking_balance": None},
        ],
    )
    def test_degenerate_metrics(self, overrides: dict) -> None:
        data = {"total_transactions": 250, "total_volume": "150", "account_age_days": 400}
        data.update(overrides)
        assert extract_features(WalletMetrics.from_dict(data)) is None


class TestClassify:
    """Tests for PeerGroupClassifier.classify."""

    def test_high_activity_veteran(self, classifier: PeerGroupClassifier, sample_metrics: WalletMetrics) -> None:
        result = classifier.classify(ADDRESS, sample_metrics, now=NOW)

        assert result.primary_peer_group.id == "veteran_active"
        assert result.classification_confidence >= 60
        assert result.classification_confidence == pytest.approx(62.5)
        assert [g.id for g in result.alternative_peer_groups] == ["defi_native", "staking_focused"]
        assert result.classification_reasons[0] == "Primary classification: Veteran Active Users"

    def test_reasons_name_deciding_criteria(
        self, classifier: PeerGroupClassifier, sample_metrics: WalletMetrics
    ) -> None:
        result = classifier.classify(ADDRESS, sample_metrics, now=NOW)
        assert any("fits veteran_active" in reason for reason in result.classification_reasons)

    def test_classification_is_pure(self, classifier: PeerGroupClassifier, sample_metrics: WalletMetrics) -> None:
        first = classifier.classify(ADDRESS, sample_metrics, now=NOW)
        second = classifier.classify(ADDRESS, sample_metrics, now=NOW)
        assert first == second
        assert PeerGroupClassifier(PeerGroupCatalog()).classify(ADDRESS, sample_metrics, now=NOW) == first

    @pytest.mark.parametrize(
        ("age", "group_id"),
        [(90.5, "new_conservative"), (365.5, "established_conservative")],
    )
    def test_fractional_age_between_group_bounds(
        self, classifier: PeerGroupClassifier, age: float, group_id: str
    ) -> None:
        metrics = WalletMetrics(total_transactions=30, total_volume="5", account_age_days=age)
        result = classifier.classify(ADDRESS, metrics, now=NOW)

        assert result.primary_peer_group.id == group_id
        assert result.match_scores[group_id] == 100.0

    def test_degenerate_metrics_use_default_group(self, classifier: PeerGroupClassifier) -> None:
        metrics = WalletMetrics(total_transactions=0, total_volume="0", account_age_days=0)
        result = classifier.classify(ADDRESS, metrics)

        assert result.primary_peer_group.id == "new_conservative"
        assert result.classification_confidence == MIN_CONFIDENCE
        assert result.alternative_peer_groups == ()
        assert "Insufficient data" in result.classification_reasons[0]

    def test_malformed_volume_does_not_raise(self, classifier: PeerGroupClassifier) -> None:
        metrics = WalletMetrics(total_transactions=10, total_volume="12,5 ETH", account_age_days=30)
        result = classifier.classify(ADDRESS, metrics)
        assert result.primary_peer_group.id == "new_conservative"

    def test_no_close_match_uses_general_group(self, classifier: PeerGroupClassifier) -> None:
        metrics = WalletMetrics(
            total_transactions=20_000,
            total_volume="200000",
            account_age_days=5000,
        )
        result = classifier.classify(ADDRESS, metrics)

        assert result.primary_peer_group.id == "general"
        assert result.classification_confidence == MIN_CONFIDENCE

    def test_confidence_bounds(self, classifier: PeerGroupClassifier) -> None:
        for age in (1, 45, 120, 400, 2000, 4000):
            for activity in (1, 30, 150, 400, 900, 5000, 20_000):
                for volume in ("0.5", "8", "60", "700", "5000", "250000"):
                    for protocols in ((), ("a", "b", "c"), ("a", "b", "c", "d", "e", "f")):
                        metrics = WalletMetrics(
                            total_transactions=activity,
                            total_volume=volume,
                            account_age_days=age,
                            defi_protocols_used=protocols,
                        )
                        confidence = classifier.classify(ADDRESS, metrics).classification_confidence
                        assert MIN_CONFIDENCE <= confidence <= MAX_CONFIDENCE

    def test_recent_activity_reason(self, classifier: PeerGroupClassifier, sample_metrics: WalletMetrics) -> None:
        history = [TransactionRecord(timestamp=NOW - timedelta(days=i)) for i in range(12)]
        result = classifier.classify(ADDRESS, sample_metrics, history, now=NOW)
        assert "Recent activity in the last 30 days" in result.classification_reasons

    def test_short_history_adds_no_activity_reason(
        self, classifier: PeerGroupClassifier, sample_metrics: WalletMetrics
    ) -> None:
        history = [TransactionRecord(timestamp=NOW) for _ in range(3)]
        result = classifier.classify(ADDRESS, sample_metrics, history, now=NOW)
        assert "Recent activity in the last 30 days" not in result.classification_reasons

    def test_custom_weights(self, catalog: PeerGroupCatalog, sample_metrics: WalletMetrics) -> None:
        classifier = PeerGroupClassifier(catalog, weights={"protocol_diversity": 1.0})
        result = classifier.classify(ADDRESS, sample_metrics)
        # Every candidate matches on the only weighted criterion except the diversity-gated groups
        assert result.match_scores["veteran_active"] == 100.0
        assert result.match_scores["defi_native"] == 0.0
