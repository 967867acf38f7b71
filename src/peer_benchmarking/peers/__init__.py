"""Peer group layer - catalog and classification."""

from peer_benchmarking.peers.catalog import PeerGroupCatalog
from peer_benchmarking.peers.classifier import PeerGroupClassifier
from peer_benchmarking.peers.models import (
    PeerGroupClassification,
    PeerGroupCriteria,
    PeerGroupDefinition,
    PeerGroupMetrics,
    Range,
    ScoreDistribution,
    TransactionRecord,
    WalletMetrics,
)

__all__ = [
    "PeerGroupCatalog",
    "PeerGroupClassification",
    "PeerGroupClassifier",
    "PeerGroupCriteria",
    "PeerGroupDefinition",
    "PeerGroupMetrics",
    "Range",
    "ScoreDistribution",
    "TransactionRecord",
    "WalletMetrics",
]
