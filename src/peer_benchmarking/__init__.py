"""Peer-group benchmarking for blockchain addresses."""

__version__ = "0.1.0"
