"""Input validation for addresses and peer group identifiers."""

from __future__ import annotations

import re

from peer_benchmarking.exceptions import ValidationError

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")
PEER_GROUP_ID_PATTERN = re.compile(r"^[a-z][a-z0-9_]{0,63}$")


def normalize_address(address: object) -> str:
    """Validate an EVM address and return it lowercased.

    Args:
        address: Candidate address value.

    Returns:
        The lowercased ``0x``-prefixed address.

    Raises:
        ValidationError: If the value is not a 20-byte hex address.
    """
    if not isinstance(address, str):
        raise ValidationError(f"Address must be a string, got {type(address).__name__}")
    candidate = address.strip()
    if not ADDRESS_PATTERN.match(candidate):
        raise ValidationError(f"Malformed address: {address!r}")
    return candidate.lower()


def validate_peer_group_id(peer_group_id: object) -> str:
    """Validate the shape of a peer group id (not its existence)."""
    if not isinstance(peer_group_id, str) or not PEER_GROUP_ID_PATTERN.match(peer_group_id):
        raise ValidationError(f"Malformed peer group id: {peer_group_id!r}")
    return peer_group_id
