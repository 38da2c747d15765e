"""Per-card bloom filters for fast "may this card contain term X" checks.

The map is an in-memory pre-filter only. It is never persisted and is rebuilt
whenever the index is rebuilt.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any


logger = logging.getLogger(__name__)

DEFAULT_BLOOM_BITS = 256
DEFAULT_BLOOM_HASHES = 3


def bloom_positions(item: str, bit_size: int, hash_count: int) -> list[int]:
    """Compute bloom filter bit positions for an item."""
    return [int(hashlib.md5(f"{item}{seed}".encode()).hexdigest(), 16) % bit_size for seed in range(hash_count)]


class CardBloomMap:
    """Fixed-size bloom filter per card id.

    ``may_contain`` never returns a false negative for a term passed to ``add``.
    A card without a filter cannot be ruled out, so it reports True.
    """

    def __init__(self, bit_size: int = DEFAULT_BLOOM_BITS, hash_count: int = DEFAULT_BLOOM_HASHES) -> None:
        if bit_size <= 0 or bit_size % 8:
            raise ValueError(f"bit_size must be a positive multiple of 8, got {bit_size}")
        if hash_count <= 0:
            raise ValueError(f"hash_count must be positive, got {hash_count}")
        self.bit_size = bit_size
        self.hash_count = hash_count
        self._filters: dict[str, bytearray] = {}

    def __contains__(self, card_id: str) -> bool:
        return card_id in self._filters

    def __len__(self) -> int:
        return len(self._filters)

    def add(self, card_id: str, term: str) -> None:
        """Set the bits of ``term`` in the filter of ``card_id``."""
        bits = self._filters.get(card_id)
        if bits is None:
            bits = self._filters[card_id] = bytearray(self.bit_size // 8)
        for bit_index in bloom_positions(term, self.bit_size, self.hash_count):
            bits[bit_index // 8] |= 1 << (bit_index % 8)

    def add_terms(self, card_id: str, terms: list[str] | set[str]) -> None:
        for term in terms:
            self.add(card_id, term)

    def may_contain(self, card_id: str, term: str) -> bool:
        """Check if the card might contain the term (no false negatives)."""
        bits = self._filters.get(card_id)
        if bits is None:
            return True
        for bit_index in bloom_positions(term, self.bit_size, self.hash_count):
            if not bits[bit_index // 8] & (1 << (bit_index % 8)):
                return False  # Definitely not in card
        return True

    def reset(self, card_id: str) -> None:
        """Start an empty filter for ``card_id`` (used before re-indexing it)."""
        self._filters[card_id] = bytearray(self.bit_size // 8)

    def discard(self, card_id: str) -> None:
        self._filters.pop(card_id, None)

    def clear(self) -> None:
        self._filters.clear()

    def stats(self) -> dict[str, Any]:
        """Get bloom map statistics."""
        return {
            "bit_size": self.bit_size,
            "hash_count": self.hash_count,
            "card_count": len(self._filters),
            "memory_bytes": len(self._filters) * (self.bit_size // 8),
        }
