"""Non-negative weight maps plus the math computed over them."""

from __future__ import annotations

import math
from collections.abc import Iterator, Mapping
from typing import Optional


class WeightMap(Mapping[str, float]):
    """Insertion-ordered ``key -> weight`` mapping whose weights never go below zero.

    All mutation goes through :meth:`add` and :meth:`set`; negative results are
    clamped to zero on ``add`` and rejected on ``set``.
    """

    __slots__ = ("_data",)

    def __init__(self, initial: Optional[Mapping[str, float]] = None):
        self._data: dict[str, float] = {}
        for key, value in (initial or {}).items():
            self.add(key, float(value))

    def __getitem__(self, key: str) -> float:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"WeightMap({self._data!r})"

    def add(self, key: str, delta: float) -> float:
        if not key:
            return 0.0
        value = max(0.0, self._data.get(key, 0.0) + float(delta))
        self._data[key] = value
        return value

    def set(self, key: str, value: float) -> None:
        if value < 0:
            raise ValueError(f"weight for {key!r} must be non-negative, got {value}")
        if key:
            self._data[key] = float(value)

    def total(self) -> float:
        return sum(self._data.values())

    def top(self, n: int) -> list[tuple[str, float]]:
        positive = [(k, v) for k, v in self._data.items() if v > 0]
        return sorted(positive, key=lambda kv: kv[1], reverse=True)[:n]

    def as_dict(self) -> dict[str, float]:
        return dict(self._data)


def shannon_diversity(weights: Mapping[str, float]) -> float:
    """Normalized Shannon entropy of a weight distribution, in [0, 1].

    Zero for empty or single-key distributions; 1.0 for a uniform one.
    """
    values = [v for v in weights.values() if v > 0]
    k = len(values)
    if k <= 1:
        return 0.0
    total = sum(values)
    entropy = -sum((v / total) * math.log2(v / total) for v in values)
    return min(1.0, max(0.0, entropy / math.log2(k)))


def cosine_similarity(a: Mapping[str, float], b: Mapping[str, float]) -> float:
    """Cosine similarity over the union of keys; 0 if either vector is zero."""
    keys = set(a) | set(b)
    dot = sum(a.get(k, 0.0) * b.get(k, 0.0) for k in keys)
    norm_a = math.sqrt(sum(v * v for v in a.values()))
    norm_b = math.sqrt(sum(v * v for v in b.values()))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    # rounded so identical vectors compare equal to exactly 1.0
    return min(1.0, max(0.0, round(dot / (norm_a * norm_b), 12)))


def jaccard(a: set[str], b: set[str]) -> float:
    if not a and not b:
        return 0.0
    return len(a & b) / len(a | b)
