"""
Deterministic PRNG (mulberry32).

Every random draw in a pipeline run goes through one of these, so a run is
fully determined by its seed as long as the call order stays fixed.
All arithmetic is done modulo 2**32 to match the 32-bit reference algorithm.
"""
from __future__ import annotations

import math
import random as _system_random
from typing import Sequence, TypeVar

T = TypeVar("T")

_MASK32 = 0xFFFFFFFF
_GOLDEN = 0x6D2B79F5
_TWO_32 = 4294967296

MAX_SEED = 2147483647


def _imul(a: int, b: int) -> int:
    return ((a & _MASK32) * (b & _MASK32)) & _MASK32


def generate_seed() -> int:
    """Fresh, non-deterministic seed for a new replay session."""
    return math.floor(_system_random.random() * MAX_SEED)


class PRNG:
    def __init__(self, seed: int):
        self._initial_seed = int(seed)
        self._state = self._initial_seed & _MASK32

    @property
    def seed(self) -> int:
        return self._initial_seed

    def _next(self) -> float:
        self._state = (self._state + _GOLDEN) & _MASK32
        t = self._state
        t = _imul(t ^ (t >> 15), t | 1)
        t ^= (t + _imul(t ^ (t >> 7), t | 61)) & _MASK32
        return ((t ^ (t >> 14)) & _MASK32) / _TWO_32

    def random(self) -> float:
        return self._next()

    def random_int(self, min_value: int, max_value: int) -> int:
        """Integer in [min_value, max_value], both inclusive."""
        return math.floor(self._next() * (max_value - min_value + 1)) + min_value

    def random_float(self, min_value: float, max_value: float) -> float:
        return self._next() * (max_value - min_value) + min_value

    def random_bool(self, probability: float = 0.5) -> bool:
        return self._next() < probability

    def pick(self, items: Sequence[T]) -> T:
        return items[math.floor(self._next() * len(items))]

    def shuffle(self, items: Sequence[T]) -> list[T]:
        """Fisher-Yates; returns a new list, input untouched."""
        result = list(items)
        for i in range(len(result) - 1, 0, -1):
            j = math.floor(self._next() * (i + 1))
            result[i], result[j] = result[j], result[i]
        return result

    def get_latency(self, min_ms: int, max_ms: int) -> int:
        # power < 1 pushes samples toward the low end of the range
        skewed = self._next() ** 0.8
        return math.floor(min_ms + skewed * (max_ms - min_ms) + 0.5)

    def generate_correlation_id(self) -> str:
        chars = "0123456789abcdef"
        out = []
        for i in range(32):
            if i in (8, 12, 16, 20):
                out.append("-")
            out.append(chars[math.floor(self._next() * 16)])
        return "".join(out)

    def get_risk_score(self, base_risk: float, variance: float = 15) -> float:
        adjustment = (self._next() - 0.5) * 2 * variance
        return max(0.0, min(100.0, base_risk + adjustment))

    def get_decline_probability(self, risk_score: float) -> float:
        base = risk_score / 100
        variance = self._next() * 0.1 - 0.05
        return max(0.0, min(1.0, base * 0.8 + variance))

    def simulate_auth_result(self, decline_probability: float) -> bool:
        return self._next() > decline_probability

    def reset(self) -> None:
        """Rewind to the initial seed for replay."""
        self._state = self._initial_seed & _MASK32
