"""
SCRATCHWORKS - Base RMG Math Engine

Abstract base for instant-win math models: theoretical house edge plus a
seeded Monte Carlo run to confirm it.
"""

import copy
import math
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class SimResult:
    """Simulation results for an instant-win game."""
    game_type: str
    rounds: int
    house_edge_theoretical: float
    house_edge_measured: float
    avg_multiplier: float
    max_multiplier_hit: float
    hit_rate: float  # fraction of rounds that returned > 0
    total_wagered: float
    total_returned: float
    rtp: float  # 1 - house_edge_measured
    confidence_95: tuple = (0.0, 0.0)
    distribution: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "game_type": self.game_type,
            "rounds": self.rounds,
            "house_edge_theoretical": round(self.house_edge_theoretical, 6),
            "house_edge_measured": round(self.house_edge_measured, 6),
            "rtp": round(self.rtp, 4),
            "avg_multiplier": round(self.avg_multiplier, 4),
            "max_multiplier_hit": round(self.max_multiplier_hit, 2),
            "hit_rate": round(self.hit_rate, 4),
            "total_wagered": round(self.total_wagered, 2),
            "total_returned": round(self.total_returned, 2),
            "confidence_95": [round(x, 6) for x in self.confidence_95],
            "distribution": self.distribution,
        }


def _bucket(mult: float) -> str:
    if mult == 0:
        return "0x"
    if mult < 2:
        return "0-2x"
    if mult < 5:
        return "2-5x"
    if mult < 10:
        return "5-10x"
    if mult < 50:
        return "10-50x"
    if mult < 100:
        return "50-100x"
    return "100x+"


class BaseRMGEngine(ABC):
    """Abstract base for instant-win math models."""

    game_type: str = "base"

    @abstractmethod
    def compute_house_edge(self, config: dict) -> float:
        """Compute the theoretical house edge for a config."""
        ...

    @abstractmethod
    def simulate_round(self, config: dict, rng) -> float:
        """Simulate one round. Returns multiplier of the stake (0 = loss).

        May mutate `config`; simulate() hands it a private copy."""
        ...

    def simulate(self, config: dict, rounds: int = 100_000, seed: int = 42) -> SimResult:
        """Run a seeded Monte Carlo simulation."""
        rng = random.Random(seed)
        state = copy.deepcopy(config)

        total_returned = 0.0
        wins = 0
        max_mult = 0.0
        buckets = {}
        # Welford running variance of the multiplier
        mean = 0.0
        m2 = 0.0

        for i in range(1, rounds + 1):
            mult = self.simulate_round(state, rng)
            total_returned += mult
            if mult > 0:
                wins += 1
            if mult > max_mult:
                max_mult = mult
            delta = mult - mean
            mean += delta / i
            m2 += delta * (mult - mean)
            bucket = _bucket(mult)
            buckets[bucket] = buckets.get(bucket, 0) + 1

        total_wagered = float(rounds)
        rtp = total_returned / total_wagered if rounds else 0.0
        he_measured = 1 - rtp
        variance = m2 / rounds if rounds else 0.0
        std_err = math.sqrt(variance / rounds) if rounds else 0.0
        ci = (he_measured - 1.96 * std_err, he_measured + 1.96 * std_err)

        return SimResult(
            game_type=self.game_type,
            rounds=rounds,
            house_edge_theoretical=self.compute_house_edge(config),
            house_edge_measured=he_measured,
            avg_multiplier=total_returned / rounds if rounds else 0.0,
            max_multiplier_hit=max_mult,
            hit_rate=wins / rounds if rounds else 0.0,
            total_wagered=total_wagered,
            total_returned=total_returned,
            rtp=rtp,
            confidence_95=ci,
            distribution={k: round(v / rounds, 4) for k, v in sorted(buckets.items())},
        )
