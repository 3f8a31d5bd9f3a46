"""Candidate ranking strategies.

Distance is the shipped behaviour: nearest first, ties broken by driver id
so the order is stable. The weighted strategy is an extension point for
callers that keep driver rating and acceptance statistics elsewhere.
"""

from collections.abc import Callable
from typing import NamedTuple, Protocol

from ridedispatch.geo.index import DriverLocation


class Candidate(NamedTuple):
    driver_id: str
    location: DriverLocation
    distance_km: float
    eta_seconds: int


class DriverStats(NamedTuple):
    rating: float
    acceptance_rate: float


class RankingStrategy(Protocol):
    def rank(self, candidates: list[Candidate]) -> list[Candidate]: ...


class DistanceRanking:
    """Ascending distance to pickup."""

    def rank(self, candidates: list[Candidate]) -> list[Candidate]:
        return sorted(candidates, key=lambda c: (c.distance_km, c.driver_id))


class WeightedRanking:
    """Composite score of normalized ETA, rating and acceptance rate; highest first."""

    def __init__(
        self,
        stats_lookup: Callable[[str], DriverStats | None],
        eta_weight: float = 0.5,
        rating_weight: float = 0.3,
        acceptance_weight: float = 0.2,
    ):
        weights_sum = eta_weight + rating_weight + acceptance_weight
        if not (0.99 <= weights_sum <= 1.01):
            raise ValueError(f"Ranking weights must sum to 1.0, got {weights_sum}")
        self._stats_lookup = stats_lookup
        self._eta_weight = eta_weight
        self._rating_weight = rating_weight
        self._acceptance_weight = acceptance_weight

    def rank(self, candidates: list[Candidate]) -> list[Candidate]:
        if not candidates:
            return []

        etas = [c.eta_seconds for c in candidates]
        min_eta, max_eta = min(etas), max(etas)

        scored = [(self._score(c, min_eta, max_eta), c) for c in candidates]
        scored.sort(key=lambda pair: (-pair[0], pair[1].distance_km, pair[1].driver_id))
        return [c for _, c in scored]

    def _score(self, candidate: Candidate, min_eta: int, max_eta: int) -> float:
        # Lower ETA is better, so invert
        if max_eta == min_eta:
            eta_normalized = 1.0
        else:
            eta_normalized = (max_eta - candidate.eta_seconds) / (max_eta - min_eta)

        # Drivers without stats get a neutral midpoint
        stats = self._stats_lookup(candidate.driver_id) or DriverStats(3.0, 0.5)
        rating_normalized = (stats.rating - 1.0) / 4.0

        return (
            eta_normalized * self._eta_weight
            + rating_normalized * self._rating_weight
            + stats.acceptance_rate * self._acceptance_weight
        )
