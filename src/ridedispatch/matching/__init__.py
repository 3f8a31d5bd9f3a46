from .engine import (
    AcceptCheck,
    AcceptRefusal,
    AcceptResult,
    DeclineResult,
    DispatchOutcome,
    DispatchResult,
    ExpiryResult,
    MatchingEngine,
)
from .ranking import Candidate, DistanceRanking, DriverStats, RankingStrategy, WeightedRanking

__all__ = [
    "AcceptCheck",
    "AcceptRefusal",
    "AcceptResult",
    "Candidate",
    "DeclineResult",
    "DispatchOutcome",
    "DispatchResult",
    "DistanceRanking",
    "DriverStats",
    "ExpiryResult",
    "MatchingEngine",
    "RankingStrategy",
    "WeightedRanking",
]
