"""Domain models for fixtures, cycles and settlement."""

from .models import (
    CYCLE_SIZE,
    ODDS_SCALE,
    FixtureResultSnapshot,
    FrozenOdds,
    MatchEntry,
    NormalizedFixture,
    NormalizedOdds,
    Prediction,
    ResolutionArtifact,
    ResultPair,
    matches_from_data,
    to_thousandths,
)

__all__ = [
    "CYCLE_SIZE",
    "ODDS_SCALE",
    "FixtureResultSnapshot",
    "FrozenOdds",
    "MatchEntry",
    "NormalizedFixture",
    "NormalizedOdds",
    "Prediction",
    "ResolutionArtifact",
    "ResultPair",
    "matches_from_data",
    "to_thousandths",
]
