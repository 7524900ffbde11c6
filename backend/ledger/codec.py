"""Conversions between domain values and the tuples the contracts accept."""

from __future__ import annotations

import re
from typing import Any, Sequence

from web3 import Web3

from app.domain import MatchEntry, Prediction, ResolutionArtifact, ResultPair
from app.domain.outcomes import (
    GUIDED_MONEYLINE_STRINGS,
    GUIDED_OVER_UNDER_STRINGS,
    BetType,
    MoneylineResult,
    OverUnderResult,
    Selection,
    moneyline_from_label,
    over_under_from_label,
)
from app.models import GuidedMarketKind

_BYTES32_HEX = re.compile(r"^0x[0-9a-fA-F]{64}$")
_GUIDED_OUTCOMES = frozenset(GUIDED_MONEYLINE_STRINGS.values()) | frozenset(GUIDED_OVER_UNDER_STRINGS.values())

# Slips store each selection as keccak(utf8(code)).
_SELECTION_CODES = {
    Selection.HOME: "1",
    Selection.DRAW: "X",
    Selection.AWAY: "2",
    Selection.OVER: "Over",
    Selection.UNDER: "Under",
}
_SELECTIONS_BY_HASH = {bytes(Web3.keccak(text=code)): selection for selection, code in _SELECTION_CODES.items()}
_BET_TYPES = {0: BetType.MONEYLINE, 1: BetType.OVER_UNDER}


def fixture_id_to_bytes32(fixture_id: int) -> bytes:
    return bytes(Web3.keccak(text=str(int(fixture_id))))


def match_to_tuple(match: MatchEntry) -> tuple[bytes, int, int, int, int, int, int]:
    odds = match.odds
    return (
        fixture_id_to_bytes32(match.fixture_id),
        int(match.kickoff_utc.timestamp()),
        odds.home,
        odds.draw,
        odds.away,
        odds.over,
        odds.under,
    )


def matches_to_tuples(matches: Sequence[MatchEntry]) -> list[tuple]:
    return [match_to_tuple(match) for match in matches]


def artifact_to_ledger(artifact: ResolutionArtifact) -> list[tuple[int, int]]:
    return [(int(pair.moneyline), int(pair.over_under)) for pair in artifact.results]


def artifact_from_ledger(rows: Sequence[Sequence[int]]) -> ResolutionArtifact:
    return ResolutionArtifact(
        tuple(ResultPair(MoneylineResult(int(row[0])), OverUnderResult(int(row[1]))) for row in rows)
    )


def selection_to_bytes32(selection: Selection) -> bytes:
    return bytes(Web3.keccak(text=_SELECTION_CODES[selection]))


def prediction_to_tuple(prediction: Prediction) -> tuple[bytes, int, bytes, int]:
    bet_type = next(code for code, value in _BET_TYPES.items() if value is prediction.bet_type)
    return (
        fixture_id_to_bytes32(prediction.fixture_id),
        bet_type,
        selection_to_bytes32(prediction.selection),
        int(prediction.selected_odd),
    )


def predictions_from_ledger(rows: Sequence[Sequence[Any]], fixture_ids: Sequence[int]) -> list[Prediction]:
    """Decode a slip's prediction tuples against the fixtures of its cycle.

    Raises ValueError for a match id, bet type or selection hash that does not
    belong to the cycle.
    """

    by_match_id = {fixture_id_to_bytes32(fixture_id): int(fixture_id) for fixture_id in fixture_ids}
    predictions = []
    for index, row in enumerate(rows):
        match_id, bet_type, selection, selected_odd = row
        fixture_id = by_match_id.get(bytes(match_id))
        if fixture_id is None:
            raise ValueError(f"prediction {index} names a match outside the cycle")
        if int(bet_type) not in _BET_TYPES:
            raise ValueError(f"prediction {index} has unknown bet type {bet_type}")
        decoded = _SELECTIONS_BY_HASH.get(bytes(selection))
        if decoded is None:
            raise ValueError(f"prediction {index} has an unknown selection hash")
        predictions.append(
            Prediction(
                fixture_id=fixture_id,
                bet_type=_BET_TYPES[int(bet_type)],
                selection=decoded,
                selected_odd=int(selected_odd),
            )
        )
    return predictions


def guided_market_id(market_id: str) -> bytes:
    """Accept a 0x-prefixed bytes32 as-is; hash any other identifier."""

    if _BYTES32_HEX.match(market_id):
        return bytes.fromhex(market_id[2:])
    return bytes(Web3.keccak(text=market_id))


def guided_outcome_string(
    kind: GuidedMarketKind, outcome_1x2: str | None, outcome_ou25: str | None
) -> str | None:
    if kind is GuidedMarketKind.MONEYLINE:
        result = moneyline_from_label(outcome_1x2)
        return None if result is MoneylineResult.NOT_SET else GUIDED_MONEYLINE_STRINGS[result]
    result = over_under_from_label(outcome_ou25)
    return None if result is OverUnderResult.NOT_SET else GUIDED_OVER_UNDER_STRINGS[result]


def encode_guided_outcome(outcome: str) -> bytes:
    if outcome not in _GUIDED_OUTCOMES:
        raise ValueError(f"unsupported guided outcome {outcome!r}")
    return outcome.encode("utf-8")


def decode_guided_outcome(payload: bytes) -> str:
    return payload.decode("utf-8")


__all__ = [
    "artifact_from_ledger",
    "artifact_to_ledger",
    "decode_guided_outcome",
    "encode_guided_outcome",
    "fixture_id_to_bytes32",
    "guided_market_id",
    "guided_outcome_string",
    "match_to_tuple",
    "matches_to_tuples",
    "prediction_to_tuple",
    "predictions_from_ledger",
    "selection_to_bytes32",
]
