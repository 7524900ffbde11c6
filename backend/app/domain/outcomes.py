"""Canonical outcome derivation for the two settled markets.

Everything here is pure: scores in, outcomes out. The ingestion pipeline, the
resolution decider and the slip evaluator all derive through these helpers so
stored outcomes and recomputed ones cannot disagree.
"""

from __future__ import annotations

from enum import Enum, IntEnum


class MoneylineResult(IntEnum):
    NOT_SET = 0
    HOME = 1
    DRAW = 2
    AWAY = 3


class OverUnderResult(IntEnum):
    NOT_SET = 0
    OVER = 1
    UNDER = 2


class BetType(str, Enum):
    MONEYLINE = "moneyline"
    OVER_UNDER = "over_under"


class Selection(str, Enum):
    HOME = "Home"
    DRAW = "Draw"
    AWAY = "Away"
    OVER = "Over"
    UNDER = "Under"


LEGAL_SELECTIONS: dict[BetType, frozenset[Selection]] = {
    BetType.MONEYLINE: frozenset({Selection.HOME, Selection.DRAW, Selection.AWAY}),
    BetType.OVER_UNDER: frozenset({Selection.OVER, Selection.UNDER}),
}

TERMINAL_STATUSES = frozenset({"FT", "AET", "PEN", "FT_PEN"})
CANCELLED_STATUSES = frozenset({"CANC", "POST", "CANCELLED", "POSTPONED"})
IN_PLAY_STATUSES = frozenset({"LIVE", "HT", "2H", "ET"})
PRE_MATCH_STATUSES = frozenset({"NS", "Fixture"})

OVER_UNDER_LINE = 2.5

_MONEYLINE_BY_SELECTION = {
    Selection.HOME: MoneylineResult.HOME,
    Selection.DRAW: MoneylineResult.DRAW,
    Selection.AWAY: MoneylineResult.AWAY,
}
_OVER_UNDER_BY_SELECTION = {
    Selection.OVER: OverUnderResult.OVER,
    Selection.UNDER: OverUnderResult.UNDER,
}

# UTF-8 payloads the guided oracle expects for fixture outcomes.
GUIDED_MONEYLINE_STRINGS = {
    MoneylineResult.HOME: "Home",
    MoneylineResult.DRAW: "Draw",
    MoneylineResult.AWAY: "Away",
}
GUIDED_OVER_UNDER_STRINGS = {
    OverUnderResult.OVER: "Over 2.5",
    OverUnderResult.UNDER: "Under 2.5",
}


def is_terminal(status: str | None) -> bool:
    return status in TERMINAL_STATUSES


def is_cancelled(status: str | None) -> bool:
    return status in CANCELLED_STATUSES


def is_pre_match(status: str | None) -> bool:
    return status in PRE_MATCH_STATUSES


def _require_scores(home: int | None, away: int | None) -> tuple[int, int]:
    # 0 is a real score; only None means the score is missing.
    if home is None or away is None:
        raise ValueError("both scores are required to derive an outcome")
    return int(home), int(away)


def derive_moneyline(home: int | None, away: int | None) -> MoneylineResult:
    h, a = _require_scores(home, away)
    if h > a:
        return MoneylineResult.HOME
    if a > h:
        return MoneylineResult.AWAY
    return MoneylineResult.DRAW


def derive_over_under(home: int | None, away: int | None) -> OverUnderResult:
    h, a = _require_scores(home, away)
    return OverUnderResult.OVER if h + a > OVER_UNDER_LINE else OverUnderResult.UNDER


def derive_outcomes(home: int | None, away: int | None) -> tuple[MoneylineResult, OverUnderResult]:
    return derive_moneyline(home, away), derive_over_under(home, away)


def moneyline_label(result: MoneylineResult) -> str | None:
    if result is MoneylineResult.NOT_SET:
        return None
    return {
        MoneylineResult.HOME: Selection.HOME.value,
        MoneylineResult.DRAW: Selection.DRAW.value,
        MoneylineResult.AWAY: Selection.AWAY.value,
    }[result]


def over_under_label(result: OverUnderResult) -> str | None:
    if result is OverUnderResult.NOT_SET:
        return None
    return Selection.OVER.value if result is OverUnderResult.OVER else Selection.UNDER.value


def moneyline_from_label(label: str | None) -> MoneylineResult:
    if not label:
        return MoneylineResult.NOT_SET
    return _MONEYLINE_BY_SELECTION[Selection(label)]


def over_under_from_label(label: str | None) -> OverUnderResult:
    if not label:
        return OverUnderResult.NOT_SET
    return _OVER_UNDER_BY_SELECTION[Selection(label)]


def is_legal_selection(bet_type: BetType, selection: Selection) -> bool:
    return selection in LEGAL_SELECTIONS[bet_type]


def selection_hits(
    bet_type: BetType,
    selection: Selection,
    moneyline: MoneylineResult,
    over_under: OverUnderResult,
) -> bool:
    """Return True when ``selection`` matches the settled outcome.

    A NotSet outcome never matches, so predictions on cancelled fixtures are misses.
    """

    if bet_type is BetType.MONEYLINE:
        if moneyline is MoneylineResult.NOT_SET:
            return False
        return _MONEYLINE_BY_SELECTION.get(selection) is moneyline
    if over_under is OverUnderResult.NOT_SET:
        return False
    return _OVER_UNDER_BY_SELECTION.get(selection) is over_under


__all__ = [
    "BetType",
    "CANCELLED_STATUSES",
    "GUIDED_MONEYLINE_STRINGS",
    "GUIDED_OVER_UNDER_STRINGS",
    "IN_PLAY_STATUSES",
    "LEGAL_SELECTIONS",
    "MoneylineResult",
    "OverUnderResult",
    "PRE_MATCH_STATUSES",
    "Selection",
    "TERMINAL_STATUSES",
    "derive_moneyline",
    "derive_outcomes",
    "derive_over_under",
    "is_cancelled",
    "is_legal_selection",
    "is_pre_match",
    "is_terminal",
    "moneyline_from_label",
    "moneyline_label",
    "over_under_from_label",
    "over_under_label",
    "selection_hits",
]
