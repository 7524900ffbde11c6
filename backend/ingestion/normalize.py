from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Sequence

from dateutil import parser as date_parser

from app.core.errors import ProviderError, ProviderErrorKind
from app.domain import FixtureResultSnapshot, NormalizedFixture, NormalizedOdds

MONEYLINE_MARKET_ID = 1
GOALS_OVER_UNDER_MARKET_ID = 80
OVER_UNDER_TOTAL = "2.5"

MONEYLINE_LABELS = ("Home", "Draw", "Away")
OVER_UNDER_LABELS = ("Over", "Under")

# SportMonks developer names folded onto the engine's closed status set.
_STATE_MAP = {
    "NS": "NS",
    "TBA": "NS",
    "PENDING": "NS",
    "DELAYED": "NS",
    "FIXTURE": "Fixture",
    "INPLAY_1ST_HALF": "LIVE",
    "LIVE": "LIVE",
    "1ST": "LIVE",
    "SUSPENDED": "LIVE",
    "INTERRUPTED": "LIVE",
    "HT": "HT",
    "BREAK": "HT",
    "INPLAY_2ND_HALF": "2H",
    "2ND": "2H",
    "2H": "2H",
    "INPLAY_ET": "ET",
    "EXTRA_TIME_BREAK": "ET",
    "INPLAY_PENALTIES": "ET",
    "PEN_BREAK": "ET",
    "ET": "ET",
    "FT": "FT",
    "AET": "AET",
    "PEN": "PEN",
    "FT_PEN": "FT_PEN",
    "CANC": "CANC",
    "CANCELLED": "CANCELLED",
    "ABANDONED": "CANC",
    "AWARDED": "CANC",
    "WO": "CANC",
    "DELETED": "CANC",
    "POST": "POST",
    "POSTPONED": "POSTPONED",
}

# Statuses whose 90-minute score is the sum of both halves, not CURRENT.
_EXTRA_TIME_STATUSES = {"AET", "PEN", "FT_PEN"}


def _malformed(message: str, fixture_id: int | None = None) -> ProviderError:
    return ProviderError(ProviderErrorKind.MALFORMED, message, fixture_id=fixture_id)


def _parse_datetime(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        parsed = date_parser.parse(str(value))
    except (ValueError, OverflowError):
        return None
    # SportMonks returns naive UTC timestamps
    return parsed.replace(tzinfo=timezone.utc) if parsed.tzinfo is None else parsed.astimezone(timezone.utc)


def _to_decimal(value: Any) -> Decimal | None:
    if value in (None, ""):
        return None
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return parsed if parsed.is_finite() and parsed > 0 else None


def _fixture_id(payload: dict[str, Any]) -> int:
    raw = payload.get("id")
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise _malformed(f"fixture id {raw!r} is not an integer") from exc


def normalize_status(payload: dict[str, Any]) -> str:
    state = payload.get("state")
    candidates: list[Any] = []
    if isinstance(state, dict):
        candidates.extend([state.get("developer_name"), state.get("state"), state.get("short_name")])
    candidates.append(payload.get("status"))
    for candidate in candidates:
        if not candidate:
            continue
        mapped = _STATE_MAP.get(str(candidate).strip().upper()) or _STATE_MAP.get(str(candidate).strip())
        if mapped:
            return mapped
    raise _malformed(f"unknown fixture state {candidates!r}", payload.get("id"))


def _participants(payload: dict[str, Any], fixture_id: int) -> tuple[str, str]:
    home = away = None
    for participant in payload.get("participants") or []:
        if not isinstance(participant, dict):
            continue
        location = (participant.get("meta") or {}).get("location")
        if location == "home":
            home = participant.get("name")
        elif location == "away":
            away = participant.get("name")
    if not home or not away:
        raise _malformed("fixture is missing home/away participants", fixture_id)
    return str(home), str(away)


def _league(payload: dict[str, Any]) -> tuple[int | None, str | None]:
    league = payload.get("league") if isinstance(payload.get("league"), dict) else {}
    raw_id = league.get("id", payload.get("league_id"))
    try:
        league_id = int(raw_id) if raw_id is not None else None
    except (TypeError, ValueError):
        league_id = None
    name = league.get("name")
    return league_id, str(name) if name else None


def _matches_total(odd: dict[str, Any], total: str) -> bool:
    for key in ("total", "name", "handicap"):
        raw = odd.get(key)
        if raw in (None, ""):
            continue
        try:
            if Decimal(str(raw)) == Decimal(total):
                return True
        except InvalidOperation:
            continue
    return False


def _label(odd: dict[str, Any]) -> str | None:
    label = odd.get("label") or odd.get("name")
    if not label:
        return None
    text = str(label).strip().capitalize()
    # some bookmakers label 1X2 selections 1/X/2
    return {"1": "Home", "X": "Draw", "2": "Away"}.get(text, text)


def select_odds(
    raw_odds: Iterable[Any],
    *,
    preferred_bookmakers: Sequence[int] = (),
) -> list[NormalizedOdds]:
    """Pick one complete bookmaker quote for each settled market.

    Preferred bookmakers are tried in order, then every other bookmaker by id. A
    bookmaker is only used for a market when it quotes every selection of it.
    """

    by_market: dict[int, dict[int, dict[str, dict[str, Any]]]] = defaultdict(lambda: defaultdict(dict))
    for odd in raw_odds:
        if not isinstance(odd, dict):
            continue
        try:
            market_id = int(odd.get("market_id"))
            bookmaker_id = int(odd.get("bookmaker_id") or 0)
        except (TypeError, ValueError):
            continue
        label = _label(odd)
        if market_id == MONEYLINE_MARKET_ID and label in MONEYLINE_LABELS:
            by_market[market_id][bookmaker_id][label] = odd
        elif (
            market_id == GOALS_OVER_UNDER_MARKET_ID
            and label in OVER_UNDER_LABELS
            and _matches_total(odd, OVER_UNDER_TOTAL)
        ):
            by_market[market_id][bookmaker_id][label] = odd

    selected: list[NormalizedOdds] = []
    for market_id, labels, total in (
        (MONEYLINE_MARKET_ID, MONEYLINE_LABELS, None),
        (GOALS_OVER_UNDER_MARKET_ID, OVER_UNDER_LABELS, OVER_UNDER_TOTAL),
    ):
        bookmakers = by_market.get(market_id, {})
        order = [bm for bm in preferred_bookmakers if bm in bookmakers]
        order.extend(sorted(bm for bm in bookmakers if bm not in order))
        for bookmaker_id in order:
            quotes = bookmakers[bookmaker_id]
            values = {label: _to_decimal((quotes.get(label) or {}).get("value")) for label in labels}
            if any(value is None for value in values.values()):
                continue
            for label in labels:
                raw = quotes[label]
                selected.append(
                    NormalizedOdds(
                        market_id=market_id,
                        label=label,
                        value=values[label],
                        total=total,
                        bookmaker_id=bookmaker_id or None,
                        updated_at=_parse_datetime(raw.get("latest_bookmaker_update")),
                    )
                )
            break
    return selected


def is_excluded(
    league_name: str | None, home_team: str | None, away_team: str | None, keywords: Iterable[str]
) -> bool:
    """True when the league or either team name matches a youth/women keyword."""

    haystacks = [value.lower() for value in (league_name, home_team, away_team) if value]
    for keyword in keywords:
        needle = keyword.lower()
        if any(needle in haystack for haystack in haystacks):
            return True
    return False


def normalize_fixture(
    payload: dict[str, Any], *, preferred_bookmakers: Sequence[int] = ()
) -> NormalizedFixture:
    if not isinstance(payload, dict):
        raise _malformed("fixture payload is not an object")
    fixture_id = _fixture_id(payload)
    home, away = _participants(payload, fixture_id)
    league_id, league_name = _league(payload)
    kickoff = _parse_datetime(payload.get("starting_at_timestamp")) or _parse_datetime(
        payload.get("starting_at")
    )
    if kickoff is None:
        raise _malformed("fixture has no kickoff time", fixture_id)

    return NormalizedFixture(
        fixture_id=fixture_id,
        home_team=home,
        away_team=away,
        league_id=league_id,
        league_name=league_name,
        kickoff_utc=kickoff,
        status=normalize_status(payload),
        odds=select_odds(payload.get("odds") or [], preferred_bookmakers=preferred_bookmakers),
        raw_data={
            key: payload.get(key)
            for key in ("id", "league_id", "season_id", "name", "starting_at", "result_info")
            if key in payload
        },
    )


def _score(scores: Iterable[Any], description: str, participant: str) -> int | None:
    for entry in scores:
        if not isinstance(entry, dict) or entry.get("description") != description:
            continue
        score = entry.get("score") or {}
        if score.get("participant") != participant:
            continue
        goals = score.get("goals")
        if goals is None:
            return None
        try:
            return int(goals)
        except (TypeError, ValueError):
            return None
    return None


def _sum_halves(first: int | None, second: int | None) -> int | None:
    if first is None or second is None:
        return None
    return first + second


def normalize_result(payload: dict[str, Any], *, observed_at: datetime) -> FixtureResultSnapshot:
    """Build a result snapshot from a single-fixture payload.

    ``observed_at`` stands in for the full-time instant, which the provider does
    not report, the first time a terminal status is seen.
    """

    if not isinstance(payload, dict):
        raise _malformed("fixture payload is not an object")
    fixture_id = _fixture_id(payload)
    status = normalize_status(payload)
    scores = [entry for entry in payload.get("scores") or [] if isinstance(entry, dict)]

    ht_home = _score(scores, "1ST_HALF", "home")
    ht_away = _score(scores, "1ST_HALF", "away")
    if status in _EXTRA_TIME_STATUSES:
        # markets settle on 90 minutes; CURRENT would include extra time
        home = _sum_halves(ht_home, _score(scores, "2ND_HALF", "home"))
        away = _sum_halves(ht_away, _score(scores, "2ND_HALF", "away"))
    else:
        home = _score(scores, "CURRENT", "home")
        away = _score(scores, "CURRENT", "away")
        if home is None or away is None:
            home = _sum_halves(ht_home, _score(scores, "2ND_HALF", "home"))
            away = _sum_halves(ht_away, _score(scores, "2ND_HALF", "away"))

    finished_at = None
    if status in {"FT", "AET", "PEN", "FT_PEN"}:
        finished_at = _parse_datetime(payload.get("ending_at")) or observed_at

    return FixtureResultSnapshot(
        fixture_id=fixture_id,
        status=status,
        home_score=home,
        away_score=away,
        ht_home=ht_home,
        ht_away=ht_away,
        finished_at=finished_at,
    )


__all__ = [
    "GOALS_OVER_UNDER_MARKET_ID",
    "MONEYLINE_MARKET_ID",
    "OVER_UNDER_TOTAL",
    "is_excluded",
    "normalize_fixture",
    "normalize_result",
    "normalize_status",
    "select_odds",
]
