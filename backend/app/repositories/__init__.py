"""Repository abstractions for database interactions."""

from .alert_repository import AlertRepository
from .cursor_repository import CursorRepository
from .cycle_repository import CycleRepository
from .fixture_repository import FixtureRepository
from .guided_market_repository import GuidedMarketRepository
from .slip_repository import SlipRepository

__all__ = [
    "AlertRepository",
    "CursorRepository",
    "CycleRepository",
    "FixtureRepository",
    "GuidedMarketRepository",
    "SlipRepository",
]
