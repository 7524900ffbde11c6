"""Closed error taxonomy shared by the provider adapter, ledger client and engine.

Raw library exceptions are classified once, where they are raised, into one of
the kinds below. Everything downstream branches on ``.kind``.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ProviderErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    NOT_FOUND = "not_found"
    MALFORMED = "malformed"
    AUTH = "auth"


class LedgerErrorKind(str, Enum):
    NONCE_COLLISION = "nonce_collision"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    REVERTED = "reverted"
    RPC_TRANSIENT = "rpc_transient"
    TIMEOUT = "timeout"


class EngineErrorKind(str, Enum):
    INSUFFICIENT_FIXTURES = "insufficient_fixtures"
    CYCLE_ALREADY_EXISTS = "cycle_already_exists"
    STORE_CONFLICT = "store_conflict"
    EVALUATOR_DATA_INTEGRITY = "evaluator_data_integrity"
    SLIP_REJECTED = "slip_rejected"
    INVALID_TRANSITION = "invalid_transition"
    NOT_FOUND = "not_found"
    STARTUP_CONFIG_INVALID = "startup_config_invalid"


class ProviderError(Exception):
    """Failure talking to the sports data provider."""

    def __init__(
        self,
        kind: ProviderErrorKind,
        message: str = "",
        *,
        status_code: int | None = None,
        fixture_id: int | None = None,
    ) -> None:
        super().__init__(message or kind.value)
        self.kind = kind
        self.status_code = status_code
        self.fixture_id = fixture_id

    @property
    def retryable(self) -> bool:
        return self.kind in {ProviderErrorKind.RATE_LIMITED, ProviderErrorKind.TRANSIENT}

    def __repr__(self) -> str:
        return f"ProviderError(kind={self.kind.value!r}, status_code={self.status_code!r})"


class LedgerError(Exception):
    """Failure submitting to or reading from the ledger contracts."""

    def __init__(
        self,
        kind: LedgerErrorKind,
        message: str = "",
        *,
        reason: str | None = None,
        tx_hash: str | None = None,
    ) -> None:
        super().__init__(message or reason or kind.value)
        self.kind = kind
        self.reason = reason
        self.tx_hash = tx_hash

    @property
    def recoverable(self) -> bool:
        return self.kind in {
            LedgerErrorKind.NONCE_COLLISION,
            LedgerErrorKind.RPC_TRANSIENT,
            LedgerErrorKind.TIMEOUT,
        }

    def __repr__(self) -> str:
        return f"LedgerError(kind={self.kind.value!r}, reason={self.reason!r})"


class EngineError(Exception):
    kind: EngineErrorKind = EngineErrorKind.INVALID_TRANSITION

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(message or self.kind.value)
        self.details = details


class InsufficientFixtures(EngineError):
    kind = EngineErrorKind.INSUFFICIENT_FIXTURES


class CycleAlreadyExists(EngineError):
    kind = EngineErrorKind.CYCLE_ALREADY_EXISTS


class StoreConflict(EngineError):
    kind = EngineErrorKind.STORE_CONFLICT


class EvaluatorDataIntegrity(EngineError):
    kind = EngineErrorKind.EVALUATOR_DATA_INTEGRITY


class SlipRejected(EngineError):
    kind = EngineErrorKind.SLIP_REJECTED


class InvalidTransition(EngineError):
    kind = EngineErrorKind.INVALID_TRANSITION


class NotFound(EngineError):
    kind = EngineErrorKind.NOT_FOUND


class StartupConfigInvalid(EngineError):
    kind = EngineErrorKind.STARTUP_CONFIG_INVALID


__all__ = [
    "CycleAlreadyExists",
    "EngineError",
    "EngineErrorKind",
    "EvaluatorDataIntegrity",
    "InsufficientFixtures",
    "InvalidTransition",
    "LedgerError",
    "LedgerErrorKind",
    "NotFound",
    "ProviderError",
    "ProviderErrorKind",
    "SlipRejected",
    "StartupConfigInvalid",
    "StoreConflict",
]
