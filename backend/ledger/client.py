"""Typed, retry-safe RPC client for the Oddyssey and guided oracle contracts."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Sequence

from eth_account import Account
from loguru import logger
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception
from web3.logs import DISCARD

from app.core.config import Settings
from app.core.errors import LedgerError, LedgerErrorKind
from app.domain import MatchEntry, ResolutionArtifact

from .abi import CYCLE_RESOLVED_SIGNATURE, GUIDED_ORACLE_ABI, ODDYSSEY_ABI, SLIP_PLACED_SIGNATURE
from .codec import artifact_to_ledger, matches_to_tuples

_NONCE_MARKERS = (
    "nonce too low",
    "nonce too high",
    "already known",
    "replacement transaction underpriced",
    "invalid nonce",
)
_FUNDS_MARKERS = ("insufficient funds",)
_REVERT_MARKERS = ("execution reverted", "revert")


class ChainCycleState(IntEnum):
    NOT_STARTED = 0
    ACTIVE = 1
    ENDED = 2
    RESOLVED = 3


@dataclass(slots=True, frozen=True)
class CycleChainStatus:
    exists: bool
    state: ChainCycleState
    end_time: int
    prize_pool: int
    slip_count: int
    has_winner: bool


@dataclass(slots=True, frozen=True)
class CycleCreation:
    cycle_id: int
    tx_hash: str


@dataclass(slots=True, frozen=True)
class SlipPlacedEvent:
    cycle_id: int
    player: str
    slip_id: int
    block_number: int
    tx_hash: str
    log_index: int


@dataclass(slots=True, frozen=True)
class LedgerSlip:
    slip_id: int
    player: str
    cycle_id: int
    placed_at: int
    predictions: tuple[tuple[bytes, int, bytes, int], ...]


def _error_message(exc: BaseException) -> str:
    if exc.args and isinstance(exc.args[0], dict):
        return str(exc.args[0].get("message") or exc.args[0])
    return str(exc)


def classify_error(exc: BaseException) -> LedgerError:
    """Map a web3/transport exception onto the closed ledger taxonomy.

    JSON-RPC nodes only report these conditions as text, so this is the single
    place where message contents are inspected.
    """

    if isinstance(exc, LedgerError):
        return exc
    if isinstance(exc, ContractLogicError):
        reason = getattr(exc, "message", None) or _error_message(exc)
        return LedgerError(LedgerErrorKind.REVERTED, reason=str(reason))
    if isinstance(exc, TimeExhausted):
        return LedgerError(LedgerErrorKind.TIMEOUT, _error_message(exc))
    if isinstance(exc, OSError):
        # requests' ConnectionError/Timeout derive from OSError
        return LedgerError(LedgerErrorKind.RPC_TRANSIENT, _error_message(exc))

    message = _error_message(exc)
    lowered = message.lower()
    if any(marker in lowered for marker in _NONCE_MARKERS):
        return LedgerError(LedgerErrorKind.NONCE_COLLISION, message)
    if any(marker in lowered for marker in _FUNDS_MARKERS):
        return LedgerError(LedgerErrorKind.INSUFFICIENT_FUNDS, message)
    if any(marker in lowered for marker in _REVERT_MARKERS):
        return LedgerError(LedgerErrorKind.REVERTED, message, reason=message)
    return LedgerError(LedgerErrorKind.RPC_TRANSIENT, message)


def _is_recoverable(exc: BaseException) -> bool:
    return isinstance(exc, LedgerError) and exc.recoverable


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "Ledger write failed ({}); attempt {} retrying in {:.1f}s",
        getattr(getattr(exc, "kind", None), "value", exc),
        state.attempt_number,
        state.next_action.sleep if state.next_action else 0.0,
    )


@dataclass(slots=True)
class _PendingTx:
    nonce: int
    raw: bytes
    tx_hash: str


class OddysseyLedgerClient:
    """Single-writer client for one signing key.

    Every write holds the key's lock from nonce assignment until the receipt is
    confirmed, so callers sharing the client are serialised and at most one
    transaction per key is outstanding.
    """

    def __init__(
        self,
        web3: Web3,
        *,
        private_key: str,
        oddyssey_address: str,
        guided_oracle_address: str | None = None,
        chain_id: int,
        gas_price_ceiling_wei: int,
        gas_buffer_ratio: float = 0.10,
        confirmations: int = 1,
        write_timeout: float = 120.0,
        max_attempts: int = 5,
        log_lookback_blocks: int = 50_000,
        poll_interval: float = 2.0,
        backoff_min_seconds: float = 1.0,
        backoff_max_seconds: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.w3 = web3
        self._private_key = private_key
        self.address = Account.from_key(private_key).address
        self._oddyssey = web3.eth.contract(address=Web3.to_checksum_address(oddyssey_address), abi=ODDYSSEY_ABI)
        self._guided = (
            web3.eth.contract(address=Web3.to_checksum_address(guided_oracle_address), abi=GUIDED_ORACLE_ABI)
            if guided_oracle_address
            else None
        )
        self._chain_id = chain_id
        self._gas_price_ceiling = gas_price_ceiling_wei
        self._gas_buffer_ratio = gas_buffer_ratio
        self._confirmations = confirmations
        self._write_timeout = write_timeout
        self._max_attempts = max_attempts
        self._log_lookback_blocks = log_lookback_blocks
        self._poll_interval = poll_interval
        self._backoff_min = backoff_min_seconds
        self._backoff_max = backoff_max_seconds
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_nonce: int | None = None

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "OddysseyLedgerClient":
        provider = Web3.HTTPProvider(
            str(settings.rpc_url),
            request_kwargs={"timeout": settings.ledger_read_timeout_seconds},
        )
        kwargs: dict[str, Any] = {
            "private_key": settings.oracle_private_key,
            "oddyssey_address": settings.oddyssey_contract_address,
            "guided_oracle_address": settings.guided_oracle_contract_address,
            "chain_id": settings.chain_id,
            "gas_price_ceiling_wei": settings.gas_price_ceiling_wei,
            "gas_buffer_ratio": settings.gas_buffer_ratio,
            "confirmations": settings.ledger_confirmations,
            "write_timeout": settings.ledger_write_timeout_seconds,
            "max_attempts": settings.ledger_max_attempts,
            "log_lookback_blocks": settings.ledger_log_lookback_blocks,
        }
        kwargs.update(overrides)
        return cls(Web3(provider), **kwargs)

    # ------------------------------------------------------------------
    # Writes

    def start_new_daily_cycle(self, matches: Sequence[MatchEntry]) -> CycleCreation:
        fn = self._oddyssey.functions.startDailyCycle(matches_to_tuples(matches))
        receipt = self._transact(fn, label="startDailyCycle")
        tx_hash = Web3.to_hex(receipt["transactionHash"])
        cycle_id = self._cycle_id_from_receipt(receipt)
        if cycle_id is None:
            cycle_id = self.current_cycle_id()
        logger.info("Ledger opened cycle {} in tx {}", cycle_id, tx_hash)
        return CycleCreation(cycle_id=cycle_id, tx_hash=tx_hash)

    def resolve_daily_cycle(self, cycle_id: int, artifact: ResolutionArtifact) -> str:
        fn = self._oddyssey.functions.resolveDailyCycle(int(cycle_id), artifact_to_ledger(artifact))
        receipt = self._transact(fn, label=f"resolveDailyCycle({cycle_id})")
        return Web3.to_hex(receipt["transactionHash"])

    def submit_guided_outcome(self, market_id: bytes, result: bytes) -> str:
        fn = self._guided_contract().functions.submitOutcome(market_id, result)
        receipt = self._transact(fn, label=f"submitOutcome({Web3.to_hex(market_id)})")
        return Web3.to_hex(receipt["transactionHash"])

    # ------------------------------------------------------------------
    # Reads

    def get_outcome(self, market_id: bytes) -> bytes | None:
        is_set, payload = self._read(self._guided_contract().functions.getOutcome(market_id))
        return bytes(payload) if is_set else None

    def get_cycle_status(self, cycle_id: int) -> CycleChainStatus:
        exists, state, end_time, prize_pool, slip_count, has_winner = self._read(
            self._oddyssey.functions.getCycleStatus(int(cycle_id))
        )
        return CycleChainStatus(
            exists=bool(exists),
            state=ChainCycleState(int(state)),
            end_time=int(end_time),
            prize_pool=int(prize_pool),
            slip_count=int(slip_count),
            has_winner=bool(has_winner),
        )

    def current_cycle_id(self) -> int:
        return int(self._read(self._oddyssey.functions.dailyCycleId()))

    def find_cycle_creation(self, tx_hash: str) -> CycleCreation | None:
        """Look up a startDailyCycle tx whose wait did not complete.

        Returns None while the tx is unknown or unmined, and raises ``reverted``
        when it mined but failed.
        """

        try:
            receipt = self._receipt_or_none(tx_hash)
        except (Web3Exception, ValueError, OSError) as exc:
            raise classify_error(exc) from exc
        if receipt is None:
            return None
        if int(receipt.get("status", 1)) != 1:
            raise LedgerError(LedgerErrorKind.REVERTED, reason=self._revert_reason(receipt), tx_hash=tx_hash)
        cycle_id = self._cycle_id_from_receipt(receipt)
        if cycle_id is None:
            cycle_id = self.current_cycle_id()
        return CycleCreation(cycle_id=cycle_id, tx_hash=Web3.to_hex(receipt["transactionHash"]))

    def find_resolution_tx(self, cycle_id: int) -> str | None:
        """Locate the tx that resolved ``cycle_id`` by scanning CycleResolved logs."""

        try:
            latest = int(self.w3.eth.block_number)
            logs = self.w3.eth.get_logs(
                {
                    "address": self._oddyssey.address,
                    "fromBlock": max(0, latest - self._log_lookback_blocks),
                    "toBlock": latest,
                    "topics": [
                        Web3.to_hex(Web3.keccak(text=CYCLE_RESOLVED_SIGNATURE)),
                        "0x" + int(cycle_id).to_bytes(32, "big").hex(),
                    ],
                }
            )
        except (Web3Exception, ValueError, OSError) as exc:
            raise classify_error(exc) from exc
        if not logs:
            return None
        return Web3.to_hex(logs[-1]["transactionHash"])

    def latest_block(self) -> int:
        try:
            return int(self.w3.eth.block_number)
        except (Web3Exception, ValueError, OSError) as exc:
            raise classify_error(exc) from exc

    def fetch_slip_events(self, from_block: int, to_block: int) -> list[SlipPlacedEvent]:
        """SlipPlaced logs in ``[from_block, to_block]``, in chain order."""

        try:
            logs = self.w3.eth.get_logs(
                {
                    "address": self._oddyssey.address,
                    "fromBlock": int(from_block),
                    "toBlock": int(to_block),
                    "topics": [Web3.to_hex(Web3.keccak(text=SLIP_PLACED_SIGNATURE))],
                }
            )
        except (Web3Exception, ValueError, OSError) as exc:
            raise classify_error(exc) from exc

        decoder = self._oddyssey.events.SlipPlaced()
        events = []
        for log in logs:
            entry = decoder.process_log(log)
            events.append(
                SlipPlacedEvent(
                    cycle_id=int(entry["args"]["cycleId"]),
                    player=str(entry["args"]["player"]),
                    slip_id=int(entry["args"]["slipId"]),
                    block_number=int(entry["blockNumber"]),
                    tx_hash=Web3.to_hex(entry["transactionHash"]),
                    log_index=int(entry["logIndex"]),
                )
            )
        events.sort(key=lambda event: (event.block_number, event.log_index))
        return events

    def get_slip(self, slip_id: int) -> LedgerSlip:
        player, cycle_id, placed_at, predictions, _score, _correct, _evaluated = self._read(
            self._oddyssey.functions.getSlip(int(slip_id))
        )
        return LedgerSlip(
            slip_id=int(slip_id),
            player=str(player),
            cycle_id=int(cycle_id),
            placed_at=int(placed_at),
            predictions=tuple(
                (bytes(match_id), int(bet_type), bytes(selection), int(odd))
                for match_id, bet_type, selection, odd in predictions
            ),
        )

    def _read(self, fn) -> Any:
        try:
            return fn.call()
        except (Web3Exception, ValueError, OSError) as exc:
            raise classify_error(exc) from exc

    def _guided_contract(self):
        if self._guided is None:
            raise LedgerError(LedgerErrorKind.REVERTED, reason="guided oracle address is not configured")
        return self._guided

    # ------------------------------------------------------------------
    # Transaction pipeline

    def _transact(self, fn, *, label: str) -> Any:
        with self._lock:
            state: dict[str, Any] = {"pending": None, "timeouts": 0}
            retrying = Retrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_exponential(multiplier=self._backoff_min, min=self._backoff_min, max=self._backoff_max),
                retry=retry_if_exception(_is_recoverable),
                before_sleep=_log_retry,
                sleep=self._sleep,
                reraise=True,
            )
            for attempt in retrying:
                with attempt:
                    return self._attempt(fn, label=label, state=state)
        raise AssertionError("unreachable")  # pragma: no cover

    def _attempt(self, fn, *, label: str, state: dict[str, Any]) -> Any:
        pending: _PendingTx | None = state["pending"]
        try:
            if pending is None:
                pending = self._sign_and_send(fn)
                state["pending"] = pending
                logger.info("{} submitted as {} (nonce {})", label, pending.tx_hash, pending.nonce)
            else:
                receipt = self._receipt_or_none(pending.tx_hash)
                if receipt is not None:
                    return self._finalize(receipt, label=label)
                # re-broadcast the identical signed tx under the same nonce
                self._rebroadcast(pending)
            receipt = self.w3.eth.wait_for_transaction_receipt(
                pending.tx_hash, timeout=self._write_timeout, poll_latency=self._poll_interval
            )
        except (Web3Exception, ValueError, OSError) as exc:
            error = classify_error(exc)
            if error.kind is LedgerErrorKind.NONCE_COLLISION:
                self._next_nonce = None
                state["pending"] = None
            elif error.kind is LedgerErrorKind.TIMEOUT:
                state["timeouts"] += 1
                if state["timeouts"] > 1:
                    error = LedgerError(LedgerErrorKind.RPC_TRANSIENT, str(error), tx_hash=error.tx_hash)
            if pending is not None and error.tx_hash is None:
                error.tx_hash = pending.tx_hash
            raise error from exc
        return self._finalize(receipt, label=label)

    def _reserve_nonce(self) -> int:
        if self._next_nonce is None:
            self._next_nonce = int(self.w3.eth.get_transaction_count(self.address, "pending"))
        return self._next_nonce

    def _gas_price(self) -> int:
        network_price = int(self.w3.eth.gas_price)
        return max(1, min(network_price, self._gas_price_ceiling))

    def _sign_and_send(self, fn) -> _PendingTx:
        nonce = self._reserve_nonce()
        tx = fn.build_transaction(
            {
                "from": self.address,
                "nonce": nonce,
                "chainId": self._chain_id,
                "gasPrice": self._gas_price(),
            }
        )
        gas_limit = int(tx.get("gas", 0) or 0)
        if gas_limit <= 0:
            gas_limit = int(self.w3.eth.estimate_gas(tx))
        tx["gas"] = max(21_000, int(gas_limit * (1 + self._gas_buffer_ratio)))

        signed = Account.sign_transaction(tx, self._private_key)
        raw_tx = getattr(signed, "raw_transaction", None) or getattr(signed, "rawTransaction", None)
        if raw_tx is None:
            raise LedgerError(LedgerErrorKind.RPC_TRANSIENT, "unable to access signed raw transaction")
        tx_hash = Web3.to_hex(self.w3.eth.send_raw_transaction(raw_tx))
        self._next_nonce = nonce + 1
        return _PendingTx(nonce=nonce, raw=bytes(raw_tx), tx_hash=tx_hash)

    def _rebroadcast(self, pending: _PendingTx) -> None:
        try:
            self.w3.eth.send_raw_transaction(pending.raw)
        except (Web3Exception, ValueError) as exc:
            error = classify_error(exc)
            if error.kind is LedgerErrorKind.NONCE_COLLISION and "already known" in str(error).lower():
                return
            if error.kind is LedgerErrorKind.NONCE_COLLISION:
                # the nonce was consumed; if not by us, the wait below times out
                # and the next attempt re-signs under a fresh nonce
                if self._receipt_or_none(pending.tx_hash) is not None:
                    return
            raise

    def _receipt_or_none(self, tx_hash: str) -> Any | None:
        try:
            return self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None

    def _finalize(self, receipt: Any, *, label: str) -> Any:
        tx_hash = Web3.to_hex(receipt["transactionHash"])
        if int(receipt.get("status", 1)) != 1:
            reason = self._revert_reason(receipt)
            logger.error("{} reverted in {}: {}", label, tx_hash, reason)
            raise LedgerError(LedgerErrorKind.REVERTED, reason=reason, tx_hash=tx_hash)
        self._await_confirmations(int(receipt["blockNumber"]), tx_hash)
        logger.info("{} confirmed in block {} ({})", label, receipt["blockNumber"], tx_hash)
        return receipt

    def _await_confirmations(self, block_number: int, tx_hash: str) -> None:
        target = block_number + self._confirmations - 1
        deadline = time.monotonic() + self._write_timeout
        while int(self.w3.eth.block_number) < target:
            if time.monotonic() >= deadline:
                raise LedgerError(
                    LedgerErrorKind.TIMEOUT, f"{tx_hash} not confirmed {self._confirmations} times", tx_hash=tx_hash
                )
            self._sleep(self._poll_interval)

    def _revert_reason(self, receipt: Any) -> str:
        try:
            tx = self.w3.eth.get_transaction(receipt["transactionHash"])
            self.w3.eth.call(
                {"from": tx["from"], "to": tx["to"], "data": tx["input"], "gas": tx["gas"]},
                receipt["blockNumber"],
            )
        except ContractLogicError as exc:
            return str(getattr(exc, "message", None) or _error_message(exc))
        except (Web3Exception, ValueError, OSError) as exc:
            logger.debug("Could not replay reverted tx: {}", exc)
        return "execution reverted"

    def _cycle_id_from_receipt(self, receipt: Any) -> int | None:
        events = self._oddyssey.events.CycleStarted().process_receipt(receipt, errors=DISCARD)
        for entry in events:
            return int(entry["args"]["cycleId"])
        return None


__all__ = [
    "ChainCycleState",
    "CycleChainStatus",
    "CycleCreation",
    "LedgerSlip",
    "OddysseyLedgerClient",
    "SlipPlacedEvent",
    "classify_error",
]
