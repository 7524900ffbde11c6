"""Long-running engine: one asyncio ticker per component."""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from loguru import logger

from app.core.errors import StartupConfigInvalid

from .context import EngineContext


@dataclass(slots=True)
class Ticker:
    name: str
    tick: Callable[[], Any]
    interval: float
    wake: asyncio.Event | None = None


class OddysseyEngine:
    """Supervise the component tickers until SIGINT/SIGTERM.

    Ticks run on the engine's own thread pool so blocking Store, provider and
    ledger I/O never stalls the loop, and a tick stuck past the shutdown grace
    period does not hold up the exit. Each ticker recovers from its own failures; only
    ``StartupConfigInvalid`` stops the engine.
    """

    def __init__(self, context: EngineContext) -> None:
        self.context = context
        self._stop: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._resolution_ready: asyncio.Event | None = None
        self._cycle_resolved: asyncio.Event | None = None
        self._executor: ThreadPoolExecutor | None = None

    def _notify(self, event: asyncio.Event | None) -> None:
        # called from worker threads
        if event is not None and self._loop is not None:
            self._loop.call_soon_threadsafe(event.set)

    def _oracle_tick(self) -> Any:
        return self.context.require_oracle().run_once()

    def _lifecycle_tick(self) -> Any:
        return self.context.require_lifecycle().tick()

    def _slips_tick(self) -> Any:
        return self.context.require_slip_indexer().run_once()

    def build_tickers(self) -> list[Ticker]:
        settings = self.context.settings
        ctx = self.context
        return [
            Ticker("lifecycle", self._lifecycle_tick, settings.lifecycle_interval_seconds),
            Ticker("slips", self._slips_tick, settings.slip_index_interval_seconds),
            Ticker("fixtures", ctx.provider.fetch_7day_fixtures, settings.fixtures_interval_seconds),
            Ticker("results", ctx.results.run_once, settings.results_interval_seconds),
            Ticker("decider", ctx.decider.run_once, settings.decider_interval_seconds),
            Ticker("oracle", self._oracle_tick, settings.oracle_interval_seconds, self._resolution_ready),
            Ticker("evaluator", ctx.evaluator.run_once, settings.evaluator_interval_seconds, self._cycle_resolved),
            Ticker("monitor", ctx.monitor.check, settings.monitor_interval_seconds),
        ]

    async def _wait_next(self, ticker: Ticker) -> None:
        waiters = [asyncio.ensure_future(self._stop.wait())]
        if ticker.wake is not None:
            waiters.append(asyncio.ensure_future(ticker.wake.wait()))
        try:
            await asyncio.wait(waiters, timeout=ticker.interval, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
        if ticker.wake is not None:
            ticker.wake.clear()

    async def _run_ticker(self, ticker: Ticker) -> None:
        logger.info("Ticker {} started (every {}s)", ticker.name, ticker.interval)
        while not self._stop.is_set():
            try:
                await self._loop.run_in_executor(self._executor, ticker.tick)
            except StartupConfigInvalid:
                self._stop.set()
                raise
            except Exception:
                logger.exception("Ticker {} failed; retrying next tick", ticker.name)
            await self._wait_next(ticker)
        logger.info("Ticker {} stopped", ticker.name)

    def request_stop(self) -> None:
        if self._stop is not None and not self._stop.is_set():
            logger.info("Shutdown requested; draining tickers")
            self._stop.set()

    def _install_signal_handlers(self) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                self._loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                # not available on this platform or outside the main thread
                logger.debug("Signal handler for {} not installed", sig)

    async def run(self) -> None:
        self.context.settings.validate_runtime()
        self._loop = asyncio.get_running_loop()
        self._stop = asyncio.Event()
        self._resolution_ready = asyncio.Event()
        self._cycle_resolved = asyncio.Event()
        self.context.decider.on_ready = lambda _cycle_id: self._notify(self._resolution_ready)
        self.context.require_oracle().on_resolved = lambda _cycle_id: self._notify(self._cycle_resolved)
        self._install_signal_handlers()

        tickers = self.build_tickers()
        self._executor = ThreadPoolExecutor(max_workers=len(tickers), thread_name_prefix="oddyssey-tick")
        tasks = [asyncio.create_task(self._run_ticker(ticker), name=f"ticker-{ticker.name}") for ticker in tickers]
        logger.info("Oddyssey engine running with {} tickers", len(tasks))
        try:
            await self._stop.wait()
            grace = self.context.settings.shutdown_grace_seconds
            done, pending = await asyncio.wait(tasks, timeout=grace)
            for task in pending:
                logger.warning("Ticker {} did not finish within {}s; cancelling", task.get_name(), grace)
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        finally:
            # threads still inside a tick are abandoned; their I/O timeouts end them
            self._executor.shutdown(wait=False, cancel_futures=True)
        for task in done:
            if not task.cancelled() and isinstance(task.exception(), StartupConfigInvalid):
                raise task.exception()
        logger.info("Oddyssey engine stopped")


def run_engine(context: EngineContext) -> None:
    try:
        asyncio.run(OddysseyEngine(context).run())
    finally:
        context.close()


__all__ = ["OddysseyEngine", "Ticker", "run_engine"]
