from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.core.clock import Clock, SystemClock
from app.core.config import Settings
from app.core.errors import StartupConfigInvalid
from app.db import build_engine, build_session_factory, init_db
from app.services.alerts import AlertService
from ingestion.client import SportMonksClient
from ingestion.service import SportsProviderAdapter
from ledger.client import OddysseyLedgerClient

from .cycle_lifecycle import CycleLifecycleController
from .cycle_monitor import CycleMonitor
from .match_selector import MatchSelector
from .oracle_bot import OracleBot
from .resolution import ResolutionDecider
from .results_ingestion import ResultsIngestionPipeline
from .slip_evaluator import SlipEvaluator
from .slip_indexer import SlipIndexer
from .slip_intake import SlipIntake


def ledger_configured(settings: Settings) -> bool:
    return bool(settings.rpc_url and settings.oracle_private_key and settings.oddyssey_contract_address)


@dataclass(slots=True)
class EngineContext:
    """Every engine component, wired with explicit dependencies.

    ``ledger``, ``lifecycle``, ``oracle`` and ``slip_indexer`` are None when no ledger is
    configured, which is enough for the provider-only admin triggers.
    """

    settings: Settings
    clock: Clock
    engine: Engine
    session_factory: sessionmaker[Session]
    alerts: AlertService
    provider_client: SportMonksClient
    provider: SportsProviderAdapter
    selector: MatchSelector
    results: ResultsIngestionPipeline
    decider: ResolutionDecider
    intake: SlipIntake
    evaluator: SlipEvaluator
    monitor: CycleMonitor
    ledger: OddysseyLedgerClient | None = None
    lifecycle: CycleLifecycleController | None = None
    oracle: OracleBot | None = None
    slip_indexer: SlipIndexer | None = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        clock: Clock | None = None,
        engine: Engine | None = None,
        provider_client: SportMonksClient | None = None,
        ledger: OddysseyLedgerClient | None = None,
    ) -> "EngineContext":
        clock = clock or SystemClock()
        if engine is None:
            engine = build_engine(
                settings.resolved_database_url,
                echo=settings.debug,
                statement_timeout=settings.store_statement_timeout_seconds,
            )
        init_db(engine)
        session_factory = build_session_factory(engine)
        alerts = AlertService(session_factory, clock)

        provider_client = provider_client or SportMonksClient.from_settings(settings)
        provider = SportsProviderAdapter(
            provider_client,
            session_factory,
            settings,
            clock,
            on_malformed=lambda error: alerts.raise_alert(
                "provider_malformed",
                f"Dropped malformed provider record: {error}",
                details={"fixture_id": error.fixture_id},
                dedupe_key=f"provider_malformed:{error.fixture_id}:{clock.now().date()}",
            ),
        )
        if ledger is None and ledger_configured(settings):
            ledger = OddysseyLedgerClient.from_settings(settings)

        selector = MatchSelector(exclude_keywords=settings.league_exclude_keywords)
        results = ResultsIngestionPipeline(provider, session_factory, settings)
        context = cls(
            settings=settings,
            clock=clock,
            engine=engine,
            session_factory=session_factory,
            alerts=alerts,
            provider_client=provider_client,
            provider=provider,
            selector=selector,
            results=results,
            decider=ResolutionDecider(session_factory, results, settings, clock),
            intake=SlipIntake(session_factory, settings),
            evaluator=SlipEvaluator(session_factory, settings, clock, alerts=alerts),
            monitor=CycleMonitor(session_factory, settings, clock, alerts=alerts),
            ledger=ledger,
        )
        if ledger is not None:
            context.lifecycle = CycleLifecycleController(
                session_factory, selector, ledger, settings, clock, alerts=alerts
            )
            context.oracle = OracleBot(session_factory, ledger, settings, clock, alerts=alerts)
            context.slip_indexer = SlipIndexer(
                session_factory, ledger, context.intake, settings, clock, alerts=alerts
            )
        return context

    def require_lifecycle(self) -> CycleLifecycleController:
        if self.lifecycle is None:
            raise StartupConfigInvalid("RPC_URL, ORACLE_PRIVATE_KEY and ODDYSSEY_CONTRACT_ADDRESS are required")
        return self.lifecycle

    def require_oracle(self) -> OracleBot:
        if self.oracle is None:
            raise StartupConfigInvalid("RPC_URL, ORACLE_PRIVATE_KEY and ODDYSSEY_CONTRACT_ADDRESS are required")
        return self.oracle

    def require_slip_indexer(self) -> SlipIndexer:
        if self.slip_indexer is None:
            raise StartupConfigInvalid("RPC_URL, ORACLE_PRIVATE_KEY and ODDYSSEY_CONTRACT_ADDRESS are required")
        return self.slip_indexer

    def close(self) -> None:
        self.provider_client.close()
        self.engine.dispose()


__all__ = ["EngineContext", "ledger_configured"]
