import time
from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AliasChoices, AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import StartupConfigInvalid


DEFAULT_EXCLUDE_KEYWORDS = (
    "u17",
    "u18",
    "u19",
    "u21",
    "u23",
    "youth",
    "junior",
    "reserve",
    "b team",
    "women",
    "female",
    "ladies",
    "womens",
    "women's",
)


def _ensure_sqlalchemy_postgres_scheme(value: str) -> str:
    if not value.lower().startswith("postgres"):
        return value

    parsed = urlparse(value)
    scheme = parsed.scheme.lower()

    if scheme == "postgres":
        scheme = "postgresql"

    if scheme == "postgresql":
        scheme = "postgresql+psycopg"

    if scheme not in {"postgresql+psycopg", "postgresql+asyncpg"}:
        scheme = "postgresql+psycopg"

    query_params = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query_params.setdefault("target_session_attrs", "read-write")
    new_query = urlencode(query_params, doseq=True)

    return urlunparse(parsed._replace(scheme=scheme, query=new_query))


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


def _validate_hhmm(value: str, field_name: str) -> str:
    if len(value) != 5 or value[2] != ":":
        raise ValueError(f"{field_name} must be formatted as HH:MM")
    hours, minutes = value.split(":", 1)
    if not (hours.isdigit() and minutes.isdigit()):
        raise ValueError(f"{field_name} must contain numeric hour and minute")
    if not 0 <= int(hours) < 24 or not 0 <= int(minutes) < 60:
        raise ValueError(f"{field_name} hour must be 0-23 and minute 0-59")
    return value


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable FastAPI debug mode and SQL echo")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    timezone: str = Field(
        default="UTC",
        description="Process timezone; the engine refuses to start unless this is UTC",
        validation_alias=AliasChoices("timezone", "TZ"),
    )
    database_url: AnyUrl | str = Field(
        default="sqlite:///../data/oddyssey.db",
        description="SQLAlchemy compatible database URL",
    )
    store_statement_timeout_seconds: float = Field(
        default=15.0, description="Hard deadline for a single Store statement", gt=0
    )
    store_retry_attempts: int = Field(
        default=3,
        description="Number of attempts for a Store transaction hitting a conflict",
        ge=1,
    )
    store_retry_backoff_seconds: list[float] | tuple[float, ...] | str = Field(
        default_factory=lambda: [1.0, 2.0, 4.0],
        description="Comma-separated list or array of backoff delays (seconds) between Store retries",
    )

    # Sports provider
    sportmonks_api_token: str | None = Field(
        default=None, description="SportMonks API token passed as api_token"
    )
    sportmonks_base_url: AnyUrl = Field(
        default="https://api.sportmonks.com/v3/football",
        description="Base URL for the SportMonks football API",
    )
    provider_min_interval_seconds: float = Field(
        default=0.333,
        description="Minimum spacing between two provider requests",
        gt=0,
    )
    provider_max_retries: int = Field(
        default=3, description="Retries per provider request on transient failures", ge=0
    )
    provider_timeout_seconds: float = Field(
        default=30.0, description="Deadline for a single provider HTTP call", gt=0
    )
    provider_preferred_bookmakers: list[int] | str = Field(
        default_factory=lambda: [2, 28, 39, 35],
        description="Bookmaker ids tried first when choosing odds for a fixture",
    )
    provider_fixture_window_days: int = Field(
        default=7, description="Days of fixtures fetched ahead (today included)", ge=1
    )
    provider_results_batch_size: int = Field(
        default=25, description="Fixture ids per results ingestion batch", ge=1
    )
    league_exclude_keywords: list[str] | str = Field(
        default_factory=lambda: list(DEFAULT_EXCLUDE_KEYWORDS),
        description="Lower-case substrings that exclude a fixture by league or team name",
    )

    # Ledger
    rpc_url: AnyUrl | str | None = Field(default=None, description="JSON-RPC endpoint")
    oracle_private_key: str | None = Field(
        default=None, description="Signing key owned by the oracle bot"
    )
    chain_id: int = Field(default=50312, description="Chain id used when signing")
    oddyssey_contract_address: str | None = Field(
        default=None, description="Oddyssey contract address"
    )
    guided_oracle_contract_address: str | None = Field(
        default=None, description="Guided oracle contract address for fixture outcomes"
    )
    gas_price_ceiling_wei: int = Field(
        default=50_000_000_000,
        description="Upper bound applied to the network gas price for every write",
        gt=0,
    )
    gas_buffer_ratio: float = Field(
        default=0.10, description="Fraction added on top of estimated gas", ge=0
    )
    ledger_confirmations: int = Field(
        default=1, description="Confirmations awaited before a write succeeds", ge=1
    )
    ledger_write_timeout_seconds: float = Field(default=120.0, gt=0)
    ledger_read_timeout_seconds: float = Field(default=30.0, gt=0)
    ledger_max_attempts: int = Field(
        default=5, description="Attempts for a ledger write on transient RPC failures", ge=1
    )
    ledger_log_lookback_blocks: int = Field(
        default=50_000,
        description="How far back log scans reach when no cursor is stored",
        ge=1,
    )
    slip_index_chunk_blocks: int = Field(
        default=2_000, description="Blocks per SlipPlaced log query", ge=1
    )

    # Schedule
    cycle_open_time_utc: str = Field(
        default="00:05",
        description="Time of day (HH:MM UTC) after which today's cycle is opened",
    )
    cycle_open_retry_minutes: int = Field(
        default=60, description="Delay before retrying a failed cycle open", ge=1
    )
    lifecycle_interval_seconds: float = Field(default=60.0, gt=0)
    decider_interval_seconds: float = Field(default=60.0, gt=0)
    results_interval_seconds: float = Field(default=600.0, gt=0)
    oracle_interval_seconds: float = Field(default=60.0, gt=0)
    evaluator_interval_seconds: float = Field(default=120.0, gt=0)
    fixtures_interval_seconds: float = Field(default=21_600.0, gt=0)
    monitor_interval_seconds: float = Field(default=900.0, gt=0)
    slip_index_interval_seconds: float = Field(default=30.0, gt=0)
    shutdown_grace_seconds: float = Field(default=30.0, gt=0)

    # Settlement
    resolution_floor_minutes: int = Field(
        default=105, description="Minutes after the last kickoff before resolution is legal"
    )
    stale_kickoff_cancel_minutes: int = Field(
        default=120,
        description="Minutes a fixture may stay not-started past kickoff before it is cancelled locally",
    )
    guided_outcome_settle_minutes: int = Field(
        default=15, description="Minutes after full time before a guided outcome is submitted"
    )
    resolution_delay_alert_hours: float = Field(
        default=2.0, description="Hours past the resolution floor before the monitor alerts"
    )
    monitor_history_days: int = Field(
        default=7, description="Days of evaluated cycles the monitor re-checks", ge=1
    )
    evaluator_verify_sample_size: int = Field(
        default=10, description="Slips recomputed when re-running an evaluated cycle", ge=1
    )

    @field_validator("cycle_open_time_utc")
    @classmethod
    def _validate_open_time(cls, value: str) -> str:
        return _validate_hhmm(value, "cycle_open_time_utc")

    @field_validator("database_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value
        if value.startswith("postgres://"):
            return "postgresql://" + value[len("postgres://") :]
        return value

    @field_validator("provider_preferred_bookmakers", mode="before")
    @classmethod
    def _parse_bookmakers(cls, value: Any) -> list[int]:
        value = _split_csv(value)
        if value in (None, []):
            return []
        try:
            return [int(item) for item in value]
        except (TypeError, ValueError) as exc:
            raise ValueError("PROVIDER_PREFERRED_BOOKMAKERS entries must be integers") from exc

    @field_validator("league_exclude_keywords", mode="before")
    @classmethod
    def _parse_keywords(cls, value: Any) -> list[str]:
        value = _split_csv(value)
        if value is None:
            return list(DEFAULT_EXCLUDE_KEYWORDS)
        return [str(item).strip().lower() for item in value if str(item).strip()]

    @field_validator("store_retry_backoff_seconds", mode="before")
    @classmethod
    def _parse_retry_backoff(cls, value: Any) -> list[float]:
        if value in (None, "", []):
            return [1.0, 2.0, 4.0]
        value = _split_csv(value)
        if isinstance(value, (list, tuple)):
            backoff: list[float] = []
            for item in value:
                try:
                    delay = float(item)
                except (TypeError, ValueError) as exc:
                    raise ValueError("STORE_RETRY_BACKOFF_SECONDS entries must be numeric") from exc
                if delay < 0:
                    raise ValueError("STORE_RETRY_BACKOFF_SECONDS entries must not be negative")
                backoff.append(delay)
            if not backoff:
                raise ValueError("STORE_RETRY_BACKOFF_SECONDS must contain at least one value")
            return backoff
        raise ValueError(
            "STORE_RETRY_BACKOFF_SECONDS must be provided as a comma-separated string or list of numbers"
        )

    @property
    def resolved_database_url(self) -> str:
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))

    @property
    def store_retry_backoff_schedule(self) -> tuple[float, ...]:
        sequence = tuple(float(value) for value in self.store_retry_backoff_seconds)
        return sequence or (1.0,)

    @property
    def cycle_open_time(self) -> tuple[int, int]:
        hours, minutes = self.cycle_open_time_utc.split(":", 1)
        return int(hours), int(minutes)

    def validate_runtime(self, *, require_ledger: bool = True, require_provider: bool = True) -> None:
        """Refuse to run the engine with a configuration that cannot settle cycles."""

        problems: list[str] = []
        if self.timezone.upper() != "UTC":
            problems.append(f"TZ must be UTC (got {self.timezone!r})")
        if time.localtime().tm_gmtoff != 0:
            problems.append("process local time is not UTC; export TZ=UTC")
        if require_provider and not self.sportmonks_api_token:
            problems.append("SPORTMONKS_API_TOKEN is required")
        if require_ledger:
            if not self.rpc_url:
                problems.append("RPC_URL is required")
            if not self.oracle_private_key:
                problems.append("ORACLE_PRIVATE_KEY is required")
            if not self.oddyssey_contract_address:
                problems.append("ODDYSSEY_CONTRACT_ADDRESS is required")
        if problems:
            raise StartupConfigInvalid("; ".join(problems))


@lru_cache
def get_settings() -> Settings:
    return Settings()
