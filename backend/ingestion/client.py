from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from datetime import date
from typing import Any

import httpx
from loguru import logger
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from app.core.config import Settings
from app.core.errors import ProviderError, ProviderErrorKind

from .rate_limiter import BucketConfig, TokenBucket

FIXTURE_LIST_INCLUDES = "league;participants;state;odds"
FIXTURE_RESULT_INCLUDES = "scores;participants;state;league"
# 1 = full-time result (1X2), 80 = goals over/under
ODDS_MARKET_FILTER = "markets:1,80"


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "SportMonks request failed ({}); retry {} in {:.1f}s",
        getattr(getattr(exc, "kind", None), "value", exc),
        state.attempt_number,
        state.next_action.sleep if state.next_action else 0.0,
    )


def classify_status(status_code: int) -> ProviderErrorKind | None:
    if status_code in (401, 403):
        return ProviderErrorKind.AUTH
    if status_code == 404:
        return ProviderErrorKind.NOT_FOUND
    if status_code == 429:
        return ProviderErrorKind.RATE_LIMITED
    if status_code >= 500:
        return ProviderErrorKind.TRANSIENT
    if status_code >= 400:
        return ProviderErrorKind.MALFORMED
    return None


class SportMonksClient:
    """Thin wrapper around the SportMonks football endpoints used by the engine."""

    def __init__(
        self,
        *,
        api_token: str,
        base_url: str = "https://api.sportmonks.com/v3/football",
        timeout: float = 30.0,
        min_interval_seconds: float = 0.333,
        max_retries: int = 3,
        backoff_min_seconds: float = 1.0,
        backoff_max_seconds: float = 16.0,
        page_size: int = 50,
        limiter: TokenBucket | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.page_size = page_size
        self._backoff_min = backoff_min_seconds
        self._backoff_max = backoff_max_seconds
        self._sleep = sleep
        self._limiter = limiter or TokenBucket(
            BucketConfig.from_interval(min_interval_seconds, name="sportmonks")
        )
        self.client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "SportMonksClient":
        kwargs: dict[str, Any] = {
            "api_token": settings.sportmonks_api_token or "",
            "base_url": str(settings.sportmonks_base_url),
            "timeout": settings.provider_timeout_seconds,
            "min_interval_seconds": settings.provider_min_interval_seconds,
            "max_retries": settings.provider_max_retries,
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    def _send(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        self._limiter.acquire()
        query = {"api_token": self.api_token, **params}
        logger.debug("SportMonks GET {} params={}", path, params)
        try:
            response = self.client.get(path, params=query)
        except httpx.TransportError as exc:
            # covers timeouts, connection resets and DNS failures
            raise ProviderError(ProviderErrorKind.TRANSIENT, f"{path}: {exc.__class__.__name__}") from exc

        kind = classify_status(response.status_code)
        if kind is not None:
            raise ProviderError(kind, f"{path}: HTTP {response.status_code}", status_code=response.status_code)

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(ProviderErrorKind.MALFORMED, f"{path}: body is not JSON") from exc
        if not isinstance(payload, dict):
            raise ProviderError(ProviderErrorKind.MALFORMED, f"{path}: unexpected payload type")
        return payload

    def request(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self._backoff_min, min=self._backoff_min, max=self._backoff_max),
            retry=retry_if_exception(_is_retryable),
            before_sleep=_log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                return self._send(path, dict(params or {}))
        raise AssertionError("unreachable")  # pragma: no cover

    def iter_fixtures_by_date(self, day: date) -> Iterator[dict[str, Any]]:
        page = 1
        while True:
            payload = self.request(
                f"/fixtures/date/{day.isoformat()}",
                {
                    "include": FIXTURE_LIST_INCLUDES,
                    "filters": ODDS_MARKET_FILTER,
                    "per_page": self.page_size,
                    "page": page,
                },
            )
            data = payload.get("data") or []
            if not isinstance(data, list):
                raise ProviderError(ProviderErrorKind.MALFORMED, f"fixtures for {day}: data is not a list")
            yield from data

            pagination = payload.get("pagination") or {}
            if not pagination.get("has_more"):
                break
            page += 1

    def fetch_fixture(self, fixture_id: int) -> dict[str, Any]:
        try:
            payload = self.request(f"/fixtures/{fixture_id}", {"include": FIXTURE_RESULT_INCLUDES})
        except ProviderError as exc:
            exc.fixture_id = fixture_id
            raise
        data = payload.get("data")
        if data is None:
            raise ProviderError(ProviderErrorKind.NOT_FOUND, f"fixture {fixture_id} not found", fixture_id=fixture_id)
        if not isinstance(data, dict):
            raise ProviderError(
                ProviderErrorKind.MALFORMED, f"fixture {fixture_id}: data is not an object", fixture_id=fixture_id
            )
        return data

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "SportMonksClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


__all__ = ["SportMonksClient", "classify_status"]
