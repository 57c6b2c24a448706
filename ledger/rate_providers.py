from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
import http.client
import json
import time
from typing import Any, Callable, Protocol
from urllib.parse import urlencode
from urllib.request import Request, urlopen

import structlog

FRANKFURTER_URL = "https://api.frankfurter.app"
EXCHANGERATE_HOST_URL = "https://api.exchangerate.host"
DEFAULT_RETRIES = 3
DEFAULT_TIMEOUT_SECONDS = 8
BACKOFF_STEP_SECONDS = 0.5

logger = structlog.get_logger(__name__)


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot return a usable rate."""


class RateProvider(Protocol):
    def get_rate(self, source: str, target: str) -> Decimal:
        ...


def fetch_json(
    url: str,
    *,
    retries: int = DEFAULT_RETRIES,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
    opener: Callable[..., Any] | None = None,
) -> Any:
    """GET ``url`` and decode its JSON body.

    Network errors, non-2xx statuses, truncated reads and bodies that are not
    valid JSON (including undecodable bytes) are retried with a
    linear backoff of ``attempt * 0.5`` seconds. After the last attempt the
    failure surfaces as RateProviderUnavailable.
    """
    opener = opener or urlopen
    last_error: Exception | None = None
    for attempt in range(1, retries + 1):
        request = Request(url, headers={"Accept": "application/json"})
        try:
            with opener(request, timeout=timeout) as response:
                status = getattr(response, "status", 200)
                if not 200 <= status < 300:
                    raise RateProviderUnavailable(f"HTTP {status}")
                return json.load(response)
        except (OSError, ValueError, http.client.HTTPException, RateProviderUnavailable) as exc:
            last_error = exc
            logger.debug("rate_request_failed", url=url, attempt=attempt, error=str(exc))
            if attempt < retries:
                sleep(attempt * BACKOFF_STEP_SECONDS)
    raise RateProviderUnavailable(f"Rate request failed after {retries} attempts: {url}") from last_error


@dataclass
class FrankfurterRateProvider:
    """ECB reference rates; knows currencies only, not gold."""

    base_url: str = FRANKFURTER_URL
    retries: int = DEFAULT_RETRIES
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def get_rate(self, source: str, target: str) -> Decimal:
        normalized_source = normalize_currency(source)
        normalized_target = normalize_currency(target)
        if normalized_source == normalized_target:
            return Decimal("1")
        query = urlencode({"from": normalized_source, "to": normalized_target})
        payload = fetch_json(
            f"{self.base_url}/latest?{query}",
            retries=self.retries,
            timeout=self.timeout,
            sleep=self.sleep,
        )
        rates = payload.get("rates") if isinstance(payload, dict) else None
        value = rates.get(normalized_target) if isinstance(rates, dict) else None
        return _require_rate(
            value, f"Frankfurter rate missing for {normalized_source}->{normalized_target}"
        )


@dataclass
class ExchangeRateHostProvider:
    """Conversion endpoint that also understands the XAU gold code."""

    base_url: str = EXCHANGERATE_HOST_URL
    access_key: str | None = None
    retries: int = DEFAULT_RETRIES
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def get_rate(self, source: str, target: str) -> Decimal:
        normalized_source = normalize_currency(source)
        normalized_target = normalize_currency(target)
        if normalized_source == normalized_target:
            return Decimal("1")
        params = {"from": normalized_source, "to": normalized_target}
        if self.access_key:
            params["access_key"] = self.access_key
        payload = fetch_json(
            f"{self.base_url}/convert?{urlencode(params)}",
            retries=self.retries,
            timeout=self.timeout,
            sleep=self.sleep,
        )
        value = payload.get("result") if isinstance(payload, dict) else None
        return _require_rate(
            value, f"exchangerate.host rate missing for {normalized_source}->{normalized_target}"
        )


@dataclass(frozen=True)
class CompositeRateProvider:
    primary: RateProvider
    fallback: RateProvider

    def get_rate(self, source: str, target: str) -> Decimal:
        try:
            return self.primary.get_rate(source, target)
        except RateProviderUnavailable as exc:
            logger.info(
                "rate_provider_fallback",
                source=source,
                target=target,
                error=str(exc),
            )
            return self.fallback.get_rate(source, target)


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _require_rate(value: Any, message: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise RateProviderUnavailable(message)
    rate = Decimal(str(value))
    if not rate.is_finite() or rate <= 0:
        raise RateProviderUnavailable(message)
    return rate
