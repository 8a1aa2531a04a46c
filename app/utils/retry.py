"""
Bounded retry with full-jitter exponential backoff.

`RetryPolicy` holds the attempt budget and delays for a family of calls and
hands out `backoff` decorators built from them: `on_exception` for calls
that fail by raising, `on_result` for calls that fail by returning a
retryable value. `HttpRetryClient` builds on it for plain HTTP (429 / 5xx /
network errors) and honours `Retry-After`.
"""
from __future__ import annotations

import logging
import time
from datetime import timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Type

import backoff
import requests

from app.utils.metrics import RunMetrics

log = logging.getLogger(__name__)


def parse_retry_after(value: str | None, now: float | None = None) -> float | None:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP-date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = now if now is not None else time.time()
    return max(0.0, when.timestamp() - current)


def retry_after_hint(failure) -> float | None:
    """Retry-After of the response behind a failed attempt (an HTTPError or a Response), if any."""
    response = failure if isinstance(failure, requests.Response) else getattr(failure, "response", None)
    if not isinstance(response, requests.Response):
        return None
    return parse_retry_after(response.headers.get("Retry-After"))


def expo_or_retry_after(base_delay: float, max_delay: float):
    """
    backoff wait generator: random(0, min(max_delay, base_delay * 2**(n-1)))
    for retry n, unless the failure sent in by backoff carries a Retry-After,
    which is used as-is (capped at max_delay).
    """
    ceilings = backoff.expo(base=2, factor=base_delay, max_value=max_delay)
    next(ceilings)  # advance past the generator's priming yield
    failure = yield
    while True:
        ceiling = next(ceilings)
        hinted = retry_after_hint(failure)
        if hinted is not None and hinted > 0:
            wait = min(hinted, max_delay)
        else:
            wait = backoff.full_jitter(min(ceiling, max_delay))
        failure = yield wait


class RetryPolicy:
    def __init__(
        self,
        max_attempts: int = 5,
        base_delay_ms: int = 500,
        max_delay_ms: int = 30_000,
        metrics: RunMetrics | None = None,
        on_giveup: Callable[[dict], None] | None = None,
    ) -> None:
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = max(0, base_delay_ms) / 1000
        self.max_delay = max(0, max_delay_ms) / 1000
        self.metrics = metrics if metrics is not None else RunMetrics()
        self.on_giveup = on_giveup

    def _backoff_handler(self, target: str):
        def handler(details: dict) -> None:
            self.metrics.record_retry()
            cause = details.get("exception", "retryable result")
            log.warning(
                f"{target} failed ({cause}); attempt {details['tries']}/{self.max_attempts}, "
                f"retrying after {details['wait']:.2f}s"
            )
        return handler

    def _giveup_handler(self, target: str, giveup: Callable[[Exception], bool] | None = None):
        def handler(details: dict) -> None:
            exc = details.get("exception")
            if exc is not None and giveup is not None and giveup(exc):
                return  # not retryable, nothing was exhausted
            log.error(f"{target} giving up after {details['tries']} attempt(s)")
            if self.on_giveup is not None:
                self.on_giveup({**details, "target": target})
        return handler

    def on_exception(
        self,
        exception: Type[Exception] | tuple,
        *,
        target: str,
        giveup: Callable[[Exception], bool] = lambda exc: False,
    ):
        """
        Decorator retrying `exception` (minus whatever `giveup` rejects) and
        re-raising it once attempts run out. Other exceptions propagate on
        the first attempt.
        """
        return backoff.on_exception(
            expo_or_retry_after,
            exception,
            max_tries=self.max_attempts,
            jitter=None,
            giveup=giveup,
            on_backoff=self._backoff_handler(target),
            on_giveup=self._giveup_handler(target, giveup),
            logger=None,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
        )

    def on_result(self, predicate: Callable[[object], bool], *, target: str):
        """Decorator retrying while `predicate(result)` holds; the last result is returned on exhaustion."""
        return backoff.on_predicate(
            expo_or_retry_after,
            predicate,
            max_tries=self.max_attempts,
            jitter=None,
            on_backoff=self._backoff_handler(target),
            on_giveup=self._giveup_handler(target),
            logger=None,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
        )


def is_retryable_status(response: requests.Response) -> bool:
    return response.status_code == 429 or 500 <= response.status_code < 600


class HttpRetryClient:
    """requests.Session wrapper: every attempt is counted, 429/5xx and network errors are retried."""

    def __init__(
        self,
        policy: RetryPolicy,
        session: requests.Session | None = None,
        timeout: float = 30,
    ) -> None:
        self.policy = policy
        self.session = session or requests.Session()
        self.timeout = timeout

    @property
    def metrics(self) -> RunMetrics:
        return self.policy.metrics

    def request(self, method: str, url: str, **kwargs) -> requests.Response:
        """Raises `requests.HTTPError` once a 429/5xx outlasts the attempt budget."""
        kwargs.setdefault("timeout", self.timeout)

        @self.policy.on_exception(requests.RequestException, target=f"request {method} {url}")
        def attempt() -> requests.Response:
            self.metrics.record_call()
            response = self.session.request(method, url, **kwargs)
            if is_retryable_status(response):
                response.raise_for_status()
            return response

        return attempt()

    def get_json(self, url: str, params: dict | None = None):
        response = self.request("GET", url, params=params)
        response.raise_for_status()
        return response.json()
