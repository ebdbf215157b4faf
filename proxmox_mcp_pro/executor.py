from __future__ import annotations

import logging
import random
import time
from typing import TYPE_CHECKING, Any, Callable

import requests

from .classifier import classify_response, classify_transport
from .config import ProxmoxConfig
from .errors import ProxmoxError
from .normalizer import normalize
from .ratelimit import SlidingWindowRateLimiter

if TYPE_CHECKING:
    from .proxmox_client import Endpoint

logger = logging.getLogger(__name__)

MAX_RETRY_DELAY_S = 30.0
JITTER_RATIO = 0.3

Transport = Callable[["Endpoint"], requests.Response]


class RetryingExecutor:
    """
    Runs one logical API call: rate-limit, send, classify, retry or fail.

    Authentication and permission failures propagate on first occurrence.
    Every other failure is retried with exponential backoff and jitter until
    ``retry_attempts`` attempts have been made, after which a connection error
    wrapping the last failure is raised.
    """

    def __init__(
        self,
        cfg: ProxmoxConfig,
        limiter: SlidingWindowRateLimiter,
        transport: Transport,
        *,
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[], float] = random.random,
    ):
        self._limiter = limiter
        self._transport = transport
        self._sleep = sleep
        self._rand = rand
        # A budget of zero still means the call is made once.
        self.max_attempts = max(1, cfg.retry_attempts)
        self.base_delay = cfg.retry_delay_s

    def retry_delay(self, attempt_index: int) -> float:
        """Backoff before jitter, in seconds, after the given zero-based attempt."""
        return min(self.base_delay * (2 ** attempt_index), MAX_RETRY_DELAY_S)

    def jittered_delay(self, attempt_index: int) -> float:
        delay = self.retry_delay(attempt_index)
        return delay + self._rand() * JITTER_RATIO * delay

    def _attempt(self, endpoint: "Endpoint") -> Any:
        where = endpoint.describe()
        try:
            r = self._transport(endpoint)
        except requests.RequestException as e:
            raise classify_transport(e, where) from e
        logger.debug("API Response: %s - %d", where, r.status_code)
        if not 200 <= r.status_code < 300:
            raise classify_response(r.status_code, r.text, where, reason=r.reason)
        return normalize(r.text, where, r.status_code)

    def execute(self, endpoint: "Endpoint") -> Any:
        where = endpoint.describe()
        for attempt in range(self.max_attempts):
            self._limiter.admit()
            logger.debug("API Request: %s (attempt %d/%d)", where, attempt + 1, self.max_attempts)
            try:
                return self._attempt(endpoint)
            except ProxmoxError as e:
                if not e.retryable:
                    logger.warning("Request %s failed with %s, not retrying: %s", where, e.kind.value, e.message)
                    raise
                if attempt + 1 >= self.max_attempts:
                    raise self._exhausted(where, e) from e
                delay = self.jittered_delay(attempt)
                logger.warning(
                    "Request %s failed (%s), retrying in %.0fms (attempt %d/%d)",
                    where, e.kind.value, delay * 1000, attempt + 1, self.max_attempts,
                )
                self._sleep(delay)

        raise ProxmoxError.configuration("Retry budget must allow at least one attempt", endpoint=where)

    def _exhausted(self, where: str, last: ProxmoxError) -> ProxmoxError:
        logger.error("Request %s failed after %d attempts: %s", where, self.max_attempts, last.message)
        return ProxmoxError.connection(
            f"Failed to connect to Proxmox after {self.max_attempts} attempts: {last.message}",
            endpoint=where,
            attempts=self.max_attempts,
            original_kind=last.kind.value,
            original_error=last.message,
        )
