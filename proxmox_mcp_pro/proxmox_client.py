from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
import urllib3

from .config import ProxmoxConfig
from .errors import ProxmoxError
from .executor import RetryingExecutor
from .ratelimit import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

METHODS = frozenset({"GET", "POST", "PUT", "DELETE"})


@dataclass(frozen=True)
class Endpoint:
    """One API call: method, path below ``/api2/json``, optional JSON body and query."""

    method: str
    path: str
    body: Optional[Dict[str, Any]] = None
    params: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        method = self.method.upper()
        if method not in METHODS:
            raise ProxmoxError.validation(f"Unsupported HTTP method: {self.method}", path=self.path)
        if not self.path.startswith("/"):
            raise ProxmoxError.validation(f"Endpoint path must start with '/': {self.path}", path=self.path)
        object.__setattr__(self, "method", method)

    def describe(self) -> str:
        return f"{self.method} {self.path}"


class ProxmoxClient:
    """Proxmox VE API client using a static API token."""

    def __init__(
        self,
        cfg: ProxmoxConfig,
        limiter: Optional[SlidingWindowRateLimiter] = None,
        session: Optional[requests.Session] = None,
        **executor_kwargs: Any,
    ):
        self._cfg = cfg
        self._base = cfg.base_url
        self._timeout = cfg.timeout_s
        self._session = session or requests.Session()
        self._session.headers.update({
            "Authorization": cfg.auth_header,
            "Accept": "application/json",
        })
        self._session.verify = cfg.ca_bundle or cfg.verify_ssl
        if self._session.verify is False:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
        self.limiter = limiter or SlidingWindowRateLimiter()
        self.executor = RetryingExecutor(cfg, self.limiter, self.send, **executor_kwargs)

    @property
    def host(self) -> str:
        return self._cfg.host

    @property
    def allow_elevated(self) -> bool:
        return self._cfg.allow_elevated

    def send(self, endpoint: Endpoint) -> requests.Response:
        """Perform exactly one HTTP exchange; no retries, no classification."""
        url = f"{self._base}{endpoint.path}"
        return self._session.request(
            endpoint.method,
            url,
            params=endpoint.params,
            json=endpoint.body,
            timeout=self._timeout,
        )

    def execute(self, endpoint: Endpoint) -> Any:
        return self.executor.execute(endpoint)

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self.execute(Endpoint("GET", path, params=params))

    def post(self, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        return self.execute(Endpoint("POST", path, body=body))

    def put(self, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        return self.execute(Endpoint("PUT", path, body=body))

    def delete(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self.execute(Endpoint("DELETE", path, params=params))

    def get_version(self) -> Any:
        return self.get("/version")

    def health_check(self) -> bool:
        try:
            self.get_version()
            return True
        except ProxmoxError as e:
            logger.error("Health check failed for %s: %s", self.host, e)
            return False

    def close(self) -> None:
        self._session.close()
