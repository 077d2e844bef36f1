import logging
import random
import time
from typing import Any, Callable, Dict, Optional

import requests

from core.errors import SourceUnavailable

logger = logging.getLogger("taskscope.api")


class ApiClientError(SourceUnavailable):
    pass


class ApiPermissionError(ApiClientError):
    pass


class ApiRateLimitError(ApiClientError):
    pass


class ApiClient:
    """JSON REST client with bearer auth, shared rate limiting and retry/backoff."""

    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session],
        token_provider: Callable[[], Optional[str]],
        rate_limiter,
        timeout: int = 30,
        max_attempts: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.token_provider = token_provider
        self.rate_limiter = rate_limiter
        self.timeout = timeout
        self.max_attempts = max_attempts
        self._sleep_fn = sleep

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self.request("GET", path, params=params)

    def post(self, path: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self.request("POST", path, payload={"data": data})

    def put(self, path: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self.request("PUT", path, payload={"data": data})

    def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        token = self.token_provider()
        if not token:
            raise ApiPermissionError("API token missing")
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        url = f"{self.base_url}/{path.lstrip('/')}"
        attempt = 0
        delay = 1.0
        while True:
            attempt += 1
            try:
                self.rate_limiter.acquire()
                response = self.session.request(
                    method, url, params=params, json=payload, headers=headers, timeout=self.timeout
                )
            except requests.RequestException as exc:
                if attempt >= self.max_attempts:
                    raise ApiClientError(f"network error: {exc}") from exc
                logger.warning("%s %s failed (%s), retry #%d", method, path, exc, attempt)
                self._sleep(delay)
                delay *= 2
                continue
            self.rate_limiter.update(response.headers, response.status_code)
            if response.status_code == 429:
                if attempt < self.max_attempts:
                    logger.warning("%s %s rate limited, retry #%d", method, path, attempt)
                    continue
                raise ApiRateLimitError(f"rate limited: {method} {path}")
            if response.status_code >= 500 and attempt < self.max_attempts:
                logger.warning("%s %s returned %s, retry #%d", method, path, response.status_code, attempt)
                self._sleep(delay)
                delay *= 2
                continue
            if response.status_code in (401, 403):
                raise ApiPermissionError(f"HTTP {response.status_code}")
            if response.status_code >= 400:
                raise ApiClientError(f"API error: {response.status_code} {response.text}")
            try:
                body = response.json()
            except ValueError as exc:
                raise ApiClientError(f"invalid JSON from {method} {path}") from exc
            if not isinstance(body, dict):
                raise ApiClientError(f"unexpected response shape from {method} {path}")
            return body

    def _sleep(self, base_delay: float) -> None:
        self._sleep_fn(base_delay + random.uniform(0, base_delay))
