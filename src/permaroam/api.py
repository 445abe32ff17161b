"""Arweave gateway HTTP client: GraphQL and plain JSON endpoints with failover."""

import random
import time
from collections import deque
from collections.abc import Callable
from typing import Any

import requests
from loguru import logger

from permaroam.config import (
    CLIENT_HEADER,
    GRAPHQL_TIMEOUT,
    RATE_LIMIT_REQUESTS,
    RATE_LIMIT_WINDOW,
    RETRY_ATTEMPTS,
    RETRY_BASE_DELAY,
    RETRY_MAX_DELAY,
    resolve_gateways,
    resolve_graphql_gateways,
)
from permaroam.errors import GatewayError

_RETRYABLE_GRAPHQL_MARKERS = ("timeout", "rate limit", "server error")


class ClientRequestError(GatewayError):
    """The gateway rejected the request (4xx); retrying will not help."""


class RateLimiter:
    """Sliding-window limiter: at most ``max_requests`` per ``window`` seconds."""

    def __init__(
        self,
        max_requests: int = RATE_LIMIT_REQUESTS,
        window: float = RATE_LIMIT_WINDOW,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._sleep = sleep
        self._times: deque[float] = deque()

    def wait(self) -> None:
        """Block until another request is allowed, then record it."""
        now = self._clock()
        while self._times and self._times[0] <= now - self.window:
            self._times.popleft()
        if len(self._times) >= self.max_requests:
            delay = self._times[0] + self.window - now + 0.5
            logger.debug("Rate limit reached, waiting {:.1f}s", delay)
            self._sleep(delay)
            now = self._clock()
        self._times.append(now)


class ArweaveApi:
    """Synchronous gateway client.

    Data gateways serve ``/info``, ``/block/height/N`` and raw transaction data;
    GraphQL gateways serve ``/graphql``. Both lists are tried in order.
    """

    def __init__(
        self,
        *,
        gateways: list[str] | None = None,
        graphql_gateways: list[str] | None = None,
        attempts: int = RETRY_ATTEMPTS,
    ) -> None:
        self.gateways = [g.rstrip("/") for g in (gateways or resolve_gateways())]
        self.graphql_gateways = [
            g.rstrip("/") for g in (graphql_gateways or resolve_graphql_gateways())
        ]
        if not self.gateways or not self.graphql_gateways:
            msg = "At least one data gateway and one GraphQL gateway are required"
            raise ValueError(msg)
        self.attempts = attempts
        self.sess = requests.Session()
        self.sess.headers[CLIENT_HEADER[0]] = CLIENT_HEADER[1]
        self._limiters: dict[str, RateLimiter] = {}

        logger.debug(
            "API ready: gateways {!r}, graphql gateways {!r}",
            self.gateways,
            self.graphql_gateways,
        )

    @property
    def primary_gateway(self) -> str:
        return self.gateways[0]

    def get_json(self, path: str, *, timeout: float) -> Any:
        """GET ``path`` from the first data gateway that answers."""
        errors: list[str] = []
        for gw in self.gateways:
            url = f"{gw}/{path.lstrip('/')}"
            try:
                return self._request_with_retry("GET", url, timeout=timeout)
            except GatewayError as e:
                logger.warning("Gateway {} failed for {}: {}", gw, path, e)
                errors.append(f"{gw}: {e}")
        msg = f"All gateways failed for {path!r}: {'; '.join(errors)}"
        raise GatewayError(msg)

    def graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        """Run a GraphQL query, failing over across GraphQL gateways.

        Returns:
            The ``data`` member of the response.
        """
        errors: list[str] = []
        for gw in self.graphql_gateways:
            try:
                rv = self._request_with_retry(
                    "POST",
                    f"{gw}/graphql",
                    json_body={"query": query, "variables": variables},
                    timeout=GRAPHQL_TIMEOUT,
                )
            except GatewayError as e:
                logger.warning("GraphQL gateway {} failed after retries: {}", gw, e)
                errors.append(f"{gw}: {e}")
                continue
            return rv  # type: ignore[no-any-return]
        msg = f"All GraphQL gateways failed: {'; '.join(errors)}"
        raise GatewayError(msg)

    def _limiter(self, url: str) -> RateLimiter:
        host = url.split("/", 3)[2] if "://" in url else url
        if host not in self._limiters:
            self._limiters[host] = RateLimiter()
        return self._limiters[host]

    def _request_with_retry(
        self,
        method: str,
        url: str,
        *,
        timeout: float,
        json_body: dict[str, Any] | None = None,
    ) -> Any:
        for attempt in range(self.attempts):
            try:
                return self._request_once(method, url, timeout=timeout, json_body=json_body)
            except ClientRequestError:
                raise
            except GatewayError:
                if attempt == self.attempts - 1:
                    raise
            base = min(RETRY_BASE_DELAY * 1.5**attempt, RETRY_MAX_DELAY)
            delay = base + random.random() * base * 0.2
            logger.debug("Retry {}/{} for {} after {:.2f}s", attempt + 1, self.attempts, url, delay)
            time.sleep(delay)
        msg = f"No request attempts configured for {url}"
        raise GatewayError(msg)

    def _request_once(
        self,
        method: str,
        url: str,
        *,
        timeout: float,
        json_body: dict[str, Any] | None,
    ) -> Any:
        self._limiter(url).wait()
        logger.debug("Making request: {} {}", method, url)
        try:
            r = self.sess.request(method, url, json=json_body, timeout=timeout)
        except requests.RequestException as e:
            msg = f"{method} {url} failed: {e}"
            raise GatewayError(msg) from e

        if 400 <= r.status_code < 500:
            msg = f"Client error: {r.status_code} {r.reason} for {url}"
            raise ClientRequestError(msg)
        if r.status_code >= 500:
            msg = f"Server error: {r.status_code} {r.reason} for {url}"
            raise GatewayError(msg)

        try:
            rv = r.json()
        except ValueError as e:
            msg = f"Invalid JSON from {url}"
            raise GatewayError(msg) from e

        if json_body is not None and isinstance(rv, dict):
            gql_errors = rv.get("errors") or []
            if gql_errors:
                messages = "; ".join(str(err.get("message", err)) for err in gql_errors)
                if any(marker in messages.lower() for marker in _RETRYABLE_GRAPHQL_MARKERS):
                    raise GatewayError(messages)
                raise ClientRequestError(messages)
            if "data" not in rv:
                msg = f"GraphQL response from {url} has no data"
                raise GatewayError(msg)
            return rv["data"]
        return rv
