"""HTTP client with retries, timeouts, and circuit breaker."""
import httpx
from typing import Optional, Dict, Any
from tenacity import (
    AsyncRetrying,
    stop_after_attempt,
    wait_exponential_jitter,
    retry_if_exception_type,
    RetryCallState
)
import structlog
from datetime import datetime

from informarr.core.models import ServiceHealth
from informarr.errors import FetchError, TransientFetchError, AuthError, MalformedDataError

logger = structlog.get_logger(__name__)


class CircuitBreaker:
    """Simple circuit breaker to avoid hammering down services."""

    def __init__(self, failure_threshold: int = 3, timeout: int = 300):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.state = "closed"  # closed, open, half_open, tripped

    def call_succeeded(self):
        """Reset on success."""
        if self.state == "tripped":
            return
        self.failure_count = 0
        self.state = "closed"

    def call_failed(self):
        """Record failure."""
        if self.state == "tripped":
            return
        self.failure_count += 1
        self.last_failure_time = datetime.now()

        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self.state = "open"
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
                threshold=self.failure_threshold
            )

    def trip(self):
        """Open permanently (auth failure); only a restart closes it."""
        self.state = "tripped"
        self.last_failure_time = datetime.now()
        logger.error("circuit_breaker_tripped", failure_count=self.failure_count)

    def can_attempt(self) -> bool:
        """Check if we can attempt a call."""
        if self.state == "closed":
            return True

        if self.state == "open":
            if self.last_failure_time:
                elapsed = (datetime.now() - self.last_failure_time).total_seconds()
                if elapsed >= self.timeout:
                    self.state = "half_open"
                    logger.info("circuit_breaker_half_open")
                    return True
            return False

        # half_open: allow one attempt
        return self.state == "half_open"

    def is_short_circuited(self) -> bool:
        """True while calls would be refused, without moving to half-open."""
        if self.state == "tripped":
            return True
        if self.state == "open" and self.last_failure_time:
            elapsed = (datetime.now() - self.last_failure_time).total_seconds()
            return elapsed < self.timeout
        return False

    @property
    def health(self) -> ServiceHealth:
        if self.state == "tripped":
            return ServiceHealth.FAILED
        if self.state == "open":
            return ServiceHealth.DEGRADED
        return ServiceHealth.HEALTHY


def classify_error(exc: Exception, service_name: str) -> FetchError:
    """Map an httpx exception onto the fetch error taxonomy."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        message = f"{service_name} returned HTTP {status} for {exc.request.url}"
        if status in (401, 403):
            return AuthError(message, service=service_name, status_code=status)
        if status == 429 or status >= 500:
            return TransientFetchError(message, service=service_name, status_code=status)
        return FetchError(message, service=service_name, status_code=status)
    # Connect errors, read timeouts, protocol errors
    return TransientFetchError(f"{service_name} request failed: {exc}", service=service_name)


class RobustHTTPClient:
    """HTTP client with retries and timeouts, bound to one service."""

    def __init__(
        self,
        service_name: str,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        default_timeout: float = 30.0,
        max_retries: int = 3,
        backoff_initial: float = 1.0,
        backoff_max: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.service_name = service_name
        self.base_url = base_url.rstrip("/")
        self.default_timeout = default_timeout
        self.max_retries = max_retries
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers or {},
            timeout=default_timeout,
            transport=transport,
        )

    def _log_retry(self, retry_state: RetryCallState):
        """Log retry attempts."""
        logger.warning(
            "http_retry_attempt",
            service=self.service_name,
            attempt=retry_state.attempt_number,
            max_attempts=self.max_retries + 1,
            exception=str(retry_state.outcome.exception())
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential_jitter(
                initial=self.backoff_initial,
                max=self.backoff_max,
                jitter=self.backoff_initial,
            ),
            retry=retry_if_exception_type(TransientFetchError),
            before_sleep=self._log_retry,
            reraise=True,
        )

    async def _request_once(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
        data: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method,
                path,
                params=params,
                json=json,
                data=data,
                timeout=timeout or self.default_timeout,
            )
            response.raise_for_status()
            return response
        except httpx.HTTPError as e:
            error = classify_error(e, self.service_name)
            logger.error(
                "http_request_failed",
                service=self.service_name,
                method=method,
                path=path,
                error=str(error),
            )
            raise error from e

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
        data: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        retry: bool = True,
    ) -> httpx.Response:
        """Request with retries on transient failures (single attempt when ``retry`` is False)."""
        if not retry:
            return await self._request_once(method, path, params=params, json=json, data=data, timeout=timeout)
        async for attempt in self._retrying():
            with attempt:
                return await self._request_once(method, path, params=params, json=json, data=data, timeout=timeout)
        raise FetchError(f"No attempt made for {self.service_name}", service=self.service_name)

    async def get_json(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        retry: bool = True,
    ) -> Any:
        """GET and decode JSON."""
        response = await self.request("GET", path, params=params, timeout=timeout, retry=retry)
        try:
            return response.json()
        except ValueError as e:
            raise MalformedDataError(f"{self.service_name} returned invalid JSON for {path}") from e

    async def post(
        self,
        path: str,
        json: Optional[Any] = None,
        data: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        return await self.request("POST", path, json=json, data=data, timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()
