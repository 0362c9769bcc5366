"""Shared adapter plumbing: circuit breaker, cached snapshot, Result conversion."""
from typing import Awaitable, Callable, Dict, Generic, List, Optional, TypeVar, Any
from datetime import datetime, timezone

import httpx
import structlog

from informarr.config import HttpConfig
from informarr.core.models import FetchResult, ServiceHealth
from informarr.errors import AuthError, FetchError, MalformedDataError
from informarr.utils.http_client import CircuitBreaker, RobustHTTPClient

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class BaseService(Generic[T]):
    """Wraps one external service.

    Every public fetch returns a FetchResult: errors are logged, counted by the
    circuit breaker and converted to the last good snapshot flagged stale.
    """

    name = "service"

    def __init__(
        self,
        url: str,
        api_key: str,
        http: Optional[HttpConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        http = http or HttpConfig()
        self.base_url = url.rstrip("/")
        self.api_key = api_key
        self.client = RobustHTTPClient(
            service_name=self.name,
            base_url=self.base_url,
            headers=self._get_headers(),
            default_timeout=http.timeout,
            max_retries=http.max_retries,
            backoff_initial=http.backoff_initial,
            backoff_max=http.backoff_max,
            transport=transport,
        )
        self.breaker = CircuitBreaker(
            failure_threshold=http.circuit_breaker_threshold,
            timeout=http.circuit_breaker_cooldown,
        )
        self._snapshots: Dict[str, FetchResult[T]] = {}

    def _get_headers(self) -> Dict[str, str]:
        """Get API headers."""
        return {"X-Api-Key": self.api_key}

    @property
    def health(self) -> ServiceHealth:
        return self.breaker.health

    def last_snapshot(self, key: str = "default") -> FetchResult[T]:
        """Last successful snapshot, marked stale (empty if none yet)."""
        previous = self._snapshots.get(key)
        if previous is None:
            return FetchResult(service=self.name, items=[], stale=True)
        return FetchResult(
            service=self.name,
            items=list(previous.items),
            stale=True,
            fetched_at=previous.fetched_at,
        )

    async def _guarded(self, fetch: Callable[[], Awaitable[List[T]]], key: str = "default") -> FetchResult[T]:
        if not self.breaker.can_attempt():
            logger.info("service_short_circuited", service=self.name, health=self.health.value)
            result = self.last_snapshot(key)
            result.error = f"{self.name} is {self.health.value}"
            return result

        try:
            items = await fetch()
        except AuthError as e:
            self.breaker.trip()
            logger.error("service_auth_rejected", service=self.name, error=str(e))
            result = self.last_snapshot(key)
            result.error = str(e)
            return result
        except (FetchError, MalformedDataError) as e:
            self.breaker.call_failed()
            logger.warning(
                "service_fetch_failed",
                service=self.name,
                error=str(e),
                circuit_breaker_state=self.breaker.state,
            )
            result = self.last_snapshot(key)
            result.error = str(e)
            return result

        self.breaker.call_succeeded()
        result = FetchResult(service=self.name, items=items, stale=False, fetched_at=datetime.now(timezone.utc))
        self._snapshots[key] = result
        return FetchResult(service=self.name, items=list(items), stale=False, fetched_at=result.fetched_at)

    async def _get_paged_records(self, path: str, page_size: int, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Drain an *arr v3 paged endpoint ({page, pageSize, totalRecords, records})."""
        records: List[Dict[str, Any]] = []
        page = 1
        received = 0
        while True:
            query = dict(params or {})
            query.update({"page": page, "pageSize": page_size})
            data = await self.client.get_json(path, params=query)
            if not isinstance(data, dict):
                raise MalformedDataError(f"{self.name} {path} did not return a page object")
            batch = data.get("records") or []
            if not isinstance(batch, list):
                raise MalformedDataError(f"{self.name} {path} records is not an array")
            received += len(batch)
            records.extend(record for record in batch if isinstance(record, dict))
            total = data.get("totalRecords") or 0
            if not isinstance(total, int):
                raise MalformedDataError(f"{self.name} {path} totalRecords is not a number")
            page += 1
            if not batch or received >= total:
                return records

    async def aclose(self) -> None:
        await self.client.aclose()
