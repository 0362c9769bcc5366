"""Shared fixtures: configs, model factories, fake channels and adapters."""
import asyncio
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import pytest

from informarr.config import (
    Config,
    HttpConfig,
    JellyseerrConfig,
    NotificationsConfig,
    RadarrConfig,
    ReconciliationConfig,
    SonarrConfig,
)
from informarr.core.models import (
    Availability,
    CycleSnapshot,
    FetchResult,
    LibraryItem,
    MediaRequest,
    MediaType,
    RequestStatus,
    ServiceHealth,
    TransitionEvent,
)
from informarr.errors import DispatchError
from informarr.utils.http_client import CircuitBreaker

JELLYSEERR_URL = "http://jellyseerr.test"
RADARR_URL = "http://radarr.test"
SONARR_URL = "http://sonarr.test"


@pytest.fixture
def config() -> Config:
    """Config with no backoff and a single attempt per call."""
    return Config(
        jellyseerr=JellyseerrConfig(url=JELLYSEERR_URL, api_key="jelly-key", page_size=2),
        radarr=RadarrConfig(url=RADARR_URL, api_key="radarr-key"),
        sonarr=SonarrConfig(url=SONARR_URL, api_key="sonarr-key"),
        http=HttpConfig(
            timeout=5.0,
            max_retries=0,
            backoff_initial=0.0,
            backoff_max=0.0,
            circuit_breaker_threshold=2,
            circuit_breaker_cooldown=3600,
        ),
        reconciliation=ReconciliationConfig(grace_cycles=3),
        notifications=NotificationsConfig(max_attempts=1, backoff_initial=0.0, backoff_max=0.0),
    )


@pytest.fixture
def make_request() -> Callable[..., MediaRequest]:
    def factory(
        request_id: int,
        media_type: MediaType = MediaType.MOVIE,
        external_ids: Optional[Dict[str, str]] = None,
        status: RequestStatus = RequestStatus.APPROVED,
        title: str = "",
    ) -> MediaRequest:
        return MediaRequest(
            request_id=request_id,
            media_type=media_type,
            external_ids=external_ids if external_ids is not None else {"tmdb": str(request_id * 100)},
            requested_by="alice",
            created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
            current_status=status,
            title=title or f"Title {request_id}",
        )
    return factory


@pytest.fixture
def make_item() -> Callable[..., LibraryItem]:
    def factory(
        library_id: int,
        external_ids: Dict[str, str],
        availability: Availability = Availability.MISSING,
        media_type: MediaType = MediaType.MOVIE,
        source: Optional[str] = None,
    ) -> LibraryItem:
        return LibraryItem(
            library_id=library_id,
            media_type=media_type,
            external_ids=external_ids,
            monitored=True,
            availability=availability,
            source=source or ("radarr" if media_type == MediaType.MOVIE else "sonarr"),
        )
    return factory


@pytest.fixture
def make_snapshot() -> Callable[..., CycleSnapshot]:
    def factory(
        requests: List[MediaRequest],
        movies: Optional[List[LibraryItem]] = None,
        series: Optional[List[LibraryItem]] = None,
        requests_stale: bool = False,
        radarr_stale: bool = False,
        sonarr_stale: bool = False,
    ) -> CycleSnapshot:
        return CycleSnapshot(
            requests=FetchResult(service="jellyseerr", items=list(requests), stale=requests_stale),
            libraries={
                "radarr": FetchResult(service="radarr", items=list(movies or []), stale=radarr_stale),
                "sonarr": FetchResult(service="sonarr", items=list(series or []), stale=sonarr_stale),
            },
        )
    return factory


class RecordingChannel:
    """Channel double that records deliveries and can be told to fail."""

    def __init__(self, name: str = "recording", fail: bool = False):
        self.name = name
        self.fail = fail
        self.sent: List[TransitionEvent] = []
        self.attempts = 0
        self.closed = False

    async def send(self, event: TransitionEvent) -> None:
        self.attempts += 1
        if self.fail:
            raise DispatchError(f"{self.name}: unreachable", dedupe_key=event.dedupe_key)
        self.sent.append(event)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def recording_channel() -> RecordingChannel:
    return RecordingChannel()


class FakeAdapter:
    """Adapter double returning canned FetchResults."""

    def __init__(self, name: str, items: Optional[list] = None, delay: float = 0.0):
        self.name = name
        self.items = list(items or [])
        self.delay = delay
        self.calls = 0
        self.stale = False
        self.breaker = CircuitBreaker(failure_threshold=1, timeout=3600)
        self.closed = False

    @property
    def health(self) -> ServiceHealth:
        return self.breaker.health

    def last_snapshot(self, key: str = "default") -> FetchResult:
        return FetchResult(service=self.name, items=[], stale=True)

    async def _result(self) -> FetchResult:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return FetchResult(service=self.name, items=list(self.items), stale=self.stale)

    async def fetch_requests(self) -> FetchResult:
        return await self._result()

    async def fetch_library(self, media_type: MediaType) -> FetchResult:
        return await self._result()

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_adapter_cls():
    return FakeAdapter


@pytest.fixture
def recording_channel_cls():
    return RecordingChannel
