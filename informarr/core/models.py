"""Core business models."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Generic, TypeVar
from datetime import datetime
import hashlib


class MediaType(str, Enum):
    MOVIE = "movie"
    SERIES = "series"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"


class Availability(str, Enum):
    MISSING = "missing"
    DOWNLOADING = "downloading"
    AVAILABLE = "available"


class DerivedStatus(str, Enum):
    REQUESTED = "requested"
    MATCHED_DOWNLOADING = "matched-downloading"
    MATCHED_AVAILABLE = "matched-available"
    UNMATCHED_STALE = "unmatched-stale"


class ServiceHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # circuit open, cooldown pending
    FAILED = "failed"  # auth rejected, until restart


# Event types sent to notification channels, keyed by the status reached
EVENT_TYPES: Dict[DerivedStatus, str] = {
    DerivedStatus.REQUESTED: "request-pending",
    DerivedStatus.MATCHED_DOWNLOADING: "media-downloading",
    DerivedStatus.MATCHED_AVAILABLE: "media-available",
    DerivedStatus.UNMATCHED_STALE: "request-stale",
}


def normalize_external_ids(raw: Dict[str, object]) -> Dict[str, str]:
    """Lowercase namespaces, stringify values, drop empty/zero ids."""
    ids: Dict[str, str] = {}
    for namespace, value in raw.items():
        if value is None or value == "" or value == 0:
            continue
        ids[str(namespace).lower()] = str(value).strip()
    return ids


@dataclass
class MediaRequest:
    """Demande issue du request broker (lecture seule)."""
    request_id: int
    media_type: MediaType
    external_ids: Dict[str, str]
    requested_by: str
    created_at: Optional[datetime]
    current_status: RequestStatus

    # Presentation data for notifications
    title: str = ""
    overview: str = ""
    image_url: Optional[str] = None
    discord_id: Optional[str] = None
    seasons: List[int] = field(default_factory=list)


@dataclass
class LibraryItem:
    """Item d'un library manager (Radarr/Sonarr)."""
    library_id: int
    media_type: MediaType
    external_ids: Dict[str, str]
    monitored: bool
    availability: Availability
    source: str = ""
    title: str = ""
    # Series only: monitored, finished seasons -> availability
    seasons: Dict[int, Availability] = field(default_factory=dict)

    def availability_for(self, season_numbers: List[int]) -> Availability:
        """Disponibilité restreinte aux saisons demandées.

        Seasons still airing or not monitored are ignored. When no requested
        season is known, the item's overall availability applies.
        """
        if not season_numbers or not self.seasons:
            return self.availability
        known = [self.seasons[n] for n in season_numbers if n in self.seasons]
        if not known:
            return self.availability
        if all(a == Availability.AVAILABLE for a in known):
            return Availability.AVAILABLE
        if any(a == Availability.DOWNLOADING for a in known):
            return Availability.DOWNLOADING
        return Availability.MISSING


@dataclass
class ReconciledState:
    """Vue réconciliée d'une demande, propriété du moteur."""
    request_id: int
    derived_status: DerivedStatus
    last_seen_at: datetime
    matched_library_id: Optional[int] = None
    matched_source: Optional[str] = None
    unmatched_cycles: int = 0
    ever_matched: bool = False
    ambiguous: bool = False


@dataclass
class TransitionEvent:
    request_id: int
    from_status: Optional[DerivedStatus]
    to_status: DerivedStatus
    timestamp: datetime
    request: Optional[MediaRequest] = None

    @property
    def event_type(self) -> str:
        return EVENT_TYPES[self.to_status]

    @property
    def dedupe_key(self) -> str:
        return make_dedupe_key(self.request_id, self.event_type, self.to_status)


def make_dedupe_key(request_id: int, event_type: str, derived_status: DerivedStatus) -> str:
    raw = f"{request_id}:{event_type}:{DerivedStatus(derived_status).value}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class NotificationRecord:
    """Entrée du ledger de dédoublonnage (jamais modifiée)."""
    request_id: int
    event_type: str
    dedupe_key: str
    sent_at: datetime
    channel: str = ""


T = TypeVar("T")


@dataclass
class FetchResult(Generic[T]):
    """Résultat d'un adapter: snapshot frais, ou dernier snapshot connu marqué stale."""
    service: str
    items: List[T] = field(default_factory=list)
    stale: bool = False
    error: Optional[str] = None
    fetched_at: Optional[datetime] = None


@dataclass
class CycleSnapshot:
    """Snapshots passed by value into one reconciliation pass."""
    requests: FetchResult[MediaRequest]
    libraries: Dict[str, FetchResult[LibraryItem]]
    # media type -> name of the library manager serving it
    managers: Dict[MediaType, str] = field(default_factory=lambda: {
        MediaType.MOVIE: "radarr",
        MediaType.SERIES: "sonarr",
    })

    def is_library_stale(self, media_type: MediaType) -> bool:
        result = self.libraries.get(self.managers.get(media_type, ""))
        return result is None or result.stale

    def library_items(self) -> List[LibraryItem]:
        items: List[LibraryItem] = []
        for name in sorted(self.libraries):
            items.extend(self.libraries[name].items)
        return items


@dataclass
class CycleReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    skipped: bool = False
    requests_seen: int = 0
    transitions: int = 0
    sent: int = 0
    duplicates: int = 0
    dispatch_failures: int = 0
    evicted: int = 0
    ambiguous: int = 0
    stale_services: List[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()
