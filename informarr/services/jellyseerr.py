"""Jellyseerr / Overseerr API client (request broker)."""
import httpx
from typing import List, Dict, Any, Optional, Set, Tuple
from datetime import datetime

import structlog

from informarr.config import Config, RadarrConfig, SonarrConfig, get_config
from informarr.core.models import (
    FetchResult,
    MediaRequest,
    MediaType,
    RequestStatus,
    normalize_external_ids,
)
from informarr.errors import FetchError, MalformedDataError
from informarr.services.base import BaseService

logger = structlog.get_logger(__name__)

POSTER_BASE_URL = "https://image.tmdb.org/t/p/w600_and_h900_bestv2"
DETAILS_TIMEOUT = 5.0  # seconds, per details lookup

# MediaRequestStatus côté Jellyseerr
REQUEST_STATUS = {
    1: RequestStatus.PENDING,
    2: RequestStatus.APPROVED,
    3: RequestStatus.DECLINED,
    4: RequestStatus.APPROVED,  # failed: approved but the download failed
    5: RequestStatus.APPROVED,  # completed
}

MEDIA_TYPES = {
    "movie": MediaType.MOVIE,
    "tv": MediaType.SERIES,
}


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None


def display_name(user: Dict[str, Any]) -> str:
    """Nom affiché du demandeur, avec les mêmes fallbacks que Jellyseerr."""
    for key in ("displayName", "username", "jellyfinUsername", "plexUsername", "email"):
        value = user.get(key)
        if value:
            return str(value)
    return ""


def parse_request(raw: Dict[str, Any]) -> MediaRequest:
    """Convertit une request Jellyseerr en MediaRequest."""
    if not isinstance(raw, dict):
        raise MalformedDataError("request record is not an object")
    request_id = raw.get("id")
    if not isinstance(request_id, int):
        raise MalformedDataError(f"request without a numeric id: {request_id!r}")

    media_type = MEDIA_TYPES.get(raw.get("type"))
    if media_type is None:
        raise MalformedDataError(f"request {request_id} has unknown type {raw.get('type')!r}")

    media = raw.get("media")
    if not isinstance(media, dict):
        raise MalformedDataError(f"request {request_id} has no media")

    status = REQUEST_STATUS.get(raw.get("status"))
    if status is None:
        raise MalformedDataError(f"request {request_id} has unknown status {raw.get('status')!r}")

    user = raw.get("requestedBy") or {}
    if not isinstance(user, dict):
        raise MalformedDataError(f"request {request_id} has a malformed requestedBy")
    settings = user.get("settings") or {}
    if not isinstance(settings, dict):
        raise MalformedDataError(f"request {request_id} has malformed user settings")
    seasons = raw.get("seasons") or []
    if not isinstance(seasons, list):
        raise MalformedDataError(f"request {request_id} has malformed seasons")

    return MediaRequest(
        request_id=request_id,
        media_type=media_type,
        external_ids=normalize_external_ids({
            "tmdb": media.get("tmdbId"),
            "tvdb": media.get("tvdbId"),
            "imdb": media.get("imdbId"),
        }),
        requested_by=display_name(user),
        created_at=parse_datetime(raw.get("createdAt")),
        current_status=status,
        discord_id=str(settings["discordId"]) if settings.get("discordId") else None,
        seasons=sorted(
            s["seasonNumber"] for s in seasons
            if isinstance(s, dict) and isinstance(s.get("seasonNumber"), int)
        ),
    )


class JellyseerrService(BaseService[MediaRequest]):
    """Service pour interagir avec Jellyseerr."""

    name = "jellyseerr"

    def __init__(
        self,
        config: Optional[Config] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        config = config or get_config()
        if not config.jellyseerr:
            raise ValueError("Jellyseerr configuration not found")
        self.page_size = config.jellyseerr.page_size
        super().__init__(config.jellyseerr.url, config.jellyseerr.api_key, config.http, transport)
        # (media type, tmdb id) -> (title, overview, poster url)
        self._details_cache: Dict[Tuple[str, str], Tuple[str, str, Optional[str]]] = {}

    async def fetch_requests(self) -> FetchResult[MediaRequest]:
        """Récupère toutes les demandes (paginées, dédoublonnées par id)."""
        return await self._guarded(self._fetch_requests)

    async def _fetch_requests(self) -> List[MediaRequest]:
        seen: Dict[int, MediaRequest] = {}
        skip = 0
        while True:
            data = await self.client.get_json(
                "/api/v1/request",
                params={"take": self.page_size, "skip": skip, "filter": "all", "sort": "added"},
            )
            if not isinstance(data, dict):
                raise MalformedDataError("request list is not an object")
            batch = data.get("results") or []
            if not isinstance(batch, list):
                raise MalformedDataError("request results is not an array")
            for raw in batch:
                try:
                    request = parse_request(raw)
                except MalformedDataError as e:
                    logger.warning("malformed_request_skipped", service=self.name, error=str(e))
                    continue
                if request.request_id not in seen:
                    seen[request.request_id] = request

            page_info = data.get("pageInfo")
            total = page_info.get("results") if isinstance(page_info, dict) else None
            skip += self.page_size
            if not batch:
                break
            if isinstance(total, int):
                if skip >= total:
                    break
            elif len(batch) < self.page_size:
                # no total reported: a short page is the last one
                break

        requests = list(seen.values())
        # failed lookups are not retried within the same fetch
        failed: Set[Tuple[str, str]] = set()
        for request in requests:
            await self._attach_details(request, failed)
        logger.info("requests_fetched", service=self.name, count=len(requests))
        return requests

    async def _attach_details(self, request: MediaRequest, failed: Set[Tuple[str, str]]) -> None:
        """Titre, synopsis et affiche (best effort, mis en cache).

        A single attempt with a short timeout, so an unhealthy details
        endpoint cannot hold up the request snapshot.
        """
        tmdb_id = request.external_ids.get("tmdb")
        if not tmdb_id:
            return
        kind = "movie" if request.media_type == MediaType.MOVIE else "tv"
        key = (kind, tmdb_id)
        if key in failed:
            return
        if key not in self._details_cache:
            try:
                details = await self.client.get_json(
                    f"/api/v1/{kind}/{tmdb_id}",
                    timeout=min(self.client.default_timeout, DETAILS_TIMEOUT),
                    retry=False,
                )
            except (FetchError, MalformedDataError) as e:
                failed.add(key)
                logger.warning("media_details_unavailable", service=self.name, tmdb_id=tmdb_id, error=str(e))
                return
            if not isinstance(details, dict):
                failed.add(key)
                return
            title = details.get("title") or details.get("name") or details.get("originalTitle") \
                or details.get("originalName") or ""
            poster = details.get("posterPath")
            self._details_cache[key] = (
                title,
                details.get("overview") or "",
                f"{POSTER_BASE_URL}{poster}" if poster else None,
            )
        request.title, request.overview, request.image_url = self._details_cache[key]

    async def discover_library_managers(self) -> Tuple[Optional[RadarrConfig], Optional[SonarrConfig]]:
        """Lit les réglages Radarr/Sonarr déclarés dans Jellyseerr."""
        radarr = await self._discover("radarr")
        sonarr = await self._discover("sonarr")
        return (
            RadarrConfig(**radarr) if radarr else None,
            SonarrConfig(**sonarr) if sonarr else None,
        )

    async def _discover(self, kind: str) -> Optional[Dict[str, str]]:
        servers = await self.client.get_json(f"/api/v1/settings/{kind}")
        if not isinstance(servers, list) or not servers:
            logger.warning("library_manager_not_declared", service=self.name, kind=kind)
            return None
        # Prefer the default non-4K instance
        servers = sorted(servers, key=lambda s: (not s.get("isDefault"), bool(s.get("is4k"))))
        server = servers[0]
        scheme = "https" if server.get("useSsl") else "http"
        base = (server.get("baseUrl") or "").rstrip("/")
        url = f"{scheme}://{server.get('hostname')}:{server.get('port')}{base}"
        logger.info("library_manager_discovered", service=self.name, kind=kind, url=url)
        return {"url": url, "api_key": server.get("apiKey", "")}
