"""Sonarr API client (series library manager)."""
import httpx
from typing import List, Dict, Any, Optional, Set, Tuple

import structlog

from informarr.config import Config, SonarrConfig, get_config
from informarr.core.models import Availability, FetchResult, LibraryItem, MediaType, normalize_external_ids
from informarr.errors import MalformedDataError
from informarr.services.base import BaseService

logger = structlog.get_logger(__name__)

QUEUE_PAGE_SIZE = 200


def _count(stats: Dict[str, Any], key: str) -> int:
    value = stats.get(key)
    return value if isinstance(value, int) else 0


def series_availability(series: Dict[str, Any], queued_ids: Set[int]) -> Availability:
    # episodeCount only counts monitored episodes that have aired
    stats = series.get("statistics")
    if not isinstance(stats, dict):
        stats = {}
    episode_count = _count(stats, "episodeCount")
    file_count = _count(stats, "episodeFileCount")
    if episode_count > 0 and file_count >= episode_count:
        return Availability.AVAILABLE
    if series.get("id") in queued_ids:
        return Availability.DOWNLOADING
    return Availability.MISSING


def season_availability(
    series: Dict[str, Any],
    queued_seasons: Set[Tuple[int, Optional[int]]],
) -> Dict[int, Availability]:
    """Disponibilité des saisons monitorées et terminées.

    A season with a ``nextAiring`` date is still airing and is left out.
    A finished season is available once every episode has a file.
    """
    seasons = series.get("seasons")
    if not isinstance(seasons, list):
        return {}
    series_id = series.get("id")
    result: Dict[int, Availability] = {}
    for season in seasons:
        if not isinstance(season, dict) or not season.get("monitored"):
            continue
        number = season.get("seasonNumber")
        stats = season.get("statistics")
        if not isinstance(number, int) or not isinstance(stats, dict):
            continue
        if stats.get("nextAiring"):
            continue
        total = _count(stats, "totalEpisodeCount") or _count(stats, "episodeCount")
        files = _count(stats, "episodeFileCount")
        if total > 0 and files >= total:
            result[number] = Availability.AVAILABLE
        elif (series_id, number) in queued_seasons or (series_id, None) in queued_seasons:
            result[number] = Availability.DOWNLOADING
        else:
            result[number] = Availability.MISSING
    return result


def parse_series(
    series: Dict[str, Any],
    queued_ids: Set[int],
    queued_seasons: Optional[Set[Tuple[int, Optional[int]]]] = None,
) -> LibraryItem:
    """Convertit une série Sonarr en LibraryItem."""
    series_id = series.get("id") if isinstance(series, dict) else None
    if not isinstance(series_id, int):
        raise MalformedDataError(f"Sonarr series without a numeric id: {series_id!r}")
    if queued_seasons is None:
        queued_seasons = {(queued, None) for queued in queued_ids}
    return LibraryItem(
        library_id=series_id,
        media_type=MediaType.SERIES,
        external_ids=normalize_external_ids({
            "tvdb": series.get("tvdbId"),
            "tmdb": series.get("tmdbId"),
            "imdb": series.get("imdbId"),
        }),
        monitored=bool(series.get("monitored", True)),
        availability=series_availability(series, queued_ids),
        source=SonarrService.name,
        title=series.get("title") or "",
        seasons=season_availability(series, queued_seasons),
    )


class SonarrService(BaseService[LibraryItem]):
    """Service pour interagir avec Sonarr."""

    name = "sonarr"

    def __init__(
        self,
        config: Optional[Config] = None,
        sonarr: Optional[SonarrConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        config = config or get_config()
        sonarr = sonarr or config.sonarr
        if not sonarr:
            raise ValueError("Sonarr configuration not found")
        super().__init__(sonarr.url, sonarr.api_key, config.http, transport)

    async def fetch_library(self, media_type: MediaType) -> FetchResult[LibraryItem]:
        """Récupère toutes les séries avec leur disponibilité."""
        if media_type != MediaType.SERIES:
            return FetchResult(service=self.name, items=[], stale=False)
        return await self._guarded(self._fetch_series, key=media_type.value)

    async def _fetch_series(self) -> List[LibraryItem]:
        series_list = await self.client.get_json("/api/v3/series")
        if not isinstance(series_list, list):
            raise MalformedDataError("Sonarr series list is not an array")
        queue = await self._get_paged_records("/api/v3/queue", QUEUE_PAGE_SIZE)
        queued_ids: Set[int] = set()
        queued_seasons: Set[Tuple[int, Optional[int]]] = set()
        for record in queue:
            series_id = record.get("seriesId") if isinstance(record, dict) else None
            if not isinstance(series_id, int):
                continue
            queued_ids.add(series_id)
            season = record.get("seasonNumber")
            queued_seasons.add((series_id, season if isinstance(season, int) else None))

        items = []
        for series in series_list:
            try:
                items.append(parse_series(series, queued_ids, queued_seasons))
            except MalformedDataError as e:
                logger.warning("malformed_series_skipped", service=self.name, error=str(e))
        logger.info("library_fetched", service=self.name, count=len(items), queued=len(queued_ids))
        return items
