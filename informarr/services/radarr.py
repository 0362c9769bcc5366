"""Radarr API client (movie library manager)."""
import httpx
from typing import List, Dict, Any, Optional, Set

import structlog

from informarr.config import Config, RadarrConfig, get_config
from informarr.core.models import Availability, FetchResult, LibraryItem, MediaType, normalize_external_ids
from informarr.errors import MalformedDataError
from informarr.services.base import BaseService

logger = structlog.get_logger(__name__)

QUEUE_PAGE_SIZE = 200


def movie_availability(movie: Dict[str, Any], queued_ids: Set[int]) -> Availability:
    if movie.get("hasFile"):
        return Availability.AVAILABLE
    if movie.get("id") in queued_ids:
        return Availability.DOWNLOADING
    return Availability.MISSING


def parse_movie(movie: Dict[str, Any], queued_ids: Set[int]) -> LibraryItem:
    """Convertit un film Radarr en LibraryItem."""
    movie_id = movie.get("id") if isinstance(movie, dict) else None
    if not isinstance(movie_id, int):
        raise MalformedDataError(f"Radarr movie without a numeric id: {movie_id!r}")
    return LibraryItem(
        library_id=movie_id,
        media_type=MediaType.MOVIE,
        external_ids=normalize_external_ids({
            "tmdb": movie.get("tmdbId"),
            "imdb": movie.get("imdbId"),
        }),
        monitored=bool(movie.get("monitored", True)),
        availability=movie_availability(movie, queued_ids),
        source=RadarrService.name,
        title=movie.get("title") or "",
    )


class RadarrService(BaseService[LibraryItem]):
    """Service pour interagir avec Radarr."""

    name = "radarr"

    def __init__(
        self,
        config: Optional[Config] = None,
        radarr: Optional[RadarrConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        config = config or get_config()
        radarr = radarr or config.radarr
        if not radarr:
            raise ValueError("Radarr configuration not found")
        super().__init__(radarr.url, radarr.api_key, config.http, transport)

    async def fetch_library(self, media_type: MediaType) -> FetchResult[LibraryItem]:
        """Récupère tous les films avec leur disponibilité."""
        if media_type != MediaType.MOVIE:
            return FetchResult(service=self.name, items=[], stale=False)
        return await self._guarded(self._fetch_movies, key=media_type.value)

    async def _fetch_movies(self) -> List[LibraryItem]:
        movies = await self.client.get_json("/api/v3/movie")
        if not isinstance(movies, list):
            raise MalformedDataError("Radarr movie list is not an array")
        queue = await self._get_paged_records("/api/v3/queue", QUEUE_PAGE_SIZE)
        queued_ids = {
            record["movieId"] for record in queue
            if isinstance(record, dict) and isinstance(record.get("movieId"), int)
        }

        items = []
        for movie in movies:
            try:
                items.append(parse_movie(movie, queued_ids))
            except MalformedDataError as e:
                logger.warning("malformed_movie_skipped", service=self.name, error=str(e))
        logger.info("library_fetched", service=self.name, count=len(items), queued=len(queued_ids))
        return items
