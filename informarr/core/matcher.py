"""Matching cross-services par identifiants externes."""
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Tuple
import logging

from informarr.core.models import LibraryItem, MediaRequest, MediaType

logger = logging.getLogger(__name__)

IndexKey = Tuple[MediaType, str, str]


@dataclass
class MatchResult:
    item: Optional[LibraryItem] = None
    namespace: Optional[str] = None
    candidates: List[LibraryItem] = field(default_factory=list)

    @property
    def ambiguous(self) -> bool:
        return len(self.candidates) > 1


def _sort_key(item: LibraryItem) -> Tuple[int, str]:
    return (item.library_id, item.source)


class MediaMatcher:
    """Matcher pour relier une demande à un item de bibliothèque."""

    def __init__(self, namespace_priority: Dict[str, List[str]]):
        self.namespace_priority = {
            MediaType(media_type): [ns.lower() for ns in namespaces]
            for media_type, namespaces in namespace_priority.items()
        }

    def trusted_namespaces(self, media_type: MediaType) -> List[str]:
        return self.namespace_priority.get(media_type, [])

    @staticmethod
    def build_index(items: List[LibraryItem]) -> Dict[IndexKey, List[LibraryItem]]:
        """Index (type, namespace, id) -> items, depuis l'union des bibliothèques."""
        index: Dict[IndexKey, List[LibraryItem]] = {}
        for item in items:
            for namespace, value in item.external_ids.items():
                index.setdefault((item.media_type, namespace, value), []).append(item)
        return index

    def has_trusted_id(self, request: MediaRequest) -> bool:
        return any(ns in request.external_ids for ns in self.trusted_namespaces(request.media_type))

    def match_by_id(self, request: MediaRequest, index: Dict[IndexKey, List[LibraryItem]]) -> MatchResult:
        """Match par ID, en suivant l'ordre de priorité des namespaces.

        The chosen item comes from the highest-priority namespace that has any
        match, lowest library id first. Every distinct item matched under any
        trusted namespace is reported in candidates.
        """
        result = MatchResult()
        seen = set()
        for namespace in self.trusted_namespaces(request.media_type):
            value = request.external_ids.get(namespace)
            if value is None:
                continue
            found = sorted(index.get((request.media_type, namespace, value), []), key=_sort_key)
            if found and result.item is None:
                result.item = found[0]
                result.namespace = namespace
            for item in found:
                key = (item.source, item.library_id)
                if key not in seen:
                    seen.add(key)
                    result.candidates.append(item)

        if result.ambiguous:
            logger.warning(
                f"Ambiguous match for request {request.request_id}: "
                f"{[(c.source, c.library_id) for c in result.candidates]}, "
                f"picked {result.item.source}#{result.item.library_id} via {result.namespace}"
            )
        return result
