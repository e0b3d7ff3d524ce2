# === NAVMAP v1 ===
# {
#   "module": "DandiSearch.SemanticSearch.api",
#   "purpose": "Public search boundary and HTTP-style request handling",
#   "sections": [
#     {
#       "id": "semanticsearchapi",
#       "name": "SemanticSearchAPI",
#       "anchor": "class-semanticsearchapi",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Public entry points for DANDI semantic search.

``dandi_semantic_search`` is the outer boundary exposed to callers: it takes a
free-text query and returns record ids. Only :class:`InvalidQueryError`
crosses it; internal failures are logged and degrade to an empty result.
``post_search`` handles JSON-style payloads for an HTTP layer and reports
outcomes as status codes.
"""

from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any, List, Mapping, MutableMapping, Sequence

from .errors import InvalidQueryError, SearchTimeoutError, SemanticSearchError
from .service import SemanticSearchService
from .types import SearchHit

__all__ = ("SemanticSearchAPI",)

logger = logging.getLogger(__name__)


class SemanticSearchAPI:
    """Thin facade over :class:`SemanticSearchService`.

    Examples:
        >>> api = SemanticSearchAPI(service)  # doctest: +SKIP
        >>> api.dandi_semantic_search("olfactory bulb recordings in rats")  # doctest: +SKIP
        ['000026', '000042']
    """

    def __init__(self, service: SemanticSearchService) -> None:
        if not isinstance(service, SemanticSearchService):
            raise TypeError("service must be a SemanticSearchService instance")
        self._service = service

    def dandi_semantic_search(self, query: str) -> List[str]:
        """Return ids of the records most relevant to ``query``.

        Raises:
            InvalidQueryError: If ``query`` is empty, blank, or too long.
        """
        try:
            return list(self._service.search(query))
        except InvalidQueryError:
            raise
        except SemanticSearchError as exc:
            logger.error(
                "search-degraded",
                extra={"event": {"error": str(exc), "error_type": type(exc).__name__}},
            )
            return []

    def post_search(self, payload: Mapping[str, Any]) -> tuple[int, Mapping[str, Any]]:
        """Handle a search request payload.

        Args:
            payload: Mapping with ``query`` and optional ``top_k`` (or
                ``limit``), ``filters``, ``with_scores`` and ``timeout``.

        Returns:
            Tuple of (HTTP status code, response body):
            - 200: ``{"results": [...]}`` with ids, or hit objects when
              ``with_scores`` is set
            - 400: Malformed payload or invalid query
            - 504: The request timeout elapsed
            - 503: Search dependencies (embedding provider) failed
        """
        try:
            request = self._parse_request(payload)
        except (KeyError, TypeError, ValueError) as exc:
            return HTTPStatus.BAD_REQUEST, {"error": str(exc)}

        try:
            results = self._service.search(
                request["query"],
                request["top_k"],
                request["filters"],
                with_scores=request["with_scores"],
                timeout=request["timeout"],
            )
        except InvalidQueryError as exc:
            return HTTPStatus.BAD_REQUEST, {"error": str(exc)}
        except SearchTimeoutError as exc:
            return HTTPStatus.GATEWAY_TIMEOUT, {"error": str(exc)}
        except SemanticSearchError as exc:
            logger.error("search-request-failed", extra={"event": {"error": str(exc)}})
            return HTTPStatus.SERVICE_UNAVAILABLE, {"error": str(exc)}

        if request["with_scores"]:
            body = {"results": [self._hit_body(hit) for hit in results]}
        else:
            body = {"results": list(results)}
        return HTTPStatus.OK, body

    def _parse_request(self, payload: Mapping[str, Any]) -> MutableMapping[str, Any]:
        if not isinstance(payload, Mapping):
            raise TypeError("payload must be a JSON object")
        query = payload["query"]
        top_k = payload.get("top_k", payload.get("limit"))
        timeout = payload.get("timeout")
        return {
            "query": query,
            "top_k": int(top_k) if top_k is not None else None,
            "filters": self._normalize_filters(payload.get("filters") or {}) or None,
            "with_scores": bool(payload.get("with_scores", False)),
            "timeout": float(timeout) if timeout is not None else None,
        }

    def _normalize_filters(self, payload: Mapping[str, Any]) -> MutableMapping[str, Any]:
        if not isinstance(payload, Mapping):
            raise TypeError("filters must be an object")
        normalized: MutableMapping[str, Any] = {}
        for key, value in payload.items():
            if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
                normalized[str(key)] = [str(item) for item in value]
            else:
                normalized[str(key)] = value
        return normalized

    @staticmethod
    def _hit_body(hit: SearchHit) -> Mapping[str, Any]:
        return {"id": hit.record_id, "score": hit.score, "payload": dict(hit.payload)}
