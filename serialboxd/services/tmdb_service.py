import logging
from datetime import date, timedelta
from typing import Any

import httpx

from serialboxd.config import settings

logger = logging.getLogger(__name__)


class TmdbNotConfigured(Exception):
    pass


class TmdbUpstreamError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TmdbClient:
    """Forwards catalog queries to TMDB with the server-side API key. Responses are returned untouched."""

    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str = "https://api.themoviedb.org/3",
        language: str = "pt-BR",
        timeout: float = 10,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.language = language
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls) -> "TmdbClient":
        return cls(
            settings.TMDB_API_KEY,
            base_url=settings.TMDB_BASE_URL,
            language=settings.TMDB_LANGUAGE,
            timeout=settings.TMDB_TIMEOUT_SECONDS,
        )

    async def _get(self, path: str, params: dict[str, Any]) -> Any:
        if not self.api_key:
            raise TmdbNotConfigured("TMDB API key is not configured")

        query = {"api_key": self.api_key, "language": self.language, **params}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.get(path, params=query)
        except httpx.HTTPError as exc:
            logger.error("TMDB request %s failed: %s", path, exc)
            raise TmdbUpstreamError(str(exc)) from exc

        if response.status_code >= 400:
            logger.error("TMDB request %s returned HTTP %s: %s", path, response.status_code, response.text[:500])
            raise TmdbUpstreamError(f"HTTP {response.status_code}", status_code=response.status_code)
        try:
            return response.json()
        except ValueError as exc:
            logger.error("TMDB request %s returned a non-JSON body", path)
            raise TmdbUpstreamError("invalid JSON body") from exc

    async def discover(self, page: int = 1) -> Any:
        return await self._get("/discover/tv", {"sort_by": "popularity.desc", "page": page})

    async def search(self, query: str, page: int = 1) -> Any:
        return await self._get("/search/tv", {"query": query, "page": page})

    async def tv_details(self, tv_id: int) -> Any:
        return await self._get(
            f"/tv/{tv_id}",
            {"append_to_response": "credits,watch/providers,external_ids"},
        )

    async def recent(self, today: date | None = None, days: int = 90) -> Any:
        end = today or date.today()
        return await self._get(
            "/discover/tv",
            {
                "first_air_date.gte": (end - timedelta(days=days)).isoformat(),
                "first_air_date.lte": end.isoformat(),
                "sort_by": "popularity.desc",
                "page": 1,
            },
        )
