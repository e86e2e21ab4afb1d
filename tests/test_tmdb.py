from datetime import date

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from serialboxd.main import app
from serialboxd.routers.tmdb import get_tmdb_client
from serialboxd.services.tmdb_service import TmdbClient


def _install(handler, api_key: str | None = "test-tmdb-key") -> list[httpx.Request]:
    seen: list[httpx.Request] = []

    def recording(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    client = TmdbClient(api_key, base_url="https://tmdb.test/3", transport=httpx.MockTransport(recording))
    app.dependency_overrides[get_tmdb_client] = lambda: client
    return seen


@pytest.mark.asyncio
async def test_discover_forwards_page_and_hides_key(client: AsyncClient):
    seen = _install(lambda request: httpx.Response(200, json={"page": 2, "results": [{"id": 1}]}))

    response = await client.get("/api/tmdb/discover", params={"page": 2})

    assert response.status_code == 200
    assert response.json() == {"page": 2, "results": [{"id": 1}]}
    params = seen[0].url.params
    assert seen[0].url.path == "/3/discover/tv"
    assert params["api_key"] == "test-tmdb-key"
    assert params["language"] == "pt-BR"
    assert params["sort_by"] == "popularity.desc"
    assert params["page"] == "2"
    assert "test-tmdb-key" not in response.text


@pytest.mark.asyncio
async def test_search_requires_query(client: AsyncClient):
    _install(lambda request: httpx.Response(200, json={}))

    response = await client.get("/api/tmdb/search")

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_search_forwards_query(client: AsyncClient):
    seen = _install(lambda request: httpx.Response(200, json={"results": []}))

    response = await client.get("/api/tmdb/search", params={"query": "dark"})

    assert response.status_code == 200
    assert seen[0].url.path == "/3/search/tv"
    assert seen[0].url.params["query"] == "dark"
    assert seen[0].url.params["page"] == "1"


@pytest.mark.asyncio
async def test_tv_details_keeps_upstream_status(client: AsyncClient):
    seen = _install(lambda request: httpx.Response(404, json={"status_message": "not found"}))

    response = await client.get("/api/tmdb/tv/1399")

    assert response.status_code == 404
    assert response.json()["erro"] == "Falha ao buscar dados do TMDB."
    assert seen[0].url.params["append_to_response"] == "credits,watch/providers,external_ids"


@pytest.mark.asyncio
async def test_upstream_failure_is_generic_500(client: AsyncClient):
    _install(lambda request: httpx.Response(503, text="down"))

    response = await client.get("/api/tmdb/discover")

    assert response.status_code == 500
    assert response.json()["erro"] == "Falha ao buscar dados do TMDB."


@pytest.mark.asyncio
async def test_missing_api_key(client: AsyncClient):
    _install(lambda request: httpx.Response(200, json={}), api_key=None)

    response = await client.get("/api/tmdb/recent")

    assert response.status_code == 500
    assert response.json()["erro"] == "Chave da API do TMDB não configurada no servidor."


@pytest.mark.asyncio
async def test_recent_uses_air_date_window():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"results": []})

    tmdb = TmdbClient("k", base_url="https://tmdb.test/3", transport=httpx.MockTransport(handler))

    await tmdb.recent(today=date(2026, 10, 19), days=30)

    params = seen[0].url.params
    assert params["first_air_date.gte"] == "2026-09-19"
    assert params["first_air_date.lte"] == "2026-10-19"


@pytest.mark.asyncio
async def test_non_json_upstream_body_is_generic_500(client: AsyncClient):
    _install(lambda request: httpx.Response(200, text="<html>oops</html>"))

    response = await client.get("/api/tmdb/discover")

    assert response.status_code == 500
    assert response.headers["content-type"].startswith("application/json")
    assert response.json()["erro"] == "Falha ao buscar dados do TMDB."


@pytest.mark.asyncio
async def test_unexpected_error_returns_json_body(client: AsyncClient):
    def broken_client() -> TmdbClient:
        raise RuntimeError("boom")

    app.dependency_overrides[get_tmdb_client] = broken_client
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as raw:
        response = await raw.get("/api/tmdb/discover", headers={"X-Request-ID": "req-123"})

    assert response.status_code == 500
    assert response.headers["content-type"].startswith("application/json")
    assert response.json() == {"erro": "Erro interno do servidor.", "request_id": "req-123"}
