from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, status

from serialboxd.config import settings
from serialboxd.core.exceptions import InternalFailure, ServiceError, ValidationError
from serialboxd.services.tmdb_service import TmdbClient, TmdbNotConfigured, TmdbUpstreamError

router = APIRouter()

UPSTREAM_FAILURE_MESSAGE = "Falha ao buscar dados do TMDB."


def get_tmdb_client() -> TmdbClient:
    return TmdbClient.from_settings()


async def _forward(call, *, keep_upstream_status: bool = False) -> Any:
    try:
        return await call
    except TmdbNotConfigured as exc:
        raise InternalFailure("Chave da API do TMDB não configurada no servidor.") from exc
    except TmdbUpstreamError as exc:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        if keep_upstream_status and exc.status_code:
            status_code = exc.status_code
        raise ServiceError(UPSTREAM_FAILURE_MESSAGE, status_code=status_code) from exc


@router.get("/discover")
async def discover(
    client: Annotated[TmdbClient, Depends(get_tmdb_client)],
    page: Annotated[int, Query(ge=1)] = 1,
):
    return await _forward(client.discover(page))


@router.get("/search")
async def search(
    client: Annotated[TmdbClient, Depends(get_tmdb_client)],
    query: str | None = None,
    page: Annotated[int, Query(ge=1)] = 1,
):
    if not query:
        raise ValidationError("O parâmetro 'query' é obrigatório.")
    return await _forward(client.search(query, page))


@router.get("/tv/{tv_id}")
async def tv_details(
    tv_id: int,
    client: Annotated[TmdbClient, Depends(get_tmdb_client)],
):
    return await _forward(client.tv_details(tv_id), keep_upstream_status=True)


@router.get("/recent")
async def recent(client: Annotated[TmdbClient, Depends(get_tmdb_client)]):
    return await _forward(client.recent(days=settings.TMDB_RECENT_DAYS))
