import logging

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "Erro interno do servidor."


class ServiceError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    message: str = INTERNAL_ERROR_MESSAGE

    def __init__(self, message: str | None = None, *, status_code: int | None = None):
        if message is not None:
            self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class ValidationError(ServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Todos os campos são obrigatórios."


class AuthenticationFailure(ServiceError):
    status_code = status.HTTP_401_UNAUTHORIZED
    message = "E-mail ou senha inválidos."


class AuthorizationFailure(ServiceError):
    status_code = status.HTTP_403_FORBIDDEN
    message = "Token inválido ou expirado."


class SessionRevoked(ServiceError):
    status_code = status.HTTP_403_FORBIDDEN
    message = "Sessão inválida ou revogada."


class NotFound(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    message = "Recurso não encontrado."


class RateLimited(ServiceError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, retry_after: int):
        self.retry_after = retry_after
        super().__init__(f"Muitas requisições. Tente novamente em {retry_after} segundos.")


class InternalFailure(ServiceError):
    pass


def _error_body(request: Request, message: str, **extra) -> dict:
    return {"erro": message, "request_id": getattr(request.state, "request_id", None), **extra}


async def service_exception_handler(request: Request, exc: ServiceError):
    headers = None
    if exc.status_code == status.HTTP_401_UNAUTHORIZED:
        headers = {"WWW-Authenticate": "Bearer"}
    elif isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.message),
        headers=headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body(request, ValidationError.message, detail=jsonable_encoder(exc.errors())),
    )


async def database_exception_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body(request, INTERNAL_ERROR_MESSAGE),
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(
        "Unhandled error on %s %s (request_id=%s)",
        request.method,
        request.url.path,
        getattr(request.state, "request_id", None),
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body(request, INTERNAL_ERROR_MESSAGE),
    )
