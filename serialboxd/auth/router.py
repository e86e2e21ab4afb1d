import json
from typing import Annotated

from fastapi import APIRouter, Depends, File, Request, Response, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from serialboxd.auth import schemas
from serialboxd.auth.dependencies import CurrentClaims, get_mailer, get_session_manager
from serialboxd.core.exceptions import AuthorizationFailure
from serialboxd.core.rate_limit import RateLimit
from serialboxd.database import get_db
from serialboxd.services.account_service import AccountService
from serialboxd.services.mail_service import MailProvider
from serialboxd.services.session_service import SessionManager

router = APIRouter()

Sessions = Annotated[SessionManager, Depends(get_session_manager)]
Db = Annotated[AsyncSession, Depends(get_db)]

LOGIN_LIMIT = RateLimit("auth_login", limit=5, window_seconds=60, json_fields=("email",))
REFRESH_LIMIT = RateLimit("auth_refresh", limit=10, window_seconds=60)
FORGOT_PASSWORD_LIMIT = RateLimit("auth_forgot_password", limit=5, window_seconds=300, json_fields=("email",))


async def _presented_refresh_token(request: Request) -> str | None:
    # logout accepts any body; only {"refreshToken": "<str>"} names a session
    try:
        body = json.loads(await request.body() or b"null")
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    token = body.get("refreshToken")
    return token if isinstance(token, str) else None


@router.post(
    "/api/register",
    status_code=status.HTTP_201_CREATED,
    response_model=schemas.RegisterResponse,
)
async def register(payload: schemas.RegisterRequest, db: Db):
    user = await AccountService.register(db, name=payload.name, email=payload.email, password=payload.password)
    return schemas.RegisterResponse(name=user.username, user_id=user.id)


@router.post(
    "/login",
    response_model=schemas.LoginResponse,
    dependencies=[Depends(LOGIN_LIMIT)],
)
async def login(payload: schemas.LoginRequest, sessions: Sessions):
    result = await sessions.login(payload.email, payload.password)
    return schemas.LoginResponse(
        name=result.user.username,
        email=result.user.email,
        avatar_url=result.user.avatar_url,
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
    )


@router.post(
    "/api/auth/refresh",
    response_model=schemas.TokenPairResponse,
    dependencies=[Depends(REFRESH_LIMIT)],
)
async def refresh_token(sessions: Sessions, payload: schemas.RefreshRequest | None = None):
    if payload is None or not payload.refresh_token:
        raise AuthorizationFailure("Refresh token não fornecido.", status_code=status.HTTP_401_UNAUTHORIZED)
    tokens = await sessions.refresh(payload.refresh_token)
    return schemas.TokenPairResponse(access_token=tokens.access_token, refresh_token=tokens.refresh_token)


@router.post("/api/logout", responses={204: {"description": "No session to revoke"}})
async def logout(request: Request, sessions: Sessions):
    recognised = await sessions.logout(await _presented_refresh_token(request))
    if not recognised:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return schemas.MessageResponse(message="Logout bem-sucedido.")


@router.post("/api/user/change-password", response_model=schemas.MessageResponse)
async def change_password(payload: schemas.PasswordChange, claims: CurrentClaims, sessions: Sessions):
    await sessions.change_password(claims.user_id, payload.current_password, payload.new_password)
    return schemas.MessageResponse(message="Senha alterada com sucesso!")


@router.post("/api/user/avatar", response_model=schemas.AvatarResponse)
async def upload_avatar(claims: CurrentClaims, db: Db, avatar: UploadFile = File(...)):
    avatar_url = await AccountService.update_avatar(db, user_id=claims.user_id, file=avatar)
    return schemas.AvatarResponse(message="Avatar atualizado com sucesso!", avatar_url=avatar_url)


@router.post(
    "/forgot-password",
    response_model=schemas.MessageResponse,
    dependencies=[Depends(FORGOT_PASSWORD_LIMIT)],
)
async def forgot_password(
    payload: schemas.ForgotPasswordRequest,
    request: Request,
    db: Db,
    mailer: Annotated[MailProvider, Depends(get_mailer)],
):
    await AccountService.request_password_reset(db, mailer, email=payload.email, base_url=str(request.base_url))
    return schemas.MessageResponse(message="Se o e-mail estiver cadastrado, um link será enviado.")


@router.post("/reset-password", response_model=schemas.MessageResponse)
async def reset_password(payload: schemas.ResetPasswordRequest, db: Db):
    await AccountService.reset_password(db, token=payload.token, password=payload.password)
    return schemas.MessageResponse(message="Senha redefinida com sucesso!")
