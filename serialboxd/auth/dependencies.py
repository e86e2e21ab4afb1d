import logging
from typing import Annotated

from fastapi import Depends, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from serialboxd.auth.schemas import AccessClaims
from serialboxd.auth.security import TokenError, TokenIssuer
from serialboxd.config import settings
from serialboxd.core.crypto import SymmetricCipher
from serialboxd.core.exceptions import AuthorizationFailure, InternalFailure
from serialboxd.database import get_db
from serialboxd.services.mail_service import MailProvider, get_mail_provider
from serialboxd.services.session_service import SessionManager
from serialboxd.services.session_store import SessionLockRegistry

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def get_token_issuer(request: Request) -> TokenIssuer:
    return request.app.state.token_issuer


def get_cipher(request: Request) -> SymmetricCipher:
    cipher = getattr(request.app.state, "cipher", None)
    if cipher is None:
        logger.error("Refresh token cipher is not initialised")
        raise InternalFailure()
    return cipher


def get_session_locks(request: Request) -> SessionLockRegistry:
    return request.app.state.session_locks


def get_mailer() -> MailProvider:
    return get_mail_provider()


async def get_session_manager(
    db: Annotated[AsyncSession, Depends(get_db)],
    cipher: Annotated[SymmetricCipher, Depends(get_cipher)],
    issuer: Annotated[TokenIssuer, Depends(get_token_issuer)],
    locks: Annotated[SessionLockRegistry, Depends(get_session_locks)],
) -> SessionManager:
    return SessionManager(
        db,
        cipher=cipher,
        issuer=issuer,
        locks=locks,
        revoke_on_password_change=settings.REVOKE_SESSIONS_ON_PASSWORD_CHANGE,
        revoke_on_refresh_reuse=settings.REVOKE_SESSION_ON_REFRESH_REUSE,
    )


async def require_access_token(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
    issuer: Annotated[TokenIssuer, Depends(get_token_issuer)],
) -> AccessClaims:
    """Route guard: 401 without a bearer token, 403 when it is invalid or expired."""
    if credentials is None or not credentials.credentials:
        raise AuthorizationFailure("Acesso não autorizado.", status_code=status.HTTP_401_UNAUTHORIZED)
    try:
        payload = issuer.verify_access_token(credentials.credentials)
    except TokenError as exc:
        raise AuthorizationFailure() from exc
    return AccessClaims(user_id=payload["userId"], username=payload.get("username"), exp=payload["exp"])


CurrentClaims = Annotated[AccessClaims, Depends(require_access_token)]
