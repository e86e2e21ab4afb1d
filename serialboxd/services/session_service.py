import hmac
import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from serialboxd.auth import security
from serialboxd.auth.security import TokenError, TokenIssuer
from serialboxd.core.crypto import DecryptionFailed, MalformedEnvelope, SymmetricCipher
from serialboxd.core.exceptions import (
    AuthenticationFailure,
    AuthorizationFailure,
    InternalFailure,
    NotFound,
    SessionRevoked,
    ValidationError,
)
from serialboxd.models.user import User
from serialboxd.services.session_store import SessionLockRegistry, SessionStore

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass
class LoginResult:
    user: User
    tokens: TokenPair


class SessionManager:
    """
    Login, refresh-token rotation, logout and password change.

    Each account holds at most one encrypted refresh token. A refresh token
    is accepted only while it is byte-equal to the stored one, so rotating
    or clearing the column invalidates every earlier token. Rotation runs
    under a per-account lock and commits through a conditional update, which
    keeps two concurrent refreshes of the same token from both succeeding.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        cipher: SymmetricCipher,
        issuer: TokenIssuer,
        locks: SessionLockRegistry,
        revoke_on_password_change: bool = False,
        revoke_on_refresh_reuse: bool = False,
    ):
        self.db = db
        self.store = SessionStore(db)
        self.cipher = cipher
        self.issuer = issuer
        self.locks = locks
        self.revoke_on_password_change = revoke_on_password_change
        self.revoke_on_refresh_reuse = revoke_on_refresh_reuse

    def _issue_pair(self, user_id: int, username: str) -> TokenPair:
        return TokenPair(
            access_token=self.issuer.issue_access_token(user_id, username),
            refresh_token=self.issuer.issue_refresh_token(user_id),
        )

    def _seal(self, refresh_token: str) -> str:
        return self.cipher.encrypt(refresh_token.encode("utf-8"))

    async def login(self, email: str, password: str) -> LoginResult:
        result = await self.db.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()

        if user is None:
            security.burn_password_check(password)
            logger.warning("Login failed: unknown account")
            raise AuthenticationFailure()
        if not security.verify_password(password, user.hashed_password):
            logger.warning("Login failed: wrong password for user %s", user.id)
            raise AuthenticationFailure()

        tokens = self._issue_pair(user.id, user.username)
        async with self.locks.hold(user.id):
            await self.store.replace(user.id, self._seal(tokens.refresh_token))
            await self.db.commit()

        logger.info("Login succeeded for user %s", user.id)
        return LoginResult(user=user, tokens=tokens)

    async def refresh(self, refresh_token: str) -> TokenPair:
        try:
            claims = self.issuer.verify_refresh_token(refresh_token)
        except TokenError as exc:
            logger.info("Refresh rejected: %s", exc)
            raise AuthorizationFailure("Token de atualização inválido ou expirado.") from exc

        user_id = claims["userId"]
        async with self.locks.hold(user_id):
            stored = await self.store.get(user_id)
            if stored is None or stored.envelope is None:
                logger.info("Refresh rejected: no active session for user %s", user_id)
                raise SessionRevoked()

            try:
                current = self.cipher.decrypt(stored.envelope)
            except (MalformedEnvelope, DecryptionFailed) as exc:
                logger.error("Stored refresh token for user %s could not be decrypted: %s", user_id, exc)
                raise InternalFailure() from exc

            if not hmac.compare_digest(current, refresh_token.encode("utf-8")):
                logger.warning("Refresh rejected: superseded token presented for user %s", user_id)
                if self.revoke_on_refresh_reuse:
                    await self.store.clear(user_id)
                    await self.db.commit()
                raise SessionRevoked("Token de atualização inválido.")

            tokens = self._issue_pair(user_id, stored.username)
            if not await self.store.swap(user_id, stored.envelope, self._seal(tokens.refresh_token)):
                await self.db.rollback()
                logger.warning("Refresh lost a concurrent rotation for user %s", user_id)
                raise SessionRevoked()
            await self.db.commit()

        logger.info("Refresh token rotated for user %s", user_id)
        return tokens

    async def logout(self, refresh_token: str | None) -> bool:
        """
        Revoke the session owning ``refresh_token``.

        Never raises: a missing, forged or unreadable token means there is no
        session left to revoke. Returns True when the token was recognised.
        """
        if not refresh_token:
            return False
        try:
            claims = self.issuer.verify_refresh_token(refresh_token, verify_exp=False)
        except TokenError:
            logger.info("Logout with unverifiable token treated as already logged out")
            return False

        user_id = claims["userId"]
        try:
            async with self.locks.hold(user_id):
                await self.store.clear(user_id)
                await self.db.commit()
        except SQLAlchemyError:
            logger.exception("Logout could not clear the session for user %s", user_id)
            await self.db.rollback()
            return False

        logger.info("Session revoked (logout) for user %s", user_id)
        return True

    async def revoke(self, user_id: int) -> None:
        async with self.locks.hold(user_id):
            await self.store.clear(user_id)

    async def change_password(self, user_id: int, current_password: str, new_password: str) -> None:
        if not current_password or not new_password:
            raise ValidationError()
        if len(new_password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"A nova senha deve ter no mínimo {MIN_PASSWORD_LENGTH} caracteres.")
        if security.password_too_long(new_password):
            raise ValidationError("A nova senha é longa demais.")

        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFound("Usuário não encontrado.")
        if not security.verify_password(current_password, user.hashed_password):
            logger.warning("Password change rejected: wrong current password for user %s", user_id)
            raise AuthorizationFailure("A senha atual está incorreta.")

        user.hashed_password = security.hash_password(new_password)
        if self.revoke_on_password_change:
            await self.revoke(user_id)
        await self.db.commit()
        logger.info("Password changed for user %s", user_id)
