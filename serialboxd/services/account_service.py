import logging
import os
import secrets
import shutil
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

from fastapi import UploadFile
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from serialboxd.auth import security
from serialboxd.config import settings
from serialboxd.core.exceptions import InternalFailure, NotFound, ValidationError
from serialboxd.models.user import User
from serialboxd.services.mail_service import MailProvider, password_reset_message
from serialboxd.services.session_store import SessionStore

logger = logging.getLogger(__name__)

AVATAR_SUBDIR = "avatars"

# the stored suffix comes from the content type, never from the client filename
AVATAR_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/gif": ".gif",
    "image/webp": ".webp",
}


def _to_utc_datetime(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class AccountService:
    @staticmethod
    async def get_by_email(db: AsyncSession, email: str) -> User | None:
        result = await db.execute(select(User).where(User.email == email))
        return result.scalar_one_or_none()

    @staticmethod
    async def register(db: AsyncSession, *, name: str, email: str, password: str) -> User:
        if security.password_too_long(password):
            raise ValidationError("A senha é longa demais.")
        if await AccountService.get_by_email(db, email):
            raise ValidationError("E-mail já cadastrado.")

        user = User(username=name, email=email, hashed_password=security.hash_password(password))
        db.add(user)
        try:
            await db.commit()
        except IntegrityError as exc:
            await db.rollback()
            raise ValidationError("E-mail já cadastrado.") from exc
        await db.refresh(user)

        logger.info("New user registered: %s", user.id)
        return user

    @staticmethod
    async def request_password_reset(db: AsyncSession, mailer: MailProvider, *, email: str, base_url: str) -> None:
        """Issue a one-hour reset token and mail it. Unknown emails are ignored silently."""
        user = await AccountService.get_by_email(db, email)
        if user is None:
            logger.info("Password reset requested for unknown account")
            return

        user.password_reset_token = secrets.token_hex(20)
        user.password_reset_expires = datetime.now(timezone.utc) + timedelta(minutes=settings.PASSWORD_RESET_EXPIRE_MINUTES)
        await db.commit()

        subject, body = password_reset_message(f"{base_url.rstrip('/')}/reset-password.html?token={user.password_reset_token}")
        result = await mailer.send(user.email, subject, body)
        if result.status != "SENT":
            logger.error("Password reset mail for user %s failed: %s", user.id, result.error_message)
            raise InternalFailure()
        logger.info("Password reset mail sent for user %s", user.id)

    @staticmethod
    async def reset_password(db: AsyncSession, *, token: str, password: str) -> User:
        invalid = ValidationError("Token inválido ou expirado.")
        result = await db.execute(select(User).where(User.password_reset_token == token))
        user = result.scalar_one_or_none()
        if user is None or user.password_reset_expires is None:
            raise invalid
        if _to_utc_datetime(user.password_reset_expires) <= datetime.now(timezone.utc):
            raise invalid
        if security.password_too_long(password):
            raise ValidationError("A senha é longa demais.")

        user.hashed_password = security.hash_password(password)
        user.password_reset_token = None
        user.password_reset_expires = None
        if settings.REVOKE_SESSIONS_ON_PASSWORD_CHANGE:
            await SessionStore(db).replace(user.id, None)
        await db.commit()

        logger.info("Password reset via token for user %s", user.id)
        return user

    @staticmethod
    async def update_avatar(db: AsyncSession, *, user_id: int, file: UploadFile) -> str:
        if not file.filename:
            raise ValidationError("Nenhum arquivo foi enviado.")
        extension = AVATAR_EXTENSIONS.get((file.content_type or "").lower())
        if extension is None:
            raise ValidationError("O arquivo deve ser uma imagem.")

        user = await db.get(User, user_id)
        if user is None:
            raise NotFound("Usuário não encontrado.")

        upload_dir = Path(settings.UPLOAD_DIR) / AVATAR_SUBDIR
        os.makedirs(upload_dir, exist_ok=True)

        filename = f"{user_id}-{int(time.time() * 1000)}-{secrets.randbelow(10**9)}{extension}"
        with open(upload_dir / filename, "wb") as buffer:
            shutil.copyfileobj(file.file, buffer)

        previous = user.avatar_url
        user.avatar_url = f"/uploads/{AVATAR_SUBDIR}/{filename}"
        await db.commit()

        if previous and previous.startswith(f"/uploads/{AVATAR_SUBDIR}/"):
            old_path = upload_dir / Path(previous).name
            try:
                old_path.unlink(missing_ok=True)
            except OSError:
                logger.warning("Could not delete previous avatar %s", old_path)

        logger.info("Avatar updated for user %s", user_id)
        return user.avatar_url
