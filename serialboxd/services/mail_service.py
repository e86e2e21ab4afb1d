import asyncio
import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage

from serialboxd.config import settings

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    status: str
    error_message: str | None = None


def _redact(email: str) -> str:
    local, sep, domain = email.partition("@")
    return f"{local[:2]}***@{domain}" if sep else "redacted"


class MailProvider:
    async def send(self, to: str, subject: str, body: str) -> SendResult:
        raise NotImplementedError


class MockMailProvider(MailProvider):
    async def send(self, to: str, subject: str, body: str) -> SendResult:
        logger.info("Mail (%s) to %s: %s", "dry-run" if settings.MAIL_DRY_RUN else "mock", _redact(to), subject)
        return SendResult(status="SENT")


class SmtpMailProvider(MailProvider):
    def _deliver(self, message: EmailMessage) -> None:
        context = ssl.create_default_context()
        if settings.SMTP_USE_TLS:
            with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=settings.SMTP_TIMEOUT_SECONDS) as server:
                server.starttls(context=context)
                if settings.SMTP_USER and settings.SMTP_PASSWORD:
                    server.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
                server.send_message(message)
        else:
            with smtplib.SMTP_SSL(
                settings.SMTP_HOST, settings.SMTP_PORT, context=context, timeout=settings.SMTP_TIMEOUT_SECONDS
            ) as server:
                if settings.SMTP_USER and settings.SMTP_PASSWORD:
                    server.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
                server.send_message(message)

    async def send(self, to: str, subject: str, body: str) -> SendResult:
        if not settings.SMTP_HOST:
            return SendResult(status="FAILED", error_message="Missing SMTP configuration")

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = settings.MAIL_FROM
        message["To"] = to
        message.set_content(body)
        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as exc:
            return SendResult(status="FAILED", error_message=str(exc))
        logger.info("Mail sent to %s: %s", _redact(to), subject)
        return SendResult(status="SENT")


def get_mail_provider() -> MailProvider:
    if settings.MAIL_PROVIDER.lower() == "smtp" and not settings.MAIL_DRY_RUN:
        return SmtpMailProvider()
    return MockMailProvider()


def password_reset_message(reset_url: str) -> tuple[str, str]:
    subject = f"Redefinição de Senha - {settings.PROJECT_NAME}"
    body = (
        "Você está recebendo este e-mail porque solicitou a redefinição de senha para sua conta.\n\n"
        "Por favor, clique no link a seguir ou cole no seu navegador para completar o processo:\n\n"
        f"{reset_url}\n\n"
        "Se você não solicitou isso, por favor, ignore este e-mail e sua senha permanecerá inalterada.\n"
    )
    return subject, body
