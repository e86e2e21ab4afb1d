import re
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from serialboxd.auth.dependencies import get_mailer
from serialboxd.config import settings
from serialboxd.main import app
from serialboxd.models.user import User
from serialboxd.services.mail_service import MailProvider, SendResult


class RecordingMailer(MailProvider):
    def __init__(self, status: str = "SENT"):
        self.status = status
        self.sent: list[tuple[str, str, str]] = []

    async def send(self, to: str, subject: str, body: str) -> SendResult:
        self.sent.append((to, subject, body))
        return SendResult(status=self.status, error_message=None if self.status == "SENT" else "boom")


@pytest.fixture
def mailer(client) -> RecordingMailer:
    recording = RecordingMailer()
    app.dependency_overrides[get_mailer] = lambda: recording
    return recording


def _reset_token(mailer: RecordingMailer) -> str:
    _, _, body = mailer.sent[-1]
    match = re.search(r"reset-password\.html\?token=([0-9a-f]+)", body)
    assert match
    return match.group(1)


@pytest.mark.asyncio
async def test_forgot_password_sends_reset_link(client: AsyncClient, create_user, mailer: RecordingMailer, db_session: AsyncSession):
    user = await create_user()

    response = await client.post("/forgot-password", json={"email": "ana@x.com"})

    assert response.status_code == 200
    assert len(mailer.sent) == 1
    to, subject, body = mailer.sent[0]
    assert to == "ana@x.com"
    assert "http://test/reset-password.html?token=" in body
    stored = await db_session.get(User, user.id)
    assert stored.password_reset_token == _reset_token(mailer)
    assert stored.password_reset_expires is not None


@pytest.mark.asyncio
async def test_forgot_password_unknown_email_looks_the_same(client: AsyncClient, create_user, mailer: RecordingMailer):
    await create_user()

    known = await client.post("/forgot-password", json={"email": "ana@x.com"})
    unknown = await client.post("/forgot-password", json={"email": "ghost@x.com"})

    assert known.status_code == unknown.status_code == 200
    assert known.json() == unknown.json()
    assert len(mailer.sent) == 1


@pytest.mark.asyncio
async def test_forgot_password_requires_email(client: AsyncClient, mailer: RecordingMailer):
    response = await client.post("/forgot-password", json={})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_forgot_password_mail_failure_is_internal_error(client: AsyncClient, create_user, mailer: RecordingMailer):
    await create_user()
    mailer.status = "FAILED"

    response = await client.post("/forgot-password", json={"email": "ana@x.com"})

    assert response.status_code == 500
    assert response.json()["erro"] == "Erro interno do servidor."


@pytest.mark.asyncio
async def test_reset_password_flow(client: AsyncClient, create_user, mailer: RecordingMailer, db_session: AsyncSession):
    user = await create_user()
    await client.post("/forgot-password", json={"email": "ana@x.com"})
    token = _reset_token(mailer)

    response = await client.post("/reset-password", json={"token": token, "password": "outrasenha1"})

    assert response.status_code == 200
    stored = await db_session.get(User, user.id)
    assert stored.password_reset_token is None
    assert stored.password_reset_expires is None
    assert (await client.post("/login", json={"email": "ana@x.com", "senha": "outrasenha1"})).status_code == 200

    reused = await client.post("/reset-password", json={"token": token, "password": "terceira1"})
    assert reused.status_code == 400


@pytest.mark.asyncio
async def test_reset_password_with_expired_token(client: AsyncClient, create_user, db_session: AsyncSession):
    user = await create_user()
    user.password_reset_token = "a" * 40
    user.password_reset_expires = datetime.now(timezone.utc) - timedelta(seconds=1)
    await db_session.commit()

    response = await client.post("/reset-password", json={"token": "a" * 40, "password": "outrasenha1"})

    assert response.status_code == 400
    assert response.json()["erro"] == "Token inválido ou expirado."


@pytest.mark.asyncio
async def test_reset_password_with_unknown_token(client: AsyncClient):
    response = await client.post("/reset-password", json={"token": "nope", "password": "outrasenha1"})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_avatar_upload(client: AsyncClient, login_tokens, db_session: AsyncSession):
    tokens = await login_tokens()
    headers = {"Authorization": f"Bearer {tokens['accessToken']}"}

    first = await client.post(
        "/api/user/avatar",
        files={"avatar": ("me.png", b"\x89PNG\r\n\x1a\nfake", "image/png")},
        headers=headers,
    )
    assert first.status_code == 200
    first_url = first.json()["avatarUrl"]
    assert first_url.startswith("/uploads/avatars/1-")
    assert first_url.endswith(".png")
    first_path = Path(settings.UPLOAD_DIR) / "avatars" / Path(first_url).name
    assert first_path.read_bytes() == b"\x89PNG\r\n\x1a\nfake"

    second = await client.post(
        "/api/user/avatar",
        files={"avatar": ("me2.jpg", b"jpeg-bytes", "image/jpeg")},
        headers=headers,
    )
    assert second.status_code == 200
    assert not first_path.exists()

    login = await client.post("/login", json={"email": "ana@x.com", "senha": "senha123"})
    assert login.json()["avatarUrl"] == second.json()["avatarUrl"]


@pytest.mark.asyncio
async def test_avatar_upload_rejects_non_images(client: AsyncClient, login_tokens):
    tokens = await login_tokens()
    response = await client.post(
        "/api/user/avatar",
        files={"avatar": ("notes.txt", b"hello", "text/plain")},
        headers={"Authorization": f"Bearer {tokens['accessToken']}"},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_avatar_upload_requires_auth(client: AsyncClient):
    response = await client.post("/api/user/avatar", files={"avatar": ("me.png", b"x", "image/png")})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_avatar_suffix_comes_from_content_type(client: AsyncClient, login_tokens):
    tokens = await login_tokens()

    response = await client.post(
        "/api/user/avatar",
        files={"avatar": ("page.html", b"<script>alert(1)</script>", "image/png")},
        headers={"Authorization": f"Bearer {tokens['accessToken']}"},
    )

    assert response.status_code == 200
    assert response.json()["avatarUrl"].endswith(".png")


@pytest.mark.asyncio
@pytest.mark.parametrize("content_type", ["image/svg+xml", "text/html", "application/octet-stream"])
async def test_avatar_upload_rejects_unlisted_types(client: AsyncClient, login_tokens, content_type: str):
    tokens = await login_tokens()

    response = await client.post(
        "/api/user/avatar",
        files={"avatar": ("me.svg", b"<svg/>", content_type)},
        headers={"Authorization": f"Bearer {tokens['accessToken']}"},
    )

    assert response.status_code == 400
    assert response.json()["erro"] == "O arquivo deve ser uma imagem."
    assert not list((Path(settings.UPLOAD_DIR) / "avatars").glob("*.svg"))


@pytest.mark.asyncio
async def test_forgot_password_finds_email_as_registered(client: AsyncClient, mailer: RecordingMailer):
    await client.post("/api/register", json={"nome": "Ana", "email": "Ana@X.com", "senha": "senha123"})

    response = await client.post("/forgot-password", json={"email": "Ana@X.com"})

    assert response.status_code == 200
    assert [to for to, _, _ in mailer.sent] == ["Ana@X.com"]
