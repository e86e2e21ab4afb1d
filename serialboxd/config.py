from typing import List, cast
from pydantic import AnyHttpUrl, PostgresDsn, computed_field
from pydantic_core import MultiHostUrl
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Application
    PROJECT_NAME: str = "Serialboxd"
    VERSION: str = "1.0.0"
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    # Tokens
    ACCESS_TOKEN_SECRET: str
    REFRESH_TOKEN_SECRET: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7
    BCRYPT_ROUNDS: int = 10
    REVOKE_SESSIONS_ON_PASSWORD_CHANGE: bool = False
    REVOKE_SESSION_ON_REFRESH_REUSE: bool = False
    PASSWORD_RESET_EXPIRE_MINUTES: int = 60

    # Refresh token encryption (AES key wrapped with RSA)
    ENCRYPTION_KEY: str | None = None
    WRAPPED_ENCRYPTION_KEY: str | None = None
    PRIVATE_KEY_PATH: str = "private_key.pem"
    PUBLIC_KEY_PATH: str = "public_key.pem"

    # Validation
    BACKEND_CORS_ORIGINS: List[AnyHttpUrl] = []

    # TMDB
    TMDB_API_KEY: str | None = None
    TMDB_BASE_URL: str = "https://api.themoviedb.org/3"
    TMDB_LANGUAGE: str = "pt-BR"
    TMDB_TIMEOUT_SECONDS: int = 10
    TMDB_RECENT_DAYS: int = 90

    # Mail
    MAIL_PROVIDER: str = "mock"
    MAIL_DRY_RUN: bool = True
    MAIL_FROM: str = "Serialboxd <no-reply@serialboxd.local>"
    SMTP_HOST: str | None = None
    SMTP_PORT: int = 587
    SMTP_USER: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_USE_TLS: bool = True
    SMTP_TIMEOUT_SECONDS: int = 30

    # Uploads, served under /uploads
    UPLOAD_DIR: str = "public/uploads"

    # Database
    DATABASE_URL: str | None = None
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "serialboxd"

    @computed_field
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return str(cast(PostgresDsn, MultiHostUrl.build(
            scheme="postgresql+asyncpg",
            username=self.POSTGRES_USER,
            password=self.POSTGRES_PASSWORD,
            host=self.POSTGRES_HOST,
            port=self.POSTGRES_PORT,
            path=self.POSTGRES_DB,
        )))

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

settings = Settings()  # type: ignore
