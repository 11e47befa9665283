from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings

from errors import ProviderConfigError


class Settings(BaseSettings):
    # Microsoft identity platform
    MS_CLIENT_ID: str = ""
    MS_CLIENT_SECRET: str = ""
    MS_AUTHORITY: str = "https://login.microsoftonline.com/common"
    MAIL_SCOPES: list[str] = ["Mail.Read", "User.Read", "offline_access"]

    # Deployment
    ENVIRONMENT: str = "development"
    PUBLIC_BASE_URL: str = "https://siteweave-ai-backend.onrender.com"
    REDIRECT_URI: Optional[str] = None
    FRONTEND_ORIGINS: list[str] = [
        "http://localhost:3001",
        "https://siteweave-ai.netlify.app",
    ]

    # Session cookie
    SESSION_SECRET: str = ""
    SESSION_COOKIE_NAME: str = "siteweave_sid"
    SESSION_MAX_AGE_HOURS: int = 24

    # AI (Gemini via OpenAI-compatible REST)
    GEMINI_API_KEY: str = ""
    AI_MODEL: str = "gemini-2.5-flash"
    AI_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    ANALYSIS_TIMEOUT_SECONDS: float = 45.0

    # Microsoft Graph
    GRAPH_BASE_URL: str = "https://graph.microsoft.com/v1.0"
    MAIL_PAGE_SIZE: int = 10
    MAIL_PAGE_SIZE_MAX: int = 50
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./siteweave.db"

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def redirect_uri(self) -> str:
        if self.REDIRECT_URI:
            return self.REDIRECT_URI
        if self.is_production:
            return f"{self.PUBLIC_BASE_URL.rstrip('/')}/redirect"
        return "http://localhost:3000/redirect"

    @property
    def database_url(self) -> str:
        url = self.DATABASE_URL
        if url.startswith("postgres://"):
            return url.replace("postgres://", "postgresql+asyncpg://", 1)
        if url.startswith("postgresql://") and "+asyncpg" not in url:
            return url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return url

    def page_size(self, limit: Optional[int] = None) -> int:
        """Clamp a requested page size to [1, MAIL_PAGE_SIZE_MAX]."""
        if limit is None:
            limit = self.MAIL_PAGE_SIZE
        return max(1, min(int(limit), self.MAIL_PAGE_SIZE_MAX))

    def validate_provider(self) -> None:
        """Fail fast when the secrets needed to serve logins are missing."""
        missing = [
            name
            for name in ("MS_CLIENT_ID", "MS_CLIENT_SECRET", "SESSION_SECRET")
            if not getattr(self, name)
        ]
        if missing:
            raise ProviderConfigError(f"Missing configuration: {', '.join(missing)}")


@lru_cache()
def get_settings():
    return Settings()
