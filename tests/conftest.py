"""Shared pytest fixtures and builders."""

from datetime import datetime, timedelta, timezone

import httpx
import jwt
import pytest

from config import Settings

SIGNING_KEY = "unit-test-signing-key-0123456789abcdef"
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def make_settings(**overrides: object) -> Settings:
    values: dict[str, object] = dict(
        MS_CLIENT_ID="client-id",
        MS_CLIENT_SECRET="client-secret",
        SESSION_SECRET=SIGNING_KEY,
        GEMINI_API_KEY="gemini-key",
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        ENVIRONMENT="development",
        REDIRECT_URI="http://localhost:3000/redirect",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)  # type: ignore[arg-type]


def make_id_token(**claims: object) -> str:
    return jwt.encode(claims, SIGNING_KEY, algorithm="HS256")


def form(request: httpx.Request) -> dict[str, str]:
    """Decode an application/x-www-form-urlencoded request body."""
    return dict(httpx.QueryParams(request.content.decode()))


def token_json(
    access: str = "at-1",
    refresh: str | None = "rt-1",
    expires_in: int = 3600,
    scope: str = "Mail.Read User.Read openid profile email",
    **claims: object,
) -> dict[str, object]:
    body: dict[str, object] = {
        "token_type": "Bearer",
        "access_token": access,
        "expires_in": expires_in,
        "scope": scope,
    }
    if refresh is not None:
        body["refresh_token"] = refresh
    if claims:
        body["id_token"] = make_id_token(**claims)
    return body


class Clock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def clock() -> Clock:
    return Clock()
