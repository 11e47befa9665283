"""
Service container and FastAPI dependencies for the session cookie.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Request, Response

from analysis_client import AnalysisClient
from config import Settings
from database import Database
from enrichment import EnrichmentPipeline
from errors import NotAuthenticated
from mail_gateway import MailGateway
from models import IdentityRecord
from session_store import SessionStore
from token_broker import TokenBroker

SESSION_ALGORITHM = "HS256"


@dataclass
class Services:
    """Everything a request handler needs, built once in the lifespan."""
    settings: Settings
    db:       Database
    sessions: SessionStore
    broker:   TokenBroker
    gateway:  MailGateway
    analyzer: AnalysisClient
    pipeline: EnrichmentPipeline


def get_services(request: Request) -> Services:
    return request.app.state.services


# ── Session cookie ────────────────────────────────────────────────────────────

def sign_session(session_id: str, settings: Settings) -> str:
    now = datetime.now(timezone.utc)
    return jwt.encode(
        {"sid": session_id, "iat": now,
         "exp": now + timedelta(hours=settings.SESSION_MAX_AGE_HOURS)},
        settings.SESSION_SECRET, algorithm=SESSION_ALGORITHM)


def read_session_cookie(request: Request, settings: Settings) -> Optional[str]:
    cookie = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if not cookie:
        return None
    try:
        payload = jwt.decode(cookie, settings.SESSION_SECRET, algorithms=[SESSION_ALGORITHM])
    except jwt.InvalidTokenError:
        return None
    sid = payload.get("sid")
    return sid if isinstance(sid, str) and sid else None


def set_session_cookie(response: Response, session_id: str, settings: Settings) -> None:
    response.set_cookie(
        settings.SESSION_COOKIE_NAME,
        sign_session(session_id, settings),
        max_age=settings.SESSION_MAX_AGE_HOURS * 3600,
        httponly=True,
        secure=settings.is_production,
        samesite="none" if settings.is_production else "lax",
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.SESSION_COOKIE_NAME,
        httponly=True,
        secure=settings.is_production,
        samesite="none" if settings.is_production else "lax",
    )


# ── Dependencies ──────────────────────────────────────────────────────────────

async def current_session_id(request: Request, services: Services = Depends(get_services)) -> Optional[str]:
    return read_session_cookie(request, services.settings)


async def optional_identity(
    session_id: Optional[str] = Depends(current_session_id),
    services: Services = Depends(get_services),
) -> Optional[IdentityRecord]:
    if session_id is None:
        return None
    return await services.sessions.get(session_id)


async def current_identity(identity: Optional[IdentityRecord] = Depends(optional_identity)) -> IdentityRecord:
    if identity is None:
        raise NotAuthenticated("User not authenticated.")
    return identity
