"""
SiteWeave Broker API
Session/token broker between the browser, Microsoft Graph and Gemini.
"""
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from analysis_client import AnalysisClient
from config import Settings, get_settings
from database import Database
from dependencies import Services, get_services
from enrichment import EnrichmentPipeline
from errors import (
    ExchangeError,
    NotAuthenticated,
    ProviderConfigError,
    ReauthRequired,
    UpstreamError,
)
from mail_gateway import MailGateway
from routes import auth, emails
from session_store import SessionStore
from token_broker import TokenBroker

VERSION = "1.0.0"

logger = logging.getLogger("siteweave")


def create_app(
    settings: Optional[Settings] = None,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    gateway: Optional[MailGateway] = None,
    analyzer: Optional[AnalysisClient] = None,
) -> FastAPI:
    """Build the application. Collaborators can be injected for tests."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(
            level=settings.LOG_LEVEL.upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        settings.validate_provider()

        http = http_client or httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)
        db = Database(settings.database_url)
        await db.init()

        broker = TokenBroker(settings, http)
        mail = gateway or MailGateway(settings, http)
        ai = analyzer or AnalysisClient(settings, http)
        app.state.services = Services(
            settings=settings,
            db=db,
            sessions=SessionStore(db, max_age=timedelta(hours=settings.SESSION_MAX_AGE_HOURS)),
            broker=broker,
            gateway=mail,
            analyzer=ai,
            pipeline=EnrichmentPipeline(broker, mail, ai, settings.MAIL_SCOPES),
        )
        logger.info("redirect URI set to %s", settings.redirect_uri)
        try:
            yield
        finally:
            if http_client is None:
                await http.aclose()
            await db.dispose()

    app = FastAPI(title="SiteWeave Broker API", version=VERSION, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.FRONTEND_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Error mapping ─────────────────────────────────────────────────────────

    @app.exception_handler(NotAuthenticated)
    async def not_authenticated(request: Request, exc: NotAuthenticated):
        return PlainTextResponse("User not authenticated.", status_code=401)

    @app.exception_handler(ReauthRequired)
    async def reauth_required(request: Request, exc: ReauthRequired):
        logger.info("reauthentication required: %s", exc)
        return PlainTextResponse("Session expired. Please log in again.", status_code=401)

    @app.exception_handler(UpstreamError)
    async def upstream_error(request: Request, exc: UpstreamError):
        logger.error("upstream failure on %s: %s", request.url.path, exc)
        return PlainTextResponse("Error fetching or analyzing emails.", status_code=500)

    @app.exception_handler(ExchangeError)
    async def exchange_error(request: Request, exc: ExchangeError):
        logger.warning("sign-in failed: %s", exc)
        return JSONResponse(status_code=500, content={"error": exc.error, "error_description": exc.description})

    @app.exception_handler(ProviderConfigError)
    async def provider_config_error(request: Request, exc: ProviderConfigError):
        logger.error("provider misconfigured: %s", exc)
        return JSONResponse(status_code=500, content={"error": "provider_config", "error_description": str(exc)})

    @app.exception_handler(Exception)
    async def global_error(request: Request, exc: Exception):
        logger.exception("unhandled error on %s", request.url.path)
        return JSONResponse(status_code=500, content={"error": str(exc)})

    # ── Routes ────────────────────────────────────────────────────────────────

    @app.get("/")
    async def root():
        return {"message": "SiteWeave Broker API is running", "version": VERSION}

    @app.get("/health")
    async def health(services: Services = Depends(get_services)):
        try:
            await services.db.ping()
            return {"status": "healthy", "database": "connected"}
        except Exception as e:
            return {"status": "degraded", "database": f"error: {str(e)[:200]}"}

    app.include_router(auth.router)
    app.include_router(emails.router)
    return app


app = create_app()
