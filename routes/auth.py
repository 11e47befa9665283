"""
Sign-in routes: consent redirect, code exchange, logout, session probe.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse, PlainTextResponse, RedirectResponse

from dependencies import (
    Services,
    clear_session_cookie,
    get_services,
    optional_identity,
    read_session_cookie,
    set_session_cookie,
)
from errors import ExchangeError
from models import IdentityRecord

logger = logging.getLogger(__name__)
router = APIRouter()

CLOSE_WINDOW = "<script>window.close();</script>"


@router.get("/login")
async def login(services: Services = Depends(get_services)):
    """Redirect the popup to the provider's consent screen.

    No session row is written here; one is issued only after a successful
    code exchange in ``/redirect``.
    """
    settings = services.settings
    url = services.broker.build_authorization_url(settings.MAIL_SCOPES, settings.redirect_uri)
    return RedirectResponse(url=url, status_code=302)


@router.get("/redirect")
async def redirect(
    request: Request,
    code: str = "",
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    services: Services = Depends(get_services),
):
    """Exchange the authorization code and sign the session in."""
    if error:
        raise ExchangeError(error, error_description or "")

    settings = services.settings
    identity = await services.broker.exchange_code(code, settings.MAIL_SCOPES, settings.redirect_uri)

    # fresh id on every sign-in so a pre-login cookie can't be fixated
    previous = read_session_cookie(request, settings)
    if previous is not None:
        await services.sessions.clear(previous)
    session_id = await services.sessions.create()
    await services.sessions.set(session_id, identity)

    response = HTMLResponse(CLOSE_WINDOW)
    set_session_cookie(response, session_id, settings)
    return response


@router.get("/logout")
async def logout(request: Request, services: Services = Depends(get_services)):
    settings = services.settings
    session_id = read_session_cookie(request, settings)
    if session_id is not None:
        identity = await services.sessions.get(session_id)
        if identity is not None:
            services.broker.forget(identity.id)
        await services.sessions.clear(session_id)
    response = PlainTextResponse("Successfully logged out", status_code=200)
    clear_session_cookie(response, settings)
    return response


@router.get("/me")
async def me(identity: Optional[IdentityRecord] = Depends(optional_identity)):
    if identity is None:
        return {"loggedIn": False}
    return {"loggedIn": True, "account": identity.public()}
