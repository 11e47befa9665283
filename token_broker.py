"""
Authorization-code OAuth2 flow and silent token renewal against the
Microsoft identity platform.

The broker never persists tokens. Access and refresh tokens live in an
in-process TokenCache keyed by account id; the session only ever holds the
IdentityRecord.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

import httpx
import jwt

from config import Settings
from errors import ExchangeError, ProviderConfigError, ReauthRequired, UpstreamUnavailable
from models import IdentityRecord

logger = logging.getLogger(__name__)

EXPIRY_SKEW = timedelta(minutes=5)
OIDC_SCOPES = ("openid", "profile", "offline_access")
GRAPH_RESOURCE = "https://graph.microsoft.com/"
USERINFO_URL = "https://graph.microsoft.com/oidc/userinfo"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _scope_param(scopes: Iterable[str]) -> str:
    requested = list(dict.fromkeys(scopes))
    for s in OIDC_SCOPES:
        if s not in requested:
            requested.append(s)
    return " ".join(requested)


def _resource_scopes(scopes: Iterable[str]) -> frozenset:
    """Normalised resource scopes, without the OIDC ones."""
    out = set()
    for s in scopes:
        s = s.strip()
        if s.lower().startswith(GRAPH_RESOURCE):
            s = s[len(GRAPH_RESOURCE):]
        if s and s.lower() not in OIDC_SCOPES and s.lower() != "email":
            out.add(s.lower())
    return frozenset(out)


class AccessToken:
    """Short-lived bearer credential. Its repr never shows the value."""
    __slots__ = ("value", "expires_at")

    def __init__(self, value: str, expires_at: datetime):
        self.value = value
        self.expires_at = expires_at

    def is_valid(self, now: datetime, skew: timedelta = timedelta(0)) -> bool:
        return self.expires_at - skew > now

    def __repr__(self) -> str:
        return f"AccessToken(expires_at={self.expires_at.isoformat()}, value=***)"

    __str__ = __repr__


@dataclass
class CachedCredential:
    access_token:  AccessToken
    refresh_token: Optional[str]
    scopes:        frozenset


class TokenCache:
    """Account id -> cached credential."""

    def __init__(self):
        self._entries: dict[str, CachedCredential] = {}

    def get(self, account_id: str) -> Optional[CachedCredential]:
        return self._entries.get(account_id)

    def put(self, account_id: str, credential: CachedCredential) -> None:
        self._entries[account_id] = credential

    def evict(self, account_id: str) -> None:
        self._entries.pop(account_id, None)

    def __contains__(self, account_id: str) -> bool:
        return account_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class TokenBroker:
    def __init__(
        self,
        settings: Settings,
        http: httpx.AsyncClient,
        cache: Optional[TokenCache] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.settings = settings
        self.cache = cache if cache is not None else TokenCache()
        self._http = http
        self._clock = clock
        authority = settings.MS_AUTHORITY.rstrip("/")
        self.authorize_url = f"{authority}/oauth2/v2.0/authorize"
        self.token_url = f"{authority}/oauth2/v2.0/token"

    def _require_credentials(self) -> None:
        if not self.settings.MS_CLIENT_ID or not self.settings.MS_CLIENT_SECRET:
            raise ProviderConfigError("MS_CLIENT_ID and MS_CLIENT_SECRET must be set")

    # ── Consent URL ───────────────────────────────────────────────────────────

    def build_authorization_url(self, scopes: Iterable[str], redirect_uri: str) -> str:
        self._require_credentials()
        url = httpx.URL(self.authorize_url, params={
            "client_id":     self.settings.MS_CLIENT_ID,
            "response_type": "code",
            "redirect_uri":  redirect_uri,
            "response_mode": "query",
            "scope":         _scope_param(scopes),
        })
        return str(url)

    # ── Code exchange ─────────────────────────────────────────────────────────

    async def exchange_code(self, code: str, scopes: Iterable[str], redirect_uri: str) -> IdentityRecord:
        self._require_credentials()
        if not code:
            raise ExchangeError("invalid_request", "Missing authorization code")

        scopes = list(scopes)
        resp = await self._post_token({
            "client_id":     self.settings.MS_CLIENT_ID,
            "client_secret": self.settings.MS_CLIENT_SECRET,
            "code":          code,
            "redirect_uri":  redirect_uri,
            "grant_type":    "authorization_code",
            "scope":         _scope_param(scopes),
        })
        if resp.status_code != 200:
            error, description = _oauth_error(resp)
            logger.warning("code exchange failed status=%s error=%s", resp.status_code, error)
            raise ExchangeError(error, description, resp.status_code)

        try:
            tokens = _json_object(resp)
        except ValueError as e:
            logger.warning("code exchange returned an unreadable body: %s", e)
            raise ExchangeError("invalid_response", "Token endpoint returned a non-JSON body", resp.status_code) from e
        if not tokens.get("access_token"):
            raise ExchangeError("invalid_response", "Token endpoint returned no access_token")

        identity = await self._identity_from(tokens)
        self.cache.put(identity.id, self._credential_from(tokens, scopes))
        logger.info("code exchanged account=%s", identity.id)
        return identity

    # ── Silent renewal ────────────────────────────────────────────────────────

    async def get_valid_access_token(self, identity: IdentityRecord, scopes: Iterable[str]) -> AccessToken:
        scopes = list(scopes)
        entry = self.cache.get(identity.id)
        if entry is None:
            raise ReauthRequired("No cached credential for this account")

        now = self._clock()
        if _resource_scopes(scopes) <= entry.scopes and entry.access_token.is_valid(now, EXPIRY_SKEW):
            return entry.access_token

        if not entry.refresh_token:
            self.cache.evict(identity.id)
            raise ReauthRequired("No refresh credential for this account")

        resp = await self._post_token({
            "client_id":     self.settings.MS_CLIENT_ID,
            "client_secret": self.settings.MS_CLIENT_SECRET,
            "refresh_token": entry.refresh_token,
            "grant_type":    "refresh_token",
            "scope":         _scope_param(scopes),
        })
        if 400 <= resp.status_code < 500 and resp.status_code != 429:
            error, _ = _oauth_error(resp)
            logger.info("silent renewal refused account=%s error=%s", identity.id, error)
            self.cache.evict(identity.id)
            raise ReauthRequired(error)
        if resp.status_code != 200:
            raise UpstreamUnavailable(f"Token endpoint returned {resp.status_code}", resp.status_code)

        try:
            tokens = _json_object(resp)
        except ValueError as e:
            raise UpstreamUnavailable("Token endpoint returned a non-JSON body", resp.status_code) from e
        credential = self._credential_from(tokens, scopes, previous=entry)
        if not tokens.get("access_token") or not credential.access_token.is_valid(self._clock()):
            self.cache.evict(identity.id)
            raise ReauthRequired("Renewal returned no usable access token")

        self.cache.put(identity.id, credential)
        logger.debug("access token renewed account=%s", identity.id)
        return credential.access_token

    def forget(self, account_id: str) -> None:
        self.cache.evict(account_id)

    # ── Helpers ───────────────────────────────────────────────────────────────

    async def _post_token(self, data: dict) -> httpx.Response:
        try:
            return await self._http.post(
                self.token_url,
                data=data,
                timeout=self.settings.HTTP_TIMEOUT_SECONDS,
            )
        except httpx.TimeoutException as e:
            raise UpstreamUnavailable("Token endpoint timed out") from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Token endpoint unreachable: {e.__class__.__name__}") from e

    def _credential_from(self, tokens: dict, scopes: list, previous: Optional[CachedCredential] = None) -> CachedCredential:
        expires_at = self._clock() + timedelta(seconds=int(tokens.get("expires_in", 3600)))
        granted = tokens.get("scope")
        refresh_token = tokens.get("refresh_token")
        if not refresh_token and previous is not None:
            refresh_token = previous.refresh_token
        return CachedCredential(
            access_token=AccessToken(tokens.get("access_token", ""), expires_at),
            refresh_token=refresh_token,
            scopes=_resource_scopes(granted.split() if granted else scopes),
        )

    async def _identity_from(self, tokens: dict) -> IdentityRecord:
        claims = {}
        id_token = tokens.get("id_token")
        if id_token:
            try:
                # straight from the token endpoint over TLS
                claims = jwt.decode(id_token, options={"verify_signature": False})
            except jwt.InvalidTokenError:
                logger.warning("id_token could not be decoded, falling back to userinfo")
        if not claims:
            claims = await self._userinfo(tokens["access_token"])

        account_id = claims.get("oid") or claims.get("sub")
        if not account_id:
            raise ExchangeError("invalid_identity", "No account identifier in provider response")
        return IdentityRecord(
            id=str(account_id),
            name=claims.get("name"),
            username=claims.get("preferred_username") or claims.get("email"),
            tenant_id=claims.get("tid"),
        )

    async def _userinfo(self, access_token: str) -> dict:
        try:
            resp = await self._http.get(
                USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.settings.HTTP_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as e:
            raise UpstreamUnavailable("Userinfo endpoint unreachable") from e
        if resp.status_code != 200:
            raise ExchangeError("userinfo_failed", resp.text[:200], resp.status_code)
        try:
            return _json_object(resp)
        except ValueError as e:
            raise ExchangeError("invalid_response", "Userinfo endpoint returned a non-JSON body", resp.status_code) from e


def _json_object(resp: httpx.Response) -> dict:
    body = resp.json()
    if not isinstance(body, dict):
        raise ValueError(f"expected a JSON object, got {type(body).__name__}")
    return body


def _oauth_error(resp: httpx.Response) -> tuple:
    try:
        body = resp.json()
    except ValueError:
        return f"http_{resp.status_code}", resp.text[:200]
    return body.get("error", f"http_{resp.status_code}"), body.get("error_description", "")
