"""
Microsoft Graph mail API client.
Fetches a page of recent messages for the signed-in user.
"""
import logging
from typing import Optional

import httpx

from config import Settings
from errors import UpstreamRejected, UpstreamUnavailable
from models import MailItem
from token_broker import AccessToken

logger = logging.getLogger(__name__)

MESSAGE_FIELDS = "id,subject,from,receivedDateTime,body"


class MailGateway:
    def __init__(self, settings: Settings, http: httpx.AsyncClient):
        self.settings = settings
        self._http = http
        self._base = settings.GRAPH_BASE_URL.rstrip("/")

    # ── Low-level requests ────────────────────────────────────────────────────

    async def _get(self, token: AccessToken, path: str, params: dict) -> dict:
        try:
            r = await self._http.get(
                f"{self._base}{path}",
                headers={"Authorization": f"Bearer {token.value}"},
                params=params,
                timeout=self.settings.HTTP_TIMEOUT_SECONDS,
            )
        except httpx.TimeoutException as e:
            raise UpstreamUnavailable(f"Graph request timed out: {path}") from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Graph request failed: {e.__class__.__name__}") from e

        if r.status_code >= 500:
            raise UpstreamUnavailable(f"Graph returned {r.status_code}", r.status_code)
        if r.status_code >= 400:
            raise UpstreamRejected(f"Graph rejected request: {r.status_code} {r.text[:200]}", r.status_code)
        try:
            data = r.json()
        except ValueError as e:
            raise UpstreamUnavailable(f"Graph returned a non-JSON body: {path}", r.status_code) from e
        if not isinstance(data, dict):
            raise UpstreamUnavailable(f"Graph returned an unexpected body: {path}", r.status_code)
        return data

    # ── List & fetch ──────────────────────────────────────────────────────────

    async def fetch_recent(
        self,
        token: AccessToken,
        limit: Optional[int] = None,
        search_filter: Optional[str] = None,
    ) -> list[MailItem]:
        """Return the most recent messages, newest first as Graph orders them.

        ``search_filter`` goes to Graph's ``$search`` untouched apart from
        the surrounding quotes it requires.
        """
        params = {"$select": MESSAGE_FIELDS}
        if limit is not None:
            params["$top"] = str(limit)
        if search_filter:
            params["$search"] = f'"{search_filter}"'

        data = await self._get(token, "/me/messages", params)
        items = [MailItem.from_graph(raw) for raw in data.get("value", []) or []]
        logger.info("fetched %d messages search=%s", len(items), bool(search_filter))
        return items
