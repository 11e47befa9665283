"""
Fetch a page of mail and attach an analysis to every item.
"""
import asyncio
import logging
from typing import Optional

from analysis_client import AnalysisClient
from html_text import html_to_text
from mail_gateway import MailGateway
from models import AnalysisResult, IdentityRecord, MailItem
from token_broker import TokenBroker

logger = logging.getLogger(__name__)


def analysis_input(item: MailItem) -> str:
    body = html_to_text(item.body) if item.body_type == "html" else (item.body or "").strip()
    return f"Subject: {item.subject}\nBody: {body}"


class EnrichmentPipeline:
    """Token -> fetch -> concurrent per-item analysis -> merge in fetch order."""

    def __init__(
        self,
        broker: TokenBroker,
        gateway: MailGateway,
        analyzer: AnalysisClient,
        scopes: list[str],
    ):
        self._broker = broker
        self._gateway = gateway
        self._analyzer = analyzer
        self._scopes = list(scopes)

    async def fetch_and_enrich(
        self,
        identity: IdentityRecord,
        limit: Optional[int] = None,
        search_filter: Optional[str] = None,
    ) -> list[tuple[MailItem, AnalysisResult]]:
        # ReauthRequired surfaces here, before any mail quota is spent
        token = await self._broker.get_valid_access_token(identity, self._scopes)
        items = await self._gateway.fetch_recent(token, limit, search_filter)
        if not items:
            return []

        results = await asyncio.gather(
            *(self._analyzer.analyze(analysis_input(item)) for item in items)
        )
        logger.info("enriched %d messages account=%s", len(items), identity.id)
        return list(zip(items, results))
