from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from dependencies import Services, current_identity, get_services
from models import IdentityRecord

router = APIRouter()


class FetchEmailsIn(BaseModel):
    searchQuery: Optional[str] = None
    limit:       Optional[int] = None


@router.post("/fetch-emails")
async def fetch_emails(
    payload: Optional[FetchEmailsIn] = None,
    identity: IdentityRecord = Depends(current_identity),
    services: Services = Depends(get_services),
):
    """Fetch recent mail for the signed-in user, each item with its analysis."""
    payload = payload or FetchEmailsIn()
    search = (payload.searchQuery or "").strip() or None
    enriched = await services.pipeline.fetch_and_enrich(
        identity,
        services.settings.page_size(payload.limit),
        search,
    )
    return [{**item.to_graph(), "analysis": analysis.to_dict()} for item, analysis in enriched]
