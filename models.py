"""
Data model: identity record, mail item, analysis result.
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class IdentityRecord(BaseModel):
    """Provider-issued account descriptor stored in the session."""
    model_config = ConfigDict(frozen=True)

    id:        str
    name:      Optional[str] = None
    username:  Optional[str] = None
    tenant_id: Optional[str] = None

    def public(self) -> dict:
        return self.model_dump(exclude_none=True)


class MailItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id:             str
    subject:        str = ""
    sender_name:    str = ""
    sender_address: str = ""
    received_at:    Optional[str] = None
    body:           str = ""
    body_type:      str = "text"

    @classmethod
    def from_graph(cls, raw: dict) -> "MailItem":
        sender = ((raw.get("from") or {}).get("emailAddress") or {})
        body = raw.get("body") or {}
        return cls(
            id=raw.get("id", ""),
            subject=raw.get("subject") or "",
            sender_name=sender.get("name") or "",
            sender_address=sender.get("address") or "",
            received_at=raw.get("receivedDateTime"),
            body=body.get("content") or "",
            body_type=(body.get("contentType") or "text").lower(),
        )

    def to_graph(self) -> dict:
        """Serialise back to the Graph message shape the frontend renders."""
        return {
            "id": self.id,
            "subject": self.subject,
            "from": {"emailAddress": {"name": self.sender_name, "address": self.sender_address}},
            "receivedDateTime": self.received_at,
            "body": {"contentType": self.body_type, "content": self.body},
        }


class Sentiment(str, Enum):
    POSITIVE = "Positive"
    NEGATIVE = "Negative"
    NEUTRAL  = "Neutral"


class AnalysisResult(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    summary:      str
    action_items: list[str] = Field(alias="actionItems")
    sentiment:    Sentiment
    doc_type:     str = Field(alias="docType")

    @field_validator("sentiment", mode="before")
    @classmethod
    def _title_case(cls, value):
        if isinstance(value, str):
            return value.strip().capitalize()
        return value

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


FALLBACK_ANALYSIS = AnalysisResult(
    summary="AI analysis failed for this email.",
    actionItems=[],
    sentiment=Sentiment.NEUTRAL,
    docType="Unknown",
)
