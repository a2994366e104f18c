"""Pydantic schemas for events, delivery jobs and platform credentials."""

from datetime import datetime, timezone
from typing import Optional, Dict
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic.alias_generators import to_camel

from .models import IntegrationTypeEnum, IntegrationStatusEnum


# Prefix of the queue job id per platform: "<prefix>-<conversion_event_id>"
JOB_ID_PREFIXES: Dict[IntegrationTypeEnum, str] = {
    IntegrationTypeEnum.meta_capi: "meta",
    IntegrationTypeEnum.google_ads: "google",
}


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UserData(BaseModel):
    """Raw identifiers captured with a lead. Contains PII; never queued or stored."""

    model_config = ConfigDict(frozen=True)

    email: Optional[str] = None
    phone: Optional[str] = None
    external_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    fbc: Optional[str] = None
    fbp: Optional[str] = None
    fbclid: Optional[str] = None
    gclid: Optional[str] = None


class CanonicalEvent(BaseModel):
    """A conversion as recorded locally, produced once per business conversion."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, description="Stable conversion id, also the platform dedup key")
    organization_id: str = Field(min_length=1)
    lead_id: str = Field(min_length=1)
    name: str = Field(min_length=1, description="Internal funnel event name, e.g. signup_complete")
    occurred_at: datetime
    value: float = Field(ge=0)
    currency: str = Field(min_length=3, max_length=3)
    page_url: Optional[str] = None
    user_data: UserData = Field(default_factory=UserData)

    @field_validator("occurred_at")
    @classmethod
    def _normalize_occurred_at(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class HashedUserData(BaseModel):
    """Match keys safe to queue: SHA-256 digests plus non-PII identifiers."""

    model_config = ConfigDict(frozen=True)

    email_hash: Optional[str] = None
    phone_hash: Optional[str] = None
    external_id_hash: Optional[str] = None
    gclid: Optional[str] = None
    fbc: Optional[str] = None
    fbp: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class EventSummary(BaseModel):
    """The non-PII part of a CanonicalEvent carried inside a DeliveryJob."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    value: float
    currency: str
    occurred_at: datetime
    page_url: Optional[str] = None

    @field_validator("occurred_at")
    @classmethod
    def _normalize_occurred_at(cls, value: datetime) -> datetime:
        return _as_utc(value)


class DeliveryJob(BaseModel):
    """One unit of work: deliver one conversion to one platform."""

    model_config = ConfigDict(frozen=True)

    conversion_event_id: str = Field(min_length=1)
    organization_id: str = Field(min_length=1)
    lead_id: str
    platform: IntegrationTypeEnum
    event: EventSummary
    hashed_user_data: HashedUserData
    retry_count: int = 0  # retries before the terminal state; set when dead-lettered

    @property
    def idempotency_key(self) -> str:
        return f"{JOB_ID_PREFIXES[self.platform]}-{self.conversion_event_id}"


# Platform credentials (plaintext form, in memory only) ----------
# Stored blobs use camelCase keys (pixelId, refreshToken, ...); both spellings load.

class MetaCredentials(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    pixel_id: str = Field(min_length=1)
    access_token: SecretStr
    test_event_code: Optional[str] = None


class GoogleAdsCredentials(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    customer_id: str = Field(min_length=1)
    refresh_token: SecretStr
    login_customer_id: Optional[str] = None
    conversion_action_id: Optional[str] = None

    @field_validator("customer_id", "login_customer_id")
    @classmethod
    def _digits_only(cls, value: Optional[str]) -> Optional[str]:
        """Google Ads API expects 10-digit IDs without dashes."""
        if value is None:
            return None
        return "".join(ch for ch in value if ch.isdigit())


class IntegrationWithCredentials(BaseModel):
    """An ACTIVE integration with its credentials already decrypted."""

    id: UUID
    organization_id: str
    type: IntegrationTypeEnum
    status: IntegrationStatusEnum
    credentials: MetaCredentials | GoogleAdsCredentials
    settings: Dict = Field(default_factory=dict)


class QueueStats(BaseModel):
    """Point-in-time counts for one dispatch queue (ops visibility only)."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
