from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional
from urllib.parse import urlsplit

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

USERNAME_PATTERN = re.compile(r"^[a-z0-9._]{3,30}$")


def utc_now() -> datetime:
    return datetime.utcnow()


def normalize_username(value: str) -> str:
    normalized = value.strip().lower()
    if not USERNAME_PATTERN.match(normalized):
        raise ValueError(
            "username must be 3-30 characters of lowercase letters, digits, dots or underscores"
        )
    return normalized


def _check_http_url(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    cleaned = value.strip()
    if not cleaned.lower().startswith(("http://", "https://")):
        raise ValueError("url must start with http:// or https://")
    try:
        parts = urlsplit(cleaned)
        parts.port
    except ValueError as exc:
        raise ValueError(f"url is not valid: {exc}") from exc
    if not parts.hostname:
        raise ValueError("url must include a host")
    return cleaned


HttpUrlStr = Annotated[str, AfterValidator(_check_http_url)]


class ApiModel(BaseModel):
    """Base for everything on the wire: camelCase out, either case in."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EventType(str, Enum):
    profile_view = "profile_view"
    link_click = "link_click"
    nfc_scan = "nfc_scan"
    wallet_add = "wallet_add"
    contact_save = "contact_save"
    contact_exchange = "contact_exchange"
    social_click = "social_click"


# Event types with a dedicated capture route; the generic tracker refuses them.
SERVER_CAPTURED_EVENT_TYPES = frozenset({EventType.profile_view, EventType.link_click})


class DeliveryState(str, Enum):
    delivered = "delivered"
    retrying = "retrying"
    failed = "failed"


class ProfileTheme(ApiModel):
    primary_color: Optional[str] = Field(default=None, max_length=32)
    secondary_color: Optional[str] = Field(default=None, max_length=32)
    background_type: Optional[Literal["solid", "gradient", "image"]] = None
    background_value: Optional[str] = Field(default=None, max_length=2048)
    font_family: Optional[str] = Field(default=None, max_length=80)
    avatar_style: Optional[Literal["circle", "square", "rounded-square"]] = None
    button_style: Optional[Literal["rounded", "sharp", "pill"]] = None
    text_align: Optional[Literal["left", "center", "right"]] = None


class SocialLinks(ApiModel):
    linkedin: Optional[str] = Field(default=None, max_length=2048)
    instagram: Optional[str] = Field(default=None, max_length=2048)
    whatsapp: Optional[str] = Field(default=None, max_length=2048)
    facebook: Optional[str] = Field(default=None, max_length=2048)
    youtube: Optional[str] = Field(default=None, max_length=2048)
    twitter: Optional[str] = Field(default=None, max_length=2048)
    github: Optional[str] = Field(default=None, max_length=2048)
    website1: Optional[str] = Field(default=None, max_length=2048)
    website2: Optional[str] = Field(default=None, max_length=2048)


class SeoSettings(ApiModel):
    title: Optional[str] = Field(default=None, max_length=120)
    description: Optional[str] = Field(default=None, max_length=300)


class UtmParams(ApiModel):
    source: Optional[str] = Field(default=None, max_length=250)
    medium: Optional[str] = Field(default=None, max_length=250)
    campaign: Optional[str] = Field(default=None, max_length=250)
    term: Optional[str] = Field(default=None, max_length=250)
    content: Optional[str] = Field(default=None, max_length=250)

    def is_empty(self) -> bool:
        return not any(self.model_dump().values())


class ProfileCreateRequest(ApiModel):
    username: str
    display_name: Optional[str] = Field(default=None, max_length=120)
    title: Optional[str] = Field(default=None, max_length=120)
    bio: Optional[str] = Field(default=None, max_length=1000)
    photo_url: Optional[str] = Field(default=None, max_length=2048)
    email: Optional[str] = Field(default=None, max_length=254)
    phone: Optional[str] = Field(default=None, max_length=40)
    address: Optional[str] = Field(default=None, max_length=500)
    website: Optional[str] = Field(default=None, max_length=2048)
    theme: ProfileTheme = Field(default_factory=ProfileTheme)
    socials: SocialLinks = Field(default_factory=SocialLinks)
    seo: SeoSettings = Field(default_factory=SeoSettings)
    is_public: bool = True

    @field_validator("username")
    @classmethod
    def validate_username(cls, value: str) -> str:
        return normalize_username(value)


class ProfileUpdateRequest(ApiModel):
    username: Optional[str] = None
    display_name: Optional[str] = Field(default=None, max_length=120)
    title: Optional[str] = Field(default=None, max_length=120)
    bio: Optional[str] = Field(default=None, max_length=1000)
    photo_url: Optional[str] = Field(default=None, max_length=2048)
    email: Optional[str] = Field(default=None, max_length=254)
    phone: Optional[str] = Field(default=None, max_length=40)
    address: Optional[str] = Field(default=None, max_length=500)
    website: Optional[str] = Field(default=None, max_length=2048)
    theme: Optional[ProfileTheme] = None
    socials: Optional[SocialLinks] = None
    seo: Optional[SeoSettings] = None
    is_public: Optional[bool] = None

    @field_validator("username")
    @classmethod
    def validate_username(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return normalize_username(value)


class ProfileRecord(ApiModel):
    id: str
    username: str
    display_name: Optional[str] = None
    title: Optional[str] = None
    bio: Optional[str] = None
    photo_url: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    website: Optional[str] = None
    theme: ProfileTheme = Field(default_factory=ProfileTheme)
    socials: SocialLinks = Field(default_factory=SocialLinks)
    seo: SeoSettings = Field(default_factory=SeoSettings)
    is_public: bool = True
    created_at: datetime
    updated_at: datetime


class UsernameAvailabilityResponse(ApiModel):
    username: str
    available: bool


class LinkCreateRequest(ApiModel):
    title: str = Field(min_length=1, max_length=120)
    url: HttpUrlStr = Field(max_length=2048)
    description: Optional[str] = Field(default=None, max_length=500)
    position: Optional[int] = Field(default=None, ge=0)
    enabled: bool = True


class LinkUpdateRequest(ApiModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=120)
    url: Optional[HttpUrlStr] = Field(default=None, max_length=2048)
    description: Optional[str] = Field(default=None, max_length=500)
    position: Optional[int] = Field(default=None, ge=0)
    enabled: Optional[bool] = None


class LinkReorderRequest(ApiModel):
    link_ids: list[str]

    @field_validator("link_ids")
    @classmethod
    def validate_unique(cls, value: list[str]) -> list[str]:
        if len(set(value)) != len(value):
            raise ValueError("link ids must not repeat")
        return value


class LinkRecord(ApiModel):
    id: str
    profile_id: str
    title: str
    url: str
    description: Optional[str] = None
    position: int = 0
    enabled: bool = True
    created_at: datetime
    updated_at: datetime


class LinkClickTrackRequest(ApiModel):
    profile_id: str = Field(min_length=1, max_length=120)
    link_id: str = Field(min_length=1, max_length=120)
    utm: Optional[UtmParams] = None
    referrer: Optional[str] = Field(default=None, max_length=2048)


class EventTrackRequest(ApiModel):
    profile_id: str = Field(min_length=1, max_length=120)
    event_type: EventType
    link_id: Optional[str] = Field(default=None, max_length=120)
    utm: Optional[UtmParams] = None
    referrer: Optional[str] = Field(default=None, max_length=2048)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("event_type")
    @classmethod
    def validate_client_event(cls, value: EventType) -> EventType:
        if value in SERVER_CAPTURED_EVENT_TYPES:
            raise ValueError(f"{value.value} events are captured by their own endpoint")
        return value


class EventDraft(BaseModel):
    profile_id: str
    event_type: EventType
    link_id: Optional[str] = None
    utm: Optional[UtmParams] = None
    referrer: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    country: Optional[str] = None
    device: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class EventRecord(ApiModel):
    id: int
    profile_id: str
    event_type: EventType
    link_id: Optional[str] = None
    utm: Optional[UtmParams] = None
    referrer: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    country: Optional[str] = None
    device: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    created_at: datetime


class TrackResponse(ApiModel):
    success: bool = True
    event_id: int


class TopLink(ApiModel):
    link_id: str
    title: str
    clicks: int


class DailyViews(ApiModel):
    date: str
    views: int


class AnalyticsSummary(ApiModel):
    profile_views: int = 0
    link_clicks: int = 0
    nfc_scans: int = 0
    contacts_saved: int = 0
    top_links: list[TopLink] = Field(default_factory=list)
    daily_views: list[DailyViews] = Field(default_factory=list)


class WebhookCreateRequest(ApiModel):
    name: str = Field(min_length=1, max_length=120)
    url: HttpUrlStr = Field(max_length=2048)
    events: list[EventType] = Field(min_length=1)
    enabled: bool = True

    @field_validator("events")
    @classmethod
    def dedupe_events(cls, value: list[EventType]) -> list[EventType]:
        return list(dict.fromkeys(value))


class WebhookUpdateRequest(ApiModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    url: Optional[HttpUrlStr] = Field(default=None, max_length=2048)
    events: Optional[list[EventType]] = Field(default=None, min_length=1)
    enabled: Optional[bool] = None

    @field_validator("events")
    @classmethod
    def dedupe_events(cls, value: Optional[list[EventType]]) -> Optional[list[EventType]]:
        if value is None:
            return value
        return list(dict.fromkeys(value))


class WebhookItem(ApiModel):
    id: str
    profile_id: str
    name: str
    url: str
    events: list[EventType]
    enabled: bool
    created_at: datetime
    updated_at: datetime


class WebhookCreateResponse(WebhookItem):
    secret: str


class WebhookRecord(WebhookItem):
    secret: str

    def subscribes_to(self, event_type: EventType) -> bool:
        return self.enabled and event_type in self.events

    def to_item(self) -> WebhookItem:
        return WebhookItem.model_validate(self.model_dump(exclude={"secret"}))


class WebhookDeliveryRecord(ApiModel):
    id: int
    webhook_id: str
    event_id: Optional[int] = None
    status_code: Optional[int] = None
    attempt: int = 1
    response_ms: Optional[int] = None
    error: Optional[str] = None
    state: DeliveryState
    created_at: datetime


class WebhookTestResponse(ApiModel):
    success: bool
    message: str
    delivery: WebhookDeliveryRecord


class QrCodeResponse(ApiModel):
    qr_code: str
    profile_url: str


class SuccessResponse(ApiModel):
    success: bool = True
