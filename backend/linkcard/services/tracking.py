from __future__ import annotations

from typing import Optional

from fastapi import Request

from backend.linkcard.models import EventDraft, EventType, UtmParams

UTM_QUERY_FIELDS = ("source", "medium", "campaign", "term", "content")
UTM_MAX_LENGTH = 250
IP_MAX_LENGTH = 64
COUNTRY_MAX_LENGTH = 64
REFERRER_MAX_LENGTH = 2048
USER_AGENT_MAX_LENGTH = 512

_TABLET_MARKERS = ("ipad", "tablet", "kindle", "silk/")
_MOBILE_MARKERS = ("mobi", "iphone", "ipod", "android", "windows phone", "blackberry")
_BOT_MARKERS = ("bot", "crawler", "spider", "slurp", "facebookexternalhit")


def derive_device(user_agent: Optional[str]) -> Optional[str]:
    if not user_agent:
        return None
    agent = user_agent.lower()
    if any(marker in agent for marker in _BOT_MARKERS):
        return "bot"
    if any(marker in agent for marker in _TABLET_MARKERS):
        return "tablet"
    if any(marker in agent for marker in _MOBILE_MARKERS):
        return "mobile"
    return "desktop"


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",", 1)[0].strip()
        if first_hop:
            return first_hop[:IP_MAX_LENGTH]
    return request.client.host[:IP_MAX_LENGTH] if request.client else None


def utm_from_query(request: Request) -> Optional[UtmParams]:
    values = {
        name: request.query_params[f"utm_{name}"][:UTM_MAX_LENGTH]
        for name in UTM_QUERY_FIELDS
        if request.query_params.get(f"utm_{name}")
    }
    return UtmParams(**values) if values else None


def build_event_draft(
    request: Request,
    *,
    profile_id: str,
    event_type: EventType,
    link_id: Optional[str] = None,
    utm: Optional[UtmParams] = None,
    referrer: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> EventDraft:
    user_agent = request.headers.get("user-agent", "")
    if referrer is None:
        referrer = request.headers.get("referer")
    country = request.headers.get("cf-ipcountry")
    return EventDraft(
        profile_id=profile_id,
        event_type=event_type,
        link_id=link_id,
        utm=utm,
        referrer=referrer[:REFERRER_MAX_LENGTH] if referrer else None,
        ip=client_ip(request),
        user_agent=user_agent[:USER_AGENT_MAX_LENGTH],
        country=country[:COUNTRY_MAX_LENGTH] if country else None,
        device=derive_device(user_agent),
        metadata=metadata or None,
    )
