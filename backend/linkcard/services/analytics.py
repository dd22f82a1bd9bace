from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Optional, Union

from sqlalchemy import and_, func, select

from backend.linkcard.models import (
    AnalyticsSummary,
    DailyViews,
    EventType,
    TopLink,
    utc_now,
)
from backend.linkcard.persistence import Database

TOP_LINKS_LIMIT = 10
UNKNOWN_LINK_TITLE = "Unknown"

# Event types reported as headline totals, keyed by summary field.
TOTAL_FIELDS = {
    EventType.profile_view: "profile_views",
    EventType.link_click: "link_clicks",
    EventType.nfc_scan: "nfc_scans",
    EventType.contact_save: "contacts_saved",
}


def _day_label(value: Union[date, str]) -> str:
    if isinstance(value, (date, datetime)):
        return value.isoformat()[:10]
    return str(value)


def compute_analytics(
    database: Database,
    profile_id: str,
    days: int,
    now: Optional[datetime] = None,
) -> AnalyticsSummary:
    if days < 1:
        raise ValueError("days must be at least 1")
    end = now or utc_now()
    cutoff = end - timedelta(days=days)
    events = database.events
    links = database.links
    in_window = and_(
        events.c.profile_id == profile_id,
        events.c.created_at >= cutoff,
        events.c.created_at <= end,
    )

    totals_query = (
        select(events.c.event_type, func.count(events.c.id))
        .where(in_window)
        .group_by(events.c.event_type)
    )

    clicks = func.count(events.c.id).label("clicks")
    top_links_query = (
        select(events.c.link_id, links.c.title, clicks)
        .select_from(events.outerjoin(links, links.c.id == events.c.link_id))
        .where(in_window, events.c.event_type == EventType.link_click.value)
        .group_by(events.c.link_id, links.c.title)
        .order_by(clicks.desc(), events.c.link_id)
        .limit(TOP_LINKS_LIMIT)
    )

    # Days without a view are omitted, not zero-filled.
    day = func.date(events.c.created_at).label("day")
    daily_query = (
        select(day, func.count(events.c.id))
        .where(in_window, events.c.event_type == EventType.profile_view.value)
        .group_by(day)
        .order_by(day)
    )

    with database.engine.connect() as conn:
        totals_rows = conn.execute(totals_query).all()
        top_rows = conn.execute(top_links_query).all()
        daily_rows = conn.execute(daily_query).all()

    counts = {event_type: int(count) for event_type, count in totals_rows}
    totals = {
        field: counts.get(event_type.value, 0) for event_type, field in TOTAL_FIELDS.items()
    }
    top_links = [
        TopLink(
            link_id=link_id or "",
            title=title or UNKNOWN_LINK_TITLE,
            clicks=int(count),
        )
        for link_id, title, count in top_rows
    ]
    daily_views = [
        DailyViews(date=_day_label(value), views=int(count)) for value, count in daily_rows
    ]
    return AnalyticsSummary(top_links=top_links, daily_views=daily_views, **totals)
