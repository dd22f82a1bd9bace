from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from backend.linkcard.models import LinkCreateRequest, ProfileCreateRequest
from backend.linkcard.services.analytics import compute_analytics

NOW = datetime(2024, 6, 15, 12, 0, 0)


def _insert_event(store, profile_id: str, event_type: str, at: datetime, link_id=None) -> None:
    with store.database.engine.begin() as conn:
        conn.execute(
            store.database.events.insert().values(
                profile_id=profile_id,
                event_type=event_type,
                link_id=link_id,
                created_at=at,
            )
        )


@pytest.fixture()
def owner(store) -> str:
    store.create_profile("owner-1", ProfileCreateRequest(username="jane"))
    return "owner-1"


def test_empty_window_reports_zeros(store, owner) -> None:
    summary = compute_analytics(store.database, owner, 30, now=NOW)

    assert summary.profile_views == 0
    assert summary.link_clicks == 0
    assert summary.nfc_scans == 0
    assert summary.contacts_saved == 0
    assert summary.top_links == []
    assert summary.daily_views == []


def test_totals_count_each_event_type(store, owner) -> None:
    link = store.create_link(owner, LinkCreateRequest(title="Site", url="https://x.example"))
    for hours in (1, 2, 30):
        _insert_event(store, owner, "profile_view", NOW - timedelta(hours=hours))
    _insert_event(store, owner, "link_click", NOW - timedelta(hours=3), link_id=link.id)
    _insert_event(store, owner, "nfc_scan", NOW - timedelta(hours=4))
    _insert_event(store, owner, "contact_save", NOW - timedelta(hours=5))
    _insert_event(store, owner, "contact_save", NOW - timedelta(hours=6))
    _insert_event(store, owner, "wallet_add", NOW - timedelta(hours=7))

    summary = compute_analytics(store.database, owner, 7, now=NOW)

    assert summary.profile_views == 3
    assert summary.link_clicks == 1
    assert summary.nfc_scans == 1
    assert summary.contacts_saved == 2
    assert [(day.date, day.views) for day in summary.daily_views] == [
        ("2024-06-14", 1),
        ("2024-06-15", 2),
    ]


def test_events_outside_window_and_other_profiles_are_ignored(store, owner) -> None:
    store.create_profile("owner-2", ProfileCreateRequest(username="john"))
    _insert_event(store, owner, "profile_view", NOW - timedelta(days=10))
    _insert_event(store, owner, "profile_view", NOW + timedelta(hours=1))
    _insert_event(store, "owner-2", "profile_view", NOW - timedelta(hours=1))

    summary = compute_analytics(store.database, owner, 7, now=NOW)
    assert summary.profile_views == 0
    assert summary.daily_views == []


def test_wider_window_never_counts_less(store, owner) -> None:
    for days_ago in (0, 3, 10, 45, 200):
        _insert_event(store, owner, "profile_view", NOW - timedelta(days=days_ago, minutes=5))

    counts = [
        compute_analytics(store.database, owner, days, now=NOW).profile_views
        for days in (1, 7, 30, 90, 365)
    ]
    assert counts == sorted(counts)
    assert counts == [1, 2, 3, 4, 5]


def test_top_links_ranked_by_clicks(store, owner) -> None:
    first = store.create_link(owner, LinkCreateRequest(title="First", url="https://a.example"))
    second = store.create_link(owner, LinkCreateRequest(title="Second", url="https://b.example"))
    _insert_event(store, owner, "link_click", NOW - timedelta(hours=1), link_id=first.id)
    for hours in (1, 2, 3):
        _insert_event(store, owner, "link_click", NOW - timedelta(hours=hours), link_id=second.id)

    summary = compute_analytics(store.database, owner, 30, now=NOW)

    assert [(top.title, top.clicks) for top in summary.top_links] == [
        ("Second", 3),
        ("First", 1),
    ]
    assert summary.top_links[0].link_id == second.id


def test_top_links_cap_at_ten(store, owner) -> None:
    for index in range(12):
        link = store.create_link(
            owner, LinkCreateRequest(title=f"Link {index}", url="https://x.example")
        )
        _insert_event(store, owner, "link_click", NOW - timedelta(hours=1), link_id=link.id)

    summary = compute_analytics(store.database, owner, 30, now=NOW)
    assert len(summary.top_links) == 10


def test_clicks_on_deleted_link_report_unknown_title(store, owner) -> None:
    link = store.create_link(owner, LinkCreateRequest(title="Temporary", url="https://x.example"))
    _insert_event(store, owner, "link_click", NOW - timedelta(hours=1), link_id=link.id)
    store.delete_link(owner, link.id)

    summary = compute_analytics(store.database, owner, 30, now=NOW)

    assert summary.link_clicks == 1
    assert summary.top_links[0].link_id == link.id
    assert summary.top_links[0].title == "Unknown"


def test_window_must_be_positive(store, owner) -> None:
    with pytest.raises(ValueError):
        compute_analytics(store.database, owner, 0, now=NOW)


def test_analytics_endpoint_reflects_tracking(client) -> None:
    profile = client.post("/api/profile", json={"username": "jane"}).json()
    link = client.post("/api/links", json={"title": "Site", "url": "https://x.example"}).json()

    client.get("/api/public/profile/jane")
    client.get("/api/public/profile/jane")
    click = client.post(
        "/api/track/link-click",
        json={"profileId": profile["id"], "linkId": link["id"], "utm": {"source": "qr"}},
    )
    assert click.status_code == 200
    assert click.json()["success"] is True
    scan = client.post(
        "/api/track/event",
        json={"profileId": profile["id"], "eventType": "nfc_scan", "metadata": {"tag": "desk"}},
    )
    assert scan.status_code == 200

    response = client.get("/api/analytics?days=7")
    assert response.status_code == 200
    body = response.json()
    assert body["profileViews"] == 2
    assert body["linkClicks"] == 1
    assert body["nfcScans"] == 1
    assert body["contactsSaved"] == 0
    assert body["topLinks"] == [{"linkId": link["id"], "title": "Site", "clicks": 1}]
    assert sum(day["views"] for day in body["dailyViews"]) == 2


def test_analytics_days_out_of_range(client) -> None:
    client.post("/api/profile", json={"username": "jane"})
    assert client.get("/api/analytics?days=0").status_code == 400
    assert client.get("/api/analytics?days=400").status_code == 400


def test_link_click_for_foreign_link_is_rejected(client) -> None:
    profile = client.post("/api/profile", json={"username": "jane"}).json()

    response = client.post(
        "/api/track/link-click",
        json={"profileId": profile["id"], "linkId": "lnk_unknown"},
    )
    assert response.status_code == 404


def test_generic_tracker_refuses_server_captured_types(client) -> None:
    profile = client.post("/api/profile", json={"username": "jane"}).json()

    response = client.post(
        "/api/track/event",
        json={"profileId": profile["id"], "eventType": "profile_view"},
    )
    assert response.status_code == 400

    unknown_profile = client.post(
        "/api/track/event",
        json={"profileId": "nobody", "eventType": "contact_save"},
    )
    assert unknown_profile.status_code == 404


def test_events_feed_is_newest_first_and_limited(client) -> None:
    profile = client.post("/api/profile", json={"username": "jane"}).json()
    for event_type in ("nfc_scan", "wallet_add", "contact_exchange"):
        client.post("/api/track/event", json={"profileId": profile["id"], "eventType": event_type})

    events = client.get("/api/events?limit=2").json()
    assert [event["eventType"] for event in events] == ["contact_exchange", "wallet_add"]
    assert client.get("/api/events?limit=0").status_code == 400
