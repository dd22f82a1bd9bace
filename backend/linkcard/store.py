from __future__ import annotations

import logging
import secrets
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import bindparam, func, select
from sqlalchemy.engine import Connection, Row
from sqlalchemy.exc import IntegrityError

from backend.linkcard.models import (
    DeliveryState,
    EventDraft,
    EventRecord,
    EventType,
    LinkCreateRequest,
    LinkRecord,
    LinkUpdateRequest,
    ProfileCreateRequest,
    ProfileRecord,
    ProfileUpdateRequest,
    WebhookCreateRequest,
    WebhookDeliveryRecord,
    WebhookRecord,
    WebhookUpdateRequest,
    utc_now,
)
from backend.linkcard.persistence import Database

logger = logging.getLogger("linkcard.store")

_PROFILE_JSON_FIELDS = ("theme", "socials", "seo")
_NOT_NULL_PROFILE_FIELDS = ("username", "is_public")


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


def clamp_limit(limit: Optional[int], *, default: int = 50, maximum: int = 500) -> int:
    if limit is None:
        return default
    return max(1, min(limit, maximum))


class StoreConflictError(Exception):
    pass


class UsernameTakenError(StoreConflictError):
    pass


class StoreNotFoundError(Exception):
    pass


def _row_dict(row: Row) -> dict[str, Any]:
    return dict(row._mapping)


class CardStore:
    """Owner-scoped access to profiles, links, events and webhooks."""

    def __init__(self, database: Database) -> None:
        self.database = database

    # -- profiles -----------------------------------------------------------------

    def get_profile(self, profile_id: str) -> ProfileRecord:
        profiles = self.database.profiles
        with self.database.engine.connect() as conn:
            row = conn.execute(select(profiles).where(profiles.c.id == profile_id)).first()
        if not row:
            raise StoreNotFoundError(f"profile not found: {profile_id}")
        return ProfileRecord.model_validate(_row_dict(row))

    def get_profile_by_username(self, username: str) -> ProfileRecord:
        profiles = self.database.profiles
        normalized = username.strip().lower()
        with self.database.engine.connect() as conn:
            row = conn.execute(
                select(profiles).where(profiles.c.username == normalized)
            ).first()
        if not row:
            raise StoreNotFoundError(f"profile not found: {normalized}")
        return ProfileRecord.model_validate(_row_dict(row))

    def get_public_profile(self, username: str) -> ProfileRecord:
        profile = self.get_profile_by_username(username)
        if not profile.is_public:
            raise StoreNotFoundError(f"profile not found: {profile.username}")
        return profile

    def is_username_available(
        self, username: str, exclude_profile_id: Optional[str] = None
    ) -> bool:
        with self.database.engine.connect() as conn:
            return self._username_available(conn, username, exclude_profile_id)

    def _username_available(
        self, conn: Connection, username: str, exclude_profile_id: Optional[str]
    ) -> bool:
        profiles = self.database.profiles
        query = select(profiles.c.id).where(profiles.c.username == username)
        if exclude_profile_id:
            query = query.where(profiles.c.id != exclude_profile_id)
        return conn.execute(query).first() is None

    def create_profile(self, profile_id: str, request: ProfileCreateRequest) -> ProfileRecord:
        profiles = self.database.profiles
        now = utc_now()
        values = request.model_dump(exclude=set(_PROFILE_JSON_FIELDS))
        for key in _PROFILE_JSON_FIELDS:
            values[key] = getattr(request, key).model_dump(by_alias=True, exclude_none=True)
        try:
            with self.database.engine.begin() as conn:
                existing = conn.execute(
                    select(profiles.c.id).where(profiles.c.id == profile_id)
                ).first()
                if existing:
                    raise StoreConflictError(f"profile already exists: {profile_id}")
                # Optimistic hint only; the unique constraint decides.
                if not self._username_available(conn, request.username, profile_id):
                    raise UsernameTakenError("username is already taken")
                conn.execute(
                    profiles.insert().values(
                        id=profile_id, created_at=now, updated_at=now, **values
                    )
                )
        except IntegrityError as exc:
            if self._profile_exists(profile_id):
                raise StoreConflictError(f"profile already exists: {profile_id}") from exc
            raise UsernameTakenError("username is already taken") from exc
        logger.info("profile_created profile_id=%s username=%s", profile_id, request.username)
        return self.get_profile(profile_id)

    def update_profile(self, profile_id: str, request: ProfileUpdateRequest) -> ProfileRecord:
        profiles = self.database.profiles
        values = {
            key: value
            for key, value in request.model_dump(
                exclude_unset=True, exclude=set(_PROFILE_JSON_FIELDS)
            ).items()
            if value is not None or key not in _NOT_NULL_PROFILE_FIELDS
        }
        for key in _PROFILE_JSON_FIELDS:
            if key in request.model_fields_set:
                nested = getattr(request, key)
                values[key] = nested.model_dump(by_alias=True, exclude_none=True) if nested else {}
        values["updated_at"] = utc_now()
        try:
            with self.database.engine.begin() as conn:
                username = values.get("username")
                if username and not self._username_available(conn, username, profile_id):
                    raise UsernameTakenError("username is already taken")
                result = conn.execute(
                    profiles.update().where(profiles.c.id == profile_id).values(**values)
                )
                if result.rowcount == 0:
                    raise StoreNotFoundError(f"profile not found: {profile_id}")
        except IntegrityError as exc:
            raise UsernameTakenError("username is already taken") from exc
        return self.get_profile(profile_id)

    def delete_profile(self, profile_id: str) -> None:
        profiles = self.database.profiles
        with self.database.engine.begin() as conn:
            result = conn.execute(profiles.delete().where(profiles.c.id == profile_id))
        if result.rowcount == 0:
            raise StoreNotFoundError(f"profile not found: {profile_id}")
        logger.info("profile_deleted profile_id=%s", profile_id)

    def _profile_exists(self, profile_id: str) -> bool:
        profiles = self.database.profiles
        with self.database.engine.connect() as conn:
            row = conn.execute(select(profiles.c.id).where(profiles.c.id == profile_id)).first()
        return row is not None

    def require_profile(self, profile_id: str) -> None:
        if not self._profile_exists(profile_id):
            raise StoreNotFoundError(f"profile not found: {profile_id}")

    # -- links --------------------------------------------------------------------

    def list_links(self, profile_id: str, *, enabled_only: bool = False) -> list[LinkRecord]:
        links = self.database.links
        query = (
            select(links)
            .where(links.c.profile_id == profile_id)
            .order_by(links.c.position, links.c.created_at)
        )
        if enabled_only:
            query = query.where(links.c.enabled.is_(True))
        with self.database.engine.connect() as conn:
            rows = conn.execute(query).all()
        return [LinkRecord.model_validate(_row_dict(row)) for row in rows]

    def list_public_links(self, profile_id: str) -> list[LinkRecord]:
        profile = self.get_profile(profile_id)
        if not profile.is_public:
            raise StoreNotFoundError(f"profile not found: {profile_id}")
        return self.list_links(profile_id, enabled_only=True)

    def get_link(self, profile_id: str, link_id: str) -> LinkRecord:
        links = self.database.links
        with self.database.engine.connect() as conn:
            row = conn.execute(
                select(links).where(links.c.id == link_id, links.c.profile_id == profile_id)
            ).first()
        if not row:
            raise StoreNotFoundError(f"link not found: {link_id}")
        return LinkRecord.model_validate(_row_dict(row))

    def create_link(self, profile_id: str, request: LinkCreateRequest) -> LinkRecord:
        self.require_profile(profile_id)
        links = self.database.links
        now = utc_now()
        link_id = new_id("lnk")
        with self.database.engine.begin() as conn:
            position = request.position
            if position is None:
                highest = conn.execute(
                    select(func.max(links.c.position)).where(links.c.profile_id == profile_id)
                ).scalar()
                position = 0 if highest is None else highest + 1
            conn.execute(
                links.insert().values(
                    id=link_id,
                    profile_id=profile_id,
                    title=request.title.strip(),
                    url=request.url,
                    description=request.description,
                    position=position,
                    enabled=request.enabled,
                    created_at=now,
                    updated_at=now,
                )
            )
        return self.get_link(profile_id, link_id)

    def update_link(
        self, profile_id: str, link_id: str, request: LinkUpdateRequest
    ) -> LinkRecord:
        links = self.database.links
        values = request.model_dump(exclude_unset=True)
        for key in ("title", "url", "position", "enabled"):
            if key in values and values[key] is None:
                values.pop(key)
        values["updated_at"] = utc_now()
        with self.database.engine.begin() as conn:
            result = conn.execute(
                links.update()
                .where(links.c.id == link_id, links.c.profile_id == profile_id)
                .values(**values)
            )
        if result.rowcount == 0:
            raise StoreNotFoundError(f"link not found: {link_id}")
        return self.get_link(profile_id, link_id)

    def delete_link(self, profile_id: str, link_id: str) -> None:
        links = self.database.links
        with self.database.engine.begin() as conn:
            result = conn.execute(
                links.delete().where(links.c.id == link_id, links.c.profile_id == profile_id)
            )
        if result.rowcount == 0:
            raise StoreNotFoundError(f"link not found: {link_id}")

    def reorder_links(self, profile_id: str, link_ids: list[str]) -> list[LinkRecord]:
        # Unlisted links keep their position; ids of other profiles match no row.
        links = self.database.links
        if link_ids:
            now = utc_now()
            statement = (
                links.update()
                .where(links.c.id == bindparam("b_id"), links.c.profile_id == profile_id)
                .values(position=bindparam("b_position"), updated_at=now)
            )
            params = [
                {"b_id": link_id, "b_position": index} for index, link_id in enumerate(link_ids)
            ]
            with self.database.engine.begin() as conn:
                conn.execute(statement, params)
        return self.list_links(profile_id)

    # -- events -------------------------------------------------------------------

    def record_event(self, draft: EventDraft) -> EventRecord:
        events = self.database.events
        created_at = utc_now()
        values = draft.model_dump(exclude={"event_type", "utm"})
        values["event_type"] = draft.event_type.value
        values["utm"] = (
            draft.utm.model_dump(exclude_none=True) if draft.utm and not draft.utm.is_empty() else None
        )
        with self.database.engine.begin() as conn:
            result = conn.execute(events.insert().values(created_at=created_at, **values))
            event_id = result.inserted_primary_key[0]
        return EventRecord.model_validate({**values, "id": event_id, "created_at": created_at})

    def list_events(self, profile_id: str, limit: int = 50) -> list[EventRecord]:
        events = self.database.events
        safe_limit = clamp_limit(limit)
        with self.database.engine.connect() as conn:
            rows = conn.execute(
                select(events)
                .where(events.c.profile_id == profile_id)
                .order_by(events.c.created_at.desc(), events.c.id.desc())
                .limit(safe_limit)
            ).all()
        return [EventRecord.model_validate(_row_dict(row)) for row in rows]

    # -- webhooks -----------------------------------------------------------------

    def list_webhooks(self, profile_id: str) -> list[WebhookRecord]:
        webhooks = self.database.webhooks
        with self.database.engine.connect() as conn:
            rows = conn.execute(
                select(webhooks)
                .where(webhooks.c.profile_id == profile_id)
                .order_by(webhooks.c.created_at)
            ).all()
        return [WebhookRecord.model_validate(_row_dict(row)) for row in rows]

    def list_subscribed_webhooks(
        self, profile_id: str, event_type: EventType
    ) -> list[WebhookRecord]:
        return [
            webhook
            for webhook in self.list_webhooks(profile_id)
            if webhook.subscribes_to(event_type)
        ]

    def find_webhook(self, webhook_id: str) -> Optional[WebhookRecord]:
        webhooks = self.database.webhooks
        with self.database.engine.connect() as conn:
            row = conn.execute(select(webhooks).where(webhooks.c.id == webhook_id)).first()
        return WebhookRecord.model_validate(_row_dict(row)) if row else None

    def get_webhook(self, profile_id: str, webhook_id: str) -> WebhookRecord:
        webhook = self.find_webhook(webhook_id)
        if not webhook or webhook.profile_id != profile_id:
            raise StoreNotFoundError(f"webhook not found: {webhook_id}")
        return webhook

    def create_webhook(self, profile_id: str, request: WebhookCreateRequest) -> WebhookRecord:
        self.require_profile(profile_id)
        webhooks = self.database.webhooks
        now = utc_now()
        webhook_id = new_id("whk")
        with self.database.engine.begin() as conn:
            conn.execute(
                webhooks.insert().values(
                    id=webhook_id,
                    profile_id=profile_id,
                    name=request.name.strip(),
                    url=request.url,
                    secret=secrets.token_hex(32),
                    events=[event_type.value for event_type in request.events],
                    enabled=request.enabled,
                    created_at=now,
                    updated_at=now,
                )
            )
        logger.info("webhook_created profile_id=%s webhook_id=%s", profile_id, webhook_id)
        return self.get_webhook(profile_id, webhook_id)

    def update_webhook(
        self, profile_id: str, webhook_id: str, request: WebhookUpdateRequest
    ) -> WebhookRecord:
        webhooks = self.database.webhooks
        values = {
            key: value
            for key, value in request.model_dump(exclude_unset=True).items()
            if value is not None
        }
        if "events" in values:
            values["events"] = [event_type.value for event_type in request.events or []]
        values["updated_at"] = utc_now()
        with self.database.engine.begin() as conn:
            result = conn.execute(
                webhooks.update()
                .where(webhooks.c.id == webhook_id, webhooks.c.profile_id == profile_id)
                .values(**values)
            )
        if result.rowcount == 0:
            raise StoreNotFoundError(f"webhook not found: {webhook_id}")
        return self.get_webhook(profile_id, webhook_id)

    def delete_webhook(self, profile_id: str, webhook_id: str) -> None:
        webhooks = self.database.webhooks
        with self.database.engine.begin() as conn:
            result = conn.execute(
                webhooks.delete().where(
                    webhooks.c.id == webhook_id, webhooks.c.profile_id == profile_id
                )
            )
        if result.rowcount == 0:
            raise StoreNotFoundError(f"webhook not found: {webhook_id}")

    def record_webhook_delivery(
        self,
        *,
        webhook_id: str,
        event_id: Optional[int],
        status_code: Optional[int],
        attempt: int,
        response_ms: Optional[int],
        error: Optional[str],
        state: DeliveryState,
    ) -> WebhookDeliveryRecord:
        deliveries = self.database.webhook_deliveries
        values = {
            "webhook_id": webhook_id,
            "event_id": event_id,
            "status_code": status_code,
            "attempt": attempt,
            "response_ms": response_ms,
            "error": error,
            "state": state.value,
            "created_at": utc_now(),
        }
        try:
            with self.database.engine.begin() as conn:
                result = conn.execute(deliveries.insert().values(**values))
                delivery_id = result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise StoreNotFoundError(f"webhook not found: {webhook_id}") from exc
        return WebhookDeliveryRecord.model_validate({**values, "id": delivery_id})

    def list_webhook_deliveries(
        self, profile_id: str, webhook_id: str, limit: int = 50
    ) -> list[WebhookDeliveryRecord]:
        self.get_webhook(profile_id, webhook_id)
        deliveries = self.database.webhook_deliveries
        with self.database.engine.connect() as conn:
            rows = conn.execute(
                select(deliveries)
                .where(deliveries.c.webhook_id == webhook_id)
                .order_by(deliveries.c.created_at.desc(), deliveries.c.id.desc())
                .limit(clamp_limit(limit))
            ).all()
        return [WebhookDeliveryRecord.model_validate(_row_dict(row)) for row in rows]
