from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.exc import SQLAlchemyError

from backend.linkcard.auth import AuthContext, get_auth_context
from backend.linkcard.models import (
    AnalyticsSummary,
    DeliveryState,
    EventDraft,
    EventRecord,
    EventTrackRequest,
    EventType,
    LinkClickTrackRequest,
    LinkCreateRequest,
    LinkRecord,
    LinkReorderRequest,
    LinkUpdateRequest,
    ProfileCreateRequest,
    ProfileRecord,
    ProfileUpdateRequest,
    QrCodeResponse,
    SuccessResponse,
    TrackResponse,
    UsernameAvailabilityResponse,
    WebhookCreateRequest,
    WebhookCreateResponse,
    WebhookDeliveryRecord,
    WebhookItem,
    WebhookTestResponse,
    WebhookUpdateRequest,
    normalize_username,
)
from backend.linkcard.observability import MetricsRegistry, configure_logging, observe_request
from backend.linkcard.persistence import Database
from backend.linkcard.services.analytics import compute_analytics
from backend.linkcard.services.dispatcher import WebhookDispatcher
from backend.linkcard.services.qr import build_qr_data_url
from backend.linkcard.services.tracking import build_event_draft, utm_from_query
from backend.linkcard.services.vcard import build_vcard, vcard_filename
from backend.linkcard.settings import Settings, load_settings
from backend.linkcard.store import (
    CardStore,
    StoreConflictError,
    StoreNotFoundError,
    UsernameTakenError,
)

logger = logging.getLogger("linkcard")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    dispatcher: WebhookDispatcher = app.state.dispatcher
    if settings.webhook_dispatch_enabled:
        dispatcher.start()
    try:
        yield
    finally:
        if settings.webhook_dispatch_enabled:
            dispatcher.stop()
        app.state.store.database.dispose()


def create_app() -> FastAPI:
    app = FastAPI(title="Linkcard API", version="0.1.0", lifespan=lifespan)
    configure_logging()
    settings = load_settings()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    metrics = MetricsRegistry()
    store = CardStore(Database(settings.database_url))
    app.state.settings = settings
    app.state.metrics = metrics
    app.state.store = store
    app.state.dispatcher = WebhookDispatcher(
        store,
        max_attempts=settings.webhook_max_attempts,
        backoff_seconds=settings.webhook_retry_backoff_seconds,
        timeout_seconds=settings.webhook_timeout_seconds,
        metrics=metrics,
    )

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": "validation error", "errors": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_error method=%s path=%s error=%s",
            request.method,
            request.url.path,
            exc.__class__.__name__,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "internal server error"},
        )

    app.include_router(build_router())
    return app


def get_store(request: Request) -> CardStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_dispatcher(request: Request) -> WebhookDispatcher:
    return request.app.state.dispatcher


def public_profile_url(request: Request, username: str) -> str:
    base_url = get_settings(request).public_base_url or str(request.base_url).rstrip("/")
    return f"{base_url}/@{username}"


def record_interaction(request: Request, draft: EventDraft) -> EventRecord:
    event = get_store(request).record_event(draft)
    get_metrics(request).record_event(event.event_type.value)
    try:
        get_dispatcher(request).enqueue_event(event)
    except SQLAlchemyError:
        logger.exception(
            "webhook_enqueue_failed event_id=%s event_type=%s",
            event.id,
            event.event_type.value,
        )
    return event


def _not_found(exc: StoreNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        if not get_store(request).database.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    # -- profile ------------------------------------------------------------------

    @router.get("/api/profile", response_model=ProfileRecord)
    def get_profile(
        request: Request,
        auth: AuthContext = Depends(get_auth_context),
    ) -> ProfileRecord:
        try:
            return get_store(request).get_profile(auth.user_id)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc

    @router.post("/api/profile", response_model=ProfileRecord)
    def create_profile(
        payload: ProfileCreateRequest,
        request: Request,
        auth: AuthContext = Depends(get_auth_context),
    ) -> ProfileRecord:
        try:
            return get_store(request).create_profile(auth.user_id, payload)
        except UsernameTakenError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    @router.put("/api/profile", response_model=ProfileRecord)
    def update_profile(
        payload: ProfileUpdateRequest,
        request: Request,
        auth: AuthContext = Depends(get_auth_context),
    ) -> ProfileRecord:
        try:
            return get_store(request).update_profile(auth.user_id, payload)
        except UsernameTakenError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc

    @router.delete("/api/profile", response_model=SuccessResponse)
    def delete_profile(
        request: Request,
        auth: AuthContext = Depends(get_auth_context),
    ) -> SuccessResponse:
        try:
            get_store(request).delete_profile(auth.user_id)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        return SuccessResponse()

    @router.get(
        "/api/profile/check-username/{username}",
        response_model=UsernameAvailabilityResponse,
    )
    def check_username(
        username: str,
        request: Request,
        auth: AuthContext = Depends(get_auth_context),
    ) -> UsernameAvailabilityResponse:
        try:
            normalized = normalize_username(username)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        available = get_store(request).is_username_available(normalized, auth.user_id)
        return UsernameAvailabilityResponse(username=normalized, available=available)

    @router.get("/api/public/profile/{username}", response_model=ProfileRecord)
    def public_profile(username: str, request: Request) -> ProfileRecord:
        try:
            profile = get_store(request).get_public_profile(username)
        except StoreNotFoundError as exc:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail="profile not found"
            ) from exc
        record_interaction(
            request,
            build_event_draft(
                request,
                profile_id=profile.id,
                event_type=EventType.profile_view,
                utm=utm_from_query(request),
            ),
        )
        return profile

    # -- links --------------------------------------------------------------------

    @router.get("/api/links", response_model=list[LinkRecord])
    def list_links(
        request: Request,
        auth: AuthContext = Depends(get_auth_context),
    ) -> list[LinkRecord]:
        return get_store(request).list_links(auth.user_id)

    @router.post("/api/links", response_model=LinkRecord)
    def create_link(
        payload: LinkCreateRequest,
        request: Request,
        auth: AuthContext = Depends(get_auth_context),
    ) -> LinkRecord:
        try:
            return get_store(request).create_link(auth.user_id, payload)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc

    @router.post("/api/links/reorder", response_model=list[LinkRecord])
    def reorder_links(
        payload: LinkReorderRequest,
        request: Request,
        auth: AuthContext = Depends(get_auth_context),
    ) -> list[LinkRecord]:
        return get_store(request).reorder_links(auth.user_id, payload.link_ids)

    @router.put("/api/links/{link_id}", response_model=LinkRecord)
    def update_link(
        link_id: str,
        payload: LinkUpdateRequest,
        request: Request,
        auth: AuthContext = Depends(get_auth_context),
    ) -> LinkRecord:
        try:
            return get_store(request).update_link(auth.user_id, link_id, payload)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc

    @router.delete("/api/links/{link_id}", response_model=SuccessResponse)
    def delete_link(
        link_id: str,
        request: Request,
        auth: AuthContext = Depends(get_auth_context),
    ) -> SuccessResponse:
        try:
            get_store(request).delete_link(auth.user_id, link_id)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        return SuccessResponse()

    @router.get("/api/public/links/{profile_id}", response_model=list[LinkRecord])
    def public_links(profile_id: str, request: Request) -> list[LinkRecord]:
        try:
            return get_store(request).list_public_links(profile_id)
        except StoreNotFoundError as exc:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail="profile not found"
            ) from exc

    # -- analytics and tracking -----------------------------------------------------

    @router.get("/api/analytics", response_model=AnalyticsSummary)
    def analytics(
        request: Request,
        days: int = Query(default=30, ge=1, le=365),
        auth: AuthContext = Depends(get_auth_context),
    ) -> AnalyticsSummary:
        return compute_analytics(get_store(request).database, auth.user_id, days)

    @router.get("/api/events", response_model=list[EventRecord])
    def list_events(
        request: Request,
        limit: int = Query(default=50, ge=1, le=500),
        auth: AuthContext = Depends(get_auth_context),
    ) -> list[EventRecord]:
        return get_store(request).list_events(auth.user_id, limit)

    @router.post("/api/track/link-click", response_model=TrackResponse)
    def track_link_click(payload: LinkClickTrackRequest, request: Request) -> TrackResponse:
        store = get_store(request)
        try:
            store.get_link(payload.profile_id, payload.link_id)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        event = record_interaction(
            request,
            build_event_draft(
                request,
                profile_id=payload.profile_id,
                event_type=EventType.link_click,
                link_id=payload.link_id,
                utm=payload.utm,
                referrer=payload.referrer,
            ),
        )
        return TrackResponse(event_id=event.id)

    @router.post("/api/track/event", response_model=TrackResponse)
    def track_event(payload: EventTrackRequest, request: Request) -> TrackResponse:
        store = get_store(request)
        try:
            store.require_profile(payload.profile_id)
            if payload.link_id:
                store.get_link(payload.profile_id, payload.link_id)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        event = record_interaction(
            request,
            build_event_draft(
                request,
                profile_id=payload.profile_id,
                event_type=payload.event_type,
                link_id=payload.link_id,
                utm=payload.utm,
                referrer=payload.referrer,
                metadata=payload.metadata,
            ),
        )
        return TrackResponse(event_id=event.id)

    # -- sharing ------------------------------------------------------------------

    @router.get("/api/qr/{username}", response_model=QrCodeResponse)
    def qr_code(username: str, request: Request) -> QrCodeResponse:
        try:
            profile = get_store(request).get_public_profile(username)
        except StoreNotFoundError as exc:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail="profile not found"
            ) from exc
        profile_url = public_profile_url(request, profile.username)
        return QrCodeResponse(qr_code=build_qr_data_url(profile_url), profile_url=profile_url)

    @router.get("/api/vcard/{username}")
    def vcard(username: str, request: Request) -> Response:
        try:
            profile = get_store(request).get_public_profile(username)
        except StoreNotFoundError as exc:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail="profile not found"
            ) from exc
        body = build_vcard(profile, public_profile_url(request, profile.username))
        return Response(
            content=body,
            media_type="text/vcard",
            headers={
                "Content-Disposition": (
                    f'attachment; filename="{vcard_filename(profile.username)}"'
                )
            },
        )

    # -- webhooks -----------------------------------------------------------------

    @router.get("/api/webhooks", response_model=list[WebhookItem])
    def list_webhooks(
        request: Request,
        auth: AuthContext = Depends(get_auth_context),
    ) -> list[WebhookItem]:
        return [webhook.to_item() for webhook in get_store(request).list_webhooks(auth.user_id)]

    @router.post("/api/webhooks", response_model=WebhookCreateResponse)
    def create_webhook(
        payload: WebhookCreateRequest,
        request: Request,
        auth: AuthContext = Depends(get_auth_context),
    ) -> WebhookCreateResponse:
        try:
            webhook = get_store(request).create_webhook(auth.user_id, payload)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        return WebhookCreateResponse.model_validate(webhook.model_dump())

    @router.put("/api/webhooks/{webhook_id}", response_model=WebhookItem)
    def update_webhook(
        webhook_id: str,
        payload: WebhookUpdateRequest,
        request: Request,
        auth: AuthContext = Depends(get_auth_context),
    ) -> WebhookItem:
        try:
            webhook = get_store(request).update_webhook(auth.user_id, webhook_id, payload)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        return webhook.to_item()

    @router.delete("/api/webhooks/{webhook_id}", response_model=SuccessResponse)
    def delete_webhook(
        webhook_id: str,
        request: Request,
        auth: AuthContext = Depends(get_auth_context),
    ) -> SuccessResponse:
        try:
            get_store(request).delete_webhook(auth.user_id, webhook_id)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        return SuccessResponse()

    @router.post("/api/webhooks/{webhook_id}/test", response_model=WebhookTestResponse)
    def test_webhook(
        webhook_id: str,
        request: Request,
        auth: AuthContext = Depends(get_auth_context),
    ) -> WebhookTestResponse:
        try:
            webhook = get_store(request).get_webhook(auth.user_id, webhook_id)
            delivery = get_dispatcher(request).send_test(webhook)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        delivered = delivery.state == DeliveryState.delivered
        return WebhookTestResponse(
            success=delivered,
            message="test webhook delivered" if delivered else "test webhook failed",
            delivery=delivery,
        )

    @router.get(
        "/api/webhooks/{webhook_id}/deliveries",
        response_model=list[WebhookDeliveryRecord],
    )
    def list_webhook_deliveries(
        webhook_id: str,
        request: Request,
        limit: int = Query(default=50, ge=1, le=500),
        auth: AuthContext = Depends(get_auth_context),
    ) -> list[WebhookDeliveryRecord]:
        try:
            return get_store(request).list_webhook_deliveries(auth.user_id, webhook_id, limit)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc

    return router


app = create_app()
