from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool

from backend.app.auth import AuthContext, require_roles
from backend.app.models import (
    CallAttemptRequest,
    CallAttemptResponse,
    CampaignStatusChangeRequest,
    CampaignStatusResponse,
    ClaimContactsResponse,
    ClaimedContact,
    GatewayCredentials,
    InboundWebhookResponse,
    OutboundWebhookResponse,
    WebhookErrorItem,
    WebhookErrorType,
    WebhookVerifyResponse,
)
from backend.app.observability import MetricsRegistry, configure_logging, observe_request
from backend.app.persistence import SqlitePersistence
from backend.app.services.classifier import PayloadClassifier, build_openai_client
from backend.app.services.ingestion import (
    InactiveResourceError,
    InboundIngestionPipeline,
    MalformedInputError,
    parse_payload,
)
from backend.app.services.outbound import OutboundCallResultHandler
from backend.app.services.sms import SmsDispatcher
from backend.app.services.triggers import TriggerEvaluator
from backend.app.settings import Settings, load_settings
from backend.app.store import (
    InMemoryStore,
    InvalidTransitionError,
    StoreConflictError,
    StoreNotFoundError,
)

logger = logging.getLogger("followup_engine.api")


def create_app() -> FastAPI:
    app = FastAPI(title="Follow-up Engine API", version="0.1.0")
    configure_logging()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    settings = load_settings()
    persistence = SqlitePersistence(settings.database_url) if settings.persistence_enabled else None
    store = InMemoryStore(persistence=persistence)
    metrics = MetricsRegistry()
    openai_client = build_openai_client(settings)
    default_credentials = None
    if settings.twilio_account_sid and settings.twilio_auth_token:
        default_credentials = GatewayCredentials(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
        )

    app.state.store = store
    app.state.settings = settings
    app.state.metrics = metrics
    app.state.classifier = PayloadClassifier(openai_client, model=settings.openai_model)
    app.state.trigger_evaluator = TriggerEvaluator(openai_client, model=settings.openai_model)
    app.state.sms_dispatcher = SmsDispatcher(
        store=store,
        default_credentials=default_credentials,
        metrics=metrics,
    )

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def get_store(request: Request) -> InMemoryStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_inbound_pipeline(request: Request) -> InboundIngestionPipeline:
    state = request.app.state
    return InboundIngestionPipeline(
        store=state.store,
        classifier=state.classifier,
        evaluator=state.trigger_evaluator,
        dispatcher=state.sms_dispatcher,
        dedup_window_seconds=state.settings.dedup_window_seconds,
        error_body_max_chars=state.settings.error_body_max_chars,
        metrics=state.metrics,
    )


def get_outbound_handler(request: Request) -> OutboundCallResultHandler:
    state = request.app.state
    return OutboundCallResultHandler(
        store=state.store,
        classifier=state.classifier,
        evaluator=state.trigger_evaluator,
        dispatcher=state.sms_dispatcher,
        metrics=state.metrics,
    )


def log_server_error(
    request: Request, campaign_id: Optional[str], raw_body: bytes, exc: Exception
) -> None:
    settings = get_settings(request)
    get_store(request).add_webhook_error(
        campaign_id=campaign_id,
        raw_body=raw_body.decode("utf-8", errors="replace")[: settings.error_body_max_chars],
        error_type=WebhookErrorType.server_error,
        error_message=str(exc) or exc.__class__.__name__,
    )


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        settings = get_settings(request)
        persistence = getattr(request.app.state.store, "persistence", None)
        if settings.persistence_enabled and persistence and not persistence.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    @router.get("/webhook/{webhook_key}", response_model=WebhookVerifyResponse)
    def verify_inbound_webhook(webhook_key: str, request: Request) -> WebhookVerifyResponse:
        store = get_store(request)
        try:
            campaign = store.get_campaign_by_webhook_key(webhook_key)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return WebhookVerifyResponse(
            valid=True,
            campaign_name=campaign.name,
            active=campaign.is_active,
        )

    @router.post(
        "/webhook/{webhook_key}",
        response_model=InboundWebhookResponse,
        response_model_exclude_none=True,
    )
    async def inbound_webhook(webhook_key: str, request: Request) -> InboundWebhookResponse:
        raw_body = await request.body()
        pipeline = get_inbound_pipeline(request)
        try:
            result = await run_in_threadpool(pipeline.process, webhook_key, raw_body)
        except MalformedInputError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="invalid json payload",
            ) from exc
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except InactiveResourceError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except Exception as exc:
            # Senders retry on anything but 2xx; acknowledge and keep the body for operators.
            logger.exception("inbound_webhook_failed webhook_key=%s", webhook_key)
            log_server_error(request, None, raw_body, exc)
            return InboundWebhookResponse(error="Processing failed")

        if result.duplicate:
            return InboundWebhookResponse(duplicate=True, interaction_id=result.interaction_id)
        if result.processing_error:
            return InboundWebhookResponse(
                interaction_id=result.interaction_id,
                processing_error=True,
            )
        return InboundWebhookResponse(
            interaction_id=result.interaction_id,
            source_type=result.source_type,
            source_platform=result.source_platform,
        )

    @router.get("/outbound-webhook/{webhook_key}", response_model=WebhookVerifyResponse)
    def verify_outbound_webhook(webhook_key: str, request: Request) -> WebhookVerifyResponse:
        store = get_store(request)
        try:
            campaign = store.get_outbound_campaign_by_webhook_key(webhook_key)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return WebhookVerifyResponse(valid=True, campaign_name=campaign.name, type="outbound")

    @router.post(
        "/outbound-webhook/{webhook_key}",
        response_model=OutboundWebhookResponse,
        response_model_exclude_none=True,
    )
    async def outbound_webhook(webhook_key: str, request: Request) -> OutboundWebhookResponse:
        # The voice provider drops callbacks that do not get a fast 200, so every
        # outcome is acknowledged.
        raw_body = await request.body()
        try:
            payload = parse_payload(raw_body)
        except MalformedInputError as exc:
            logger.warning("outbound_webhook_malformed webhook_key=%s error=%s", webhook_key, exc)
            return OutboundWebhookResponse(error="invalid json payload")

        handler = get_outbound_handler(request)
        try:
            outcome = await run_in_threadpool(handler.handle, webhook_key, payload)
        except StoreNotFoundError:
            logger.info("outbound_webhook_unknown_campaign webhook_key=%s", webhook_key)
            return OutboundWebhookResponse(skipped="campaign not found")
        except Exception as exc:
            logger.exception("outbound_webhook_failed webhook_key=%s", webhook_key)
            log_server_error(request, None, raw_body, exc)
            return OutboundWebhookResponse(error="Processing failed")

        return OutboundWebhookResponse(
            skipped=outcome.skipped,
            duplicate=outcome.duplicate or None,
            call_result=outcome.call_result,
            contact_status=outcome.contact_status,
        )

    @router.patch(
        "/outbound-campaigns/{campaign_id}/status",
        response_model=CampaignStatusResponse,
    )
    def change_campaign_status(
        campaign_id: str,
        payload: CampaignStatusChangeRequest,
        request: Request,
        _: AuthContext = Depends(require_roles("admin")),
    ) -> CampaignStatusResponse:
        store = get_store(request)
        try:
            campaign = store.transition_outbound_campaign(campaign_id, payload.status)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except InvalidTransitionError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "message": str(exc),
                    "from_status": exc.from_status.value,
                    "to_status": exc.to_status.value,
                },
            ) from exc
        logger.info(
            "outbound_campaign_status campaign_id=%s status=%s",
            campaign.id,
            campaign.status.value,
        )
        return CampaignStatusResponse(
            campaign_id=campaign.id,
            status=campaign.status,
            actual_start_at_utc=campaign.actual_start_at_utc,
            completed_at_utc=campaign.completed_at_utc,
        )

    @router.post(
        "/outbound-campaigns/{campaign_id}/claim",
        response_model=ClaimContactsResponse,
    )
    def claim_contacts(
        campaign_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles("service", "admin")),
    ) -> ClaimContactsResponse:
        store = get_store(request)
        try:
            available_slots, claimed = store.claim_due_contacts(campaign_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return ClaimContactsResponse(
            campaign_id=campaign_id,
            available_slots=available_slots,
            contacts=[
                ClaimedContact(
                    contact_id=contact.id,
                    phone_number=contact.phone_number,
                    first_name=contact.first_name,
                    last_name=contact.last_name,
                    attempt_count=contact.attempt_count,
                )
                for contact in claimed
            ],
        )

    @router.post(
        "/outbound-campaigns/{campaign_id}/calls",
        response_model=CallAttemptResponse,
    )
    def record_call_attempt(
        campaign_id: str,
        payload: CallAttemptRequest,
        request: Request,
        _: AuthContext = Depends(require_roles("service", "admin")),
    ) -> CallAttemptResponse:
        store = get_store(request)
        try:
            contact = store.get_outbound_contact(payload.contact_id)
            if contact.campaign_id != campaign_id:
                raise StoreNotFoundError(f"outbound contact not found: {payload.contact_id}")
            call_log = store.record_call_placed(contact.id, payload.provider_call_id)
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except StoreConflictError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        return CallAttemptResponse(
            call_log_id=call_log.id,
            contact_id=call_log.contact_id,
            attempt_number=call_log.attempt_number,
        )

    @router.post("/outbound-campaigns/{campaign_id}/contacts/{contact_id}/dial-failure")
    def record_dial_failure(
        campaign_id: str,
        contact_id: str,
        request: Request,
        _: AuthContext = Depends(require_roles("service", "admin")),
    ) -> dict[str, str]:
        store = get_store(request)
        try:
            contact = store.get_outbound_contact(contact_id)
            if contact.campaign_id != campaign_id:
                raise StoreNotFoundError(f"outbound contact not found: {contact_id}")
        except StoreNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        updated = get_outbound_handler(request).record_dial_failure(contact_id)
        return {"contact_id": updated.id, "status": updated.status.value}

    @router.get("/webhook-errors", response_model=list[WebhookErrorItem])
    def list_webhook_errors(
        request: Request,
        limit: int = Query(default=50, ge=1, le=500),
        campaign_id: Optional[str] = None,
        _: AuthContext = Depends(require_roles("admin")),
    ) -> list[WebhookErrorItem]:
        store = get_store(request)
        return [
            WebhookErrorItem(
                id=record.id,
                campaign_id=record.campaign_id,
                error_type=record.error_type,
                error_message=record.error_message,
                raw_body=record.raw_body,
                created_at_utc=record.created_at_utc,
            )
            for record in store.list_webhook_errors(limit=limit, campaign_id=campaign_id)
        ]

    return router


app = create_app()
