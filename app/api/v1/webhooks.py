"""
Webhooks API Endpoints
======================

App Store Server Notifications V2 and Google Play RTDN (Pub/Sub push).

Response policy:
    Stores redeliver on any non-2xx response. Everything that a retry
    cannot fix (duplicates, malformed or unsigned payloads, unknown apps
    or subscriptions, permanent store errors) is acknowledged with 200.
    Transient store failures return 503 and unexpected errors 500, after
    the failed attempt is recorded in the event ledger.
"""

import json
import logging
from typing import Any, Awaitable, Callable, Optional

from fastapi import APIRouter, BackgroundTasks, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import (
    AppException,
    ErrorCodes,
    ServiceUnavailableError,
    StoreApiError,
)
from app.core.security import keys_match
from app.db.session import get_session_factory
from app.dependencies import DBSession, StoreFactory
from app.models.subscriber import Subscriber
from app.schemas.webhooks import WebhookAck
from app.services.customer_webhooks import (
    CustomerEvent,
    build_customer_events,
    schedule_customer_webhooks,
)
from app.services.ledger import EventLedger
from app.services.normalizer import WebhookNormalizer, WebhookResult, WebhookStatus
from app.services.subscribers import SubscriberService

logger = logging.getLogger(__name__)

router = APIRouter()


async def _read_json(request: Request) -> Any:
    try:
        body = await request.body()
        return json.loads(body.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("Invalid webhook payload on %s: %s", request.url.path, e)
        return None


async def _record_failure(normalizer: WebhookNormalizer, error: Exception) -> None:
    ctx = normalizer.context
    if ctx is None or not ctx.provider_event_id:
        return
    await EventLedger.record_failure(
        get_session_factory(),
        ctx.platform,
        ctx.provider_event_id,
        f"{type(error).__name__}: {error}",
        event_type=ctx.event_type,
        payload=ctx.payload,
        app_id=ctx.app_id,
    )


async def _process(
    db: AsyncSession,
    background_tasks: BackgroundTasks,
    normalizer: WebhookNormalizer,
    handler: Callable[[Any], Awaitable[WebhookResult]],
    payload: Any,
) -> WebhookAck:
    """Run one notification through the normalizer and commit its effects."""
    subscriber: Optional[Subscriber] = None
    events: list[CustomerEvent] = []

    try:
        result = await handler(payload)

        if result.subscriber_id is not None:
            subscriber = await db.get(Subscriber, result.subscriber_id)
        if subscriber is not None and result.outcome is not None:
            events = await build_customer_events(
                db, subscriber.app_user_id, outcomes=[result.outcome]
            )

        await db.commit()

    except Exception as e:
        await db.rollback()
        transient = isinstance(e, StoreApiError) and e.transient
        ctx = normalizer.context
        if transient:
            logger.error(
                "Transient store failure for %s event %s: %s",
                ctx.platform.value if ctx else "unknown",
                ctx.provider_event_id if ctx else None,
                e,
            )
        else:
            logger.exception(
                "Webhook processing error for %s event %s",
                ctx.platform.value if ctx else "unknown",
                ctx.provider_event_id if ctx else None,
            )
        await _record_failure(normalizer, e)

        # Non-2xx so the store redelivers
        if transient:
            raise ServiceUnavailableError(message="Store temporarily unavailable")
        raise AppException(
            status_code=500,
            code=ErrorCodes.WEBHOOK_PROCESSING_FAILED,
            message="Error processing webhook",
        )

    if subscriber is not None and result.app is not None:
        await SubscriberService.invalidate(
            result.app.id, subscriber.app_user_id, subscriber.aliases
        )
        schedule_customer_webhooks(background_tasks, result.app, events)

    logger.info(
        "Webhook %s %s (%s): %s",
        result.platform.value,
        result.provider_event_id,
        result.event_type,
        result.status,
    )
    return WebhookAck(duplicate=result.is_duplicate, status=result.status)


@router.post("/apple", response_model=WebhookAck)
async def apple_webhook(
    request: Request,
    db: DBSession,
    stores: StoreFactory,
    background_tasks: BackgroundTasks,
):
    """
    Handle App Store Server Notifications V2.

    Body: ``{"signedPayload": "<JWS>"}``
    """
    payload = await _read_json(request)
    signed_payload = payload.get("signedPayload") if isinstance(payload, dict) else None
    if not signed_payload or not isinstance(signed_payload, str):
        logger.warning("Apple webhook without signedPayload, acknowledging")
        return WebhookAck(status=WebhookStatus.MALFORMED)

    normalizer = WebhookNormalizer(db, stores)
    return await _process(db, background_tasks, normalizer, normalizer.handle_apple, signed_payload)


@router.post("/google", response_model=WebhookAck)
async def google_webhook(
    request: Request,
    db: DBSession,
    stores: StoreFactory,
    background_tasks: BackgroundTasks,
    token: Optional[str] = Query(default=None),
):
    """
    Handle Google Play Real-time Developer Notifications.

    Body: Pub/Sub push envelope ``{"message": {"data", "messageId"}, "subscription"}``.
    When ``GOOGLE_PUBSUB_VERIFICATION_TOKEN`` is set, the push subscription
    must be configured with ``?token=<value>``.
    """
    expected = settings.GOOGLE_PUBSUB_VERIFICATION_TOKEN
    if expected and not keys_match(token or "", expected):
        logger.warning("SECURITY: Google RTDN push with invalid verification token")
        return WebhookAck(status=WebhookStatus.INVALID_SIGNATURE)

    payload = await _read_json(request)
    envelope = payload if isinstance(payload, dict) else {}

    normalizer = WebhookNormalizer(db, stores)
    return await _process(db, background_tasks, normalizer, normalizer.handle_google, envelope)
