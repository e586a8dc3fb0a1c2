"""
Entitlements API Endpoints
==========================

Manual entitlement grants and revokes (secret key only).
"""

import logging

from fastapi import APIRouter, BackgroundTasks

from app.dependencies import DBSession, SecretApp
from app.schemas.entitlements import GrantEntitlementRequest, RevokeEntitlementRequest
from app.schemas.subscribers import SubscriberResponse
from app.services.customer_webhooks import build_customer_events, schedule_customer_webhooks
from app.services.entitlements import EntitlementService
from app.services.subscribers import SubscriberService

logger = logging.getLogger(__name__)

router = APIRouter()

GRANTED_BY = "api"


@router.post("/grant", response_model=SubscriberResponse)
async def grant_entitlement(
    request: GrantEntitlementRequest,
    api_key: SecretApp,
    db: DBSession,
    background_tasks: BackgroundTasks,
):
    """
    Grant an entitlement to a subscriber, created if unknown.

    Without ``expires_date`` the grant never expires. Replaces any earlier
    manual grant or revoke of the same entitlement.
    """
    app = api_key.app
    subscribers = SubscriberService(db)
    subscriber, _ = await subscribers.get_or_create(app, request.app_user_id)

    result = await EntitlementService(db).grant(
        subscriber,
        request.entitlement_identifier,
        expires_date=request.expires_date,
        reason=request.reason,
        granted_by=GRANTED_BY,
    )
    snapshot = await subscribers.build_snapshot(subscriber)
    events = await build_customer_events(db, subscriber.app_user_id, entitlements=result)
    await db.commit()

    await SubscriberService.invalidate(app.id, subscriber.app_user_id, subscriber.aliases)
    schedule_customer_webhooks(background_tasks, app, events)
    return {"success": True, "data": {"subscriber": snapshot}}


@router.post("/revoke", response_model=SubscriberResponse)
async def revoke_entitlement(
    request: RevokeEntitlementRequest,
    api_key: SecretApp,
    db: DBSession,
    background_tasks: BackgroundTasks,
):
    """Revoke an entitlement. Wins over store-derived access until re-granted."""
    app = api_key.app
    subscribers = SubscriberService(db)
    subscriber, _ = await subscribers.get_or_create(app, request.app_user_id)

    result = await EntitlementService(db).revoke(
        subscriber,
        request.entitlement_identifier,
        reason=request.reason,
        granted_by=GRANTED_BY,
    )
    snapshot = await subscribers.build_snapshot(subscriber)
    events = await build_customer_events(db, subscriber.app_user_id, entitlements=result)
    await db.commit()

    await SubscriberService.invalidate(app.id, subscriber.app_user_id, subscriber.aliases)
    schedule_customer_webhooks(background_tasks, app, events)
    return {"success": True, "data": {"subscriber": snapshot}}
