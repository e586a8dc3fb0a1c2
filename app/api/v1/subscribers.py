"""
Subscribers API Endpoints
=========================

Subscriber snapshot, creation and attributes.
"""

import logging

from fastapi import APIRouter

from app.core.errors import ErrorCodes, NotFoundError
from app.dependencies import CurrentApp, DBSession
from app.schemas.subscribers import (
    AttributesUpdateRequest,
    SubscriberCreateRequest,
    SubscriberResponse,
)
from app.services.subscribers import SubscriberService

logger = logging.getLogger(__name__)

router = APIRouter()


def _subscriber_not_found(app_user_id: str) -> NotFoundError:
    return NotFoundError(
        code=ErrorCodes.SUBSCRIBER_NOT_FOUND,
        message=f"Subscriber '{app_user_id}' not found",
    )


@router.get("/{app_user_id}", response_model=SubscriberResponse)
async def get_subscriber(
    app_user_id: str,
    api_key: CurrentApp,
    db: DBSession,
):
    """
    Get a subscriber's entitlement snapshot.

    Served from Redis when cached; invalidated after every reconciliation.
    """
    snapshot = await SubscriberService(db).get_snapshot_cached(api_key.app, app_user_id)
    if snapshot is None:
        raise _subscriber_not_found(app_user_id)
    return {"success": True, "data": {"subscriber": snapshot}}


@router.post("", response_model=SubscriberResponse)
async def create_subscriber(
    request: SubscriberCreateRequest,
    api_key: CurrentApp,
    db: DBSession,
):
    """Get or create a subscriber, merging attributes and an optional alias."""
    app = api_key.app
    service = SubscriberService(db)

    subscriber, created = await service.get_or_create(
        app, request.app_user_id, attributes=request.attributes
    )
    if request.alias:
        await service.add_alias(subscriber, request.alias)
    await db.flush()

    snapshot = await service.build_snapshot(subscriber)
    await db.commit()

    if not created:
        await SubscriberService.invalidate(app.id, subscriber.app_user_id, subscriber.aliases)
    return {"success": True, "data": {"subscriber": snapshot}}


@router.post("/{app_user_id}/attributes", response_model=SubscriberResponse)
async def update_attributes(
    app_user_id: str,
    request: AttributesUpdateRequest,
    api_key: CurrentApp,
    db: DBSession,
):
    """Merge subscriber attributes. A null value deletes the attribute."""
    app = api_key.app
    service = SubscriberService(db)

    subscriber = await service.get(app.id, app_user_id)
    if subscriber is None:
        raise _subscriber_not_found(app_user_id)

    await service.update_attributes(subscriber, request.attributes)
    snapshot = await service.build_snapshot(subscriber)
    await db.commit()

    await SubscriberService.invalidate(app.id, subscriber.app_user_id, subscriber.aliases)
    return {"success": True, "data": {"subscriber": snapshot}}
