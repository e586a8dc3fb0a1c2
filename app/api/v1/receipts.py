"""
Receipts API Endpoints
======================

Client-submitted receipt validation.
"""

import logging

from fastapi import APIRouter, BackgroundTasks

from app.core.errors import (
    ReceiptInvalid,
    ReceiptValidationError,
    ServiceUnavailableError,
    StoreApiError,
)
from app.dependencies import CurrentApp, DBSession, StoreFactory
from app.schemas.receipts import ReceiptRequest
from app.schemas.subscribers import SubscriberResponse
from app.services.customer_webhooks import build_customer_events, schedule_customer_webhooks
from app.services.receipts import ReceiptValidator
from app.services.subscribers import SubscriberService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=SubscriberResponse)
async def validate_receipt(
    request: ReceiptRequest,
    api_key: CurrentApp,
    db: DBSession,
    stores: StoreFactory,
    background_tasks: BackgroundTasks,
):
    """
    Validate a purchase with the store and return the subscriber snapshot.

    - **400**: the store rejected the receipt or the product is unknown
    - **503**: the store is unreachable; retry later
    """
    app = api_key.app
    validator = ReceiptValidator(db, stores)

    try:
        result = await validator.validate(
            app,
            request.app_user_id,
            request.platform,
            request.receipt_data,
            product_id=request.product_id,
            transaction_id=request.transaction_id,
            subscription_id=request.subscription_id,
        )
    except ReceiptInvalid as e:
        raise ReceiptValidationError(message=str(e), code=e.code)
    except StoreApiError as e:
        logger.error(
            "Store unavailable validating %s receipt for app %s: %s",
            request.platform.value,
            app.id,
            e,
        )
        raise ServiceUnavailableError(message="Store temporarily unavailable, retry later")

    subscriber = result.subscriber
    snapshot = await SubscriberService(db).build_snapshot(subscriber)
    events = await build_customer_events(
        db,
        subscriber.app_user_id,
        outcomes=result.outcomes,
        entitlements=None if result.outcomes else result.entitlements,
        purchase=result.purchase if result.purchase_created else None,
    )

    await db.commit()

    await SubscriberService.invalidate(app.id, subscriber.app_user_id, subscriber.aliases)
    schedule_customer_webhooks(background_tasks, app, events)

    return {"success": True, "data": {"subscriber": snapshot}}
