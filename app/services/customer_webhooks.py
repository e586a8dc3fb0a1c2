"""
Customer Webhook Service
========================

Signed outbound notifications to the developer's ``webhook_url``.

Events are collected while the request's session is still open and
delivered from a background task once the reconciliation has committed.
Delivery failures are logged and never reach the caller.
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

import httpx
from fastapi import BackgroundTasks
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.security import sign_payload
from app.models.app import App
from app.models.subscription import Purchase
from app.services.entitlements import EntitlementService, RecomputeResult
from app.services.events import customer_event_type
from app.services.reconciler import ReconcileOutcome
from app.utils.helpers import format_datetime, utc_now

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-IAP-Signature"
EVENT_HEADER = "X-IAP-Event"
TIMESTAMP_HEADER = "X-IAP-Timestamp"


@dataclass
class CustomerEvent:
    type: str
    data: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Event builders
# =============================================================================

def subscription_event(outcome: ReconcileOutcome, app_user_id: str) -> Optional[CustomerEvent]:
    """Customer event for one applied transition, if it has one."""
    if outcome.fact is None:
        return None
    event_type = customer_event_type(outcome.fact)
    if event_type is None:
        return None

    subscription = outcome.subscription
    return CustomerEvent(
        type=event_type,
        data={
            "app_user_id": app_user_id,
            "product_identifier": subscription.product.identifier,
            "platform": subscription.platform.value,
            "original_transaction_id": subscription.original_transaction_id,
            "status": subscription.status.value,
            "expires_date": format_datetime(subscription.expires_date),
            "auto_renew_enabled": subscription.auto_renew_enabled,
            "environment": subscription.environment,
        },
    )


async def build_customer_events(
    db: AsyncSession,
    app_user_id: str,
    outcomes: Iterable[ReconcileOutcome] = (),
    entitlements: Optional[RecomputeResult] = None,
    purchase: Optional[Purchase] = None,
) -> list[CustomerEvent]:
    """
    Collect the customer events produced by one request.

    Must run before the session closes; the returned events hold plain
    data only.
    """
    service = EntitlementService(db)
    events: list[CustomerEvent] = []

    async def add_entitlement_diff(result: Optional[RecomputeResult]) -> None:
        if result is None:
            return
        for identifier in await service.identifiers_for(result.granted):
            events.append(
                CustomerEvent(
                    "entitlement.granted",
                    {"app_user_id": app_user_id, "entitlement": identifier},
                )
            )
        for identifier in await service.identifiers_for(result.revoked):
            events.append(
                CustomerEvent(
                    "entitlement.revoked",
                    {"app_user_id": app_user_id, "entitlement": identifier},
                )
            )

    for outcome in outcomes:
        event = subscription_event(outcome, app_user_id)
        if event is not None:
            events.append(event)
        await add_entitlement_diff(outcome.entitlements)

    if purchase is not None:
        events.append(
            CustomerEvent(
                "purchase.completed",
                {
                    "app_user_id": app_user_id,
                    "product_identifier": purchase.product.identifier,
                    "platform": purchase.platform.value,
                    "transaction_id": purchase.store_transaction_id,
                    "purchase_date": format_datetime(purchase.purchase_date),
                    "environment": purchase.environment,
                },
            )
        )

    await add_entitlement_diff(entitlements)
    return events


# =============================================================================
# Delivery
# =============================================================================

class CustomerWebhookDispatcher:
    """
    Delivers signed events with bounded retries.

    Attempt ``n`` (0-based) that fails with a network error, 429 or 5xx is
    retried after ``2 ** n`` seconds. Other 4xx responses are final.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        max_attempts: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        self.client = client
        self.max_attempts = max_attempts or settings.CUSTOMER_WEBHOOK_MAX_RETRIES
        self.timeout = timeout or settings.CUSTOMER_WEBHOOK_TIMEOUT_SECONDS

    @staticmethod
    def build_payload(app_id: str, event: CustomerEvent) -> dict[str, Any]:
        return {
            "id": f"evt_{uuid.uuid4().hex}",
            "type": event.type,
            "timestamp": format_datetime(utc_now()),
            "app_id": app_id,
            "data": event.data,
        }

    async def _post(self, url: str, body: bytes, headers: dict[str, str]) -> httpx.Response:
        if self.client is not None:
            return await self.client.post(url, content=body, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient() as client:
            return await client.post(url, content=body, headers=headers, timeout=self.timeout)

    async def deliver(self, url: str, secret: str, payload: dict[str, Any]) -> bool:
        """
        POST one payload.

        Returns:
            True once the endpoint answers 2xx, False when attempts are
            exhausted or the endpoint rejects the event.
        """
        body = json.dumps(payload, separators=(",", ":"), default=str).encode()
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(secret or "", body),
            EVENT_HEADER: payload["type"],
            TIMESTAMP_HEADER: str(int(time.time())),
        }

        for attempt in range(self.max_attempts):
            try:
                response = await self._post(url, body, headers)
                if 200 <= response.status_code < 300:
                    logger.info(
                        "Customer webhook %s (%s) delivered to %s",
                        payload["id"],
                        payload["type"],
                        url,
                    )
                    return True
                if response.status_code < 500 and response.status_code != 429:
                    logger.warning(
                        "Customer webhook %s rejected by %s with %d: %s",
                        payload["id"],
                        url,
                        response.status_code,
                        response.text[:200],
                    )
                    return False
                logger.warning(
                    "Customer webhook %s attempt %d/%d got %d",
                    payload["id"],
                    attempt + 1,
                    self.max_attempts,
                    response.status_code,
                )
            except httpx.HTTPError as e:
                logger.warning(
                    "Customer webhook %s attempt %d/%d failed: %s",
                    payload["id"],
                    attempt + 1,
                    self.max_attempts,
                    e,
                )

            if attempt + 1 < self.max_attempts:
                await asyncio.sleep(2 ** attempt)

        logger.error(
            "Customer webhook %s (%s) to %s failed after %d attempts",
            payload["id"],
            payload["type"],
            url,
            self.max_attempts,
        )
        return False

    async def dispatch(
        self,
        webhook_url: Optional[str],
        webhook_secret: Optional[str],
        app_id: str,
        events: list[CustomerEvent],
    ) -> None:
        """Background task entry point; never raises."""
        if not webhook_url or not events:
            return

        for event in events:
            try:
                await self.deliver(webhook_url, webhook_secret, self.build_payload(app_id, event))
            except Exception:
                logger.exception("Unexpected error delivering customer webhook %s", event.type)


def schedule_customer_webhooks(
    background_tasks: BackgroundTasks,
    app: App,
    events: list[CustomerEvent],
) -> None:
    """Queue delivery to run after the response; ``app`` must be loaded."""
    if not app.webhook_url or not events:
        return
    background_tasks.add_task(
        CustomerWebhookDispatcher().dispatch,
        app.webhook_url,
        app.webhook_secret,
        str(app.id),
        events,
    )
