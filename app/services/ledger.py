"""
Webhook Event Ledger
====================

Idempotency ledger for inbound store notifications.

The unique constraint on (platform, provider_event_id) is the atomic
check-and-mark: the first delivery inserts the row, a redelivery either
finds it processed (duplicate) or finds an earlier failed attempt and
retries it.
"""

import logging
from typing import Any, Optional
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import DuplicateEvent
from app.models.subscription import Platform
from app.models.webhook_event import WebhookEvent
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)


class EventLedger:
    """Claims, completes and fails ``WebhookEvent`` rows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_for_update(
        self, platform: Platform, provider_event_id: str
    ) -> Optional[WebhookEvent]:
        result = await self.db.execute(
            select(WebhookEvent)
            .where(
                WebhookEvent.platform == platform,
                WebhookEvent.provider_event_id == provider_event_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def claim(
        self,
        platform: Platform,
        provider_event_id: str,
        event_type: str,
        payload: Optional[dict[str, Any]] = None,
        app_id: Optional[uuid.UUID] = None,
    ) -> WebhookEvent:
        """
        Claim an event for processing.

        Returns:
            The ledger row, new or re-attempted.

        Raises:
            DuplicateEvent: the event was already processed.
        """
        event = WebhookEvent(
            app_id=app_id,
            platform=platform,
            provider_event_id=provider_event_id,
            event_type=event_type,
            payload=payload,
            received_at=utc_now(),
            attempts=1,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(event)
                await self.db.flush()
            return event
        except IntegrityError:
            pass

        existing = await self._get_for_update(platform, provider_event_id)
        if existing is None:
            # Row vanished between the insert and the re-read
            raise RuntimeError(
                f"Ledger row for {platform.value}:{provider_event_id} not found after conflict"
            )

        if existing.processed_at is not None:
            logger.info(
                "Duplicate %s event %s (%s), already processed at %s",
                platform.value,
                provider_event_id,
                existing.event_type,
                existing.processed_at,
            )
            raise DuplicateEvent(platform.value, provider_event_id)

        existing.attempts += 1
        if app_id is not None and existing.app_id is None:
            existing.app_id = app_id
        await self.db.flush()
        logger.info(
            "Retrying %s event %s (attempt %d, last error: %s)",
            platform.value,
            provider_event_id,
            existing.attempts,
            existing.error,
        )
        return existing

    async def mark_processed(
        self,
        event: WebhookEvent,
        error: Optional[str] = None,
    ) -> None:
        """
        Mark the event processed in the current transaction.

        ``error`` records a permanent failure that was acknowledged anyway.
        """
        event.processed_at = utc_now()
        event.error = error
        await self.db.flush()

    @staticmethod
    async def record_failure(
        session_factory: async_sessionmaker,
        platform: Platform,
        provider_event_id: str,
        error: str,
        event_type: str = "unknown",
        payload: Optional[dict[str, Any]] = None,
        app_id: Optional[uuid.UUID] = None,
    ) -> None:
        """
        Record a failed attempt in its own short transaction.

        Called after the processing transaction rolled back, so the claim
        itself may not exist yet. ``processed_at`` stays NULL so the store's
        redelivery is retried.
        """
        try:
            async with session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        select(WebhookEvent)
                        .where(
                            WebhookEvent.platform == platform,
                            WebhookEvent.provider_event_id == provider_event_id,
                        )
                        .with_for_update()
                    )
                    event = result.scalar_one_or_none()
                    if event is None:
                        session.add(
                            WebhookEvent(
                                app_id=app_id,
                                platform=platform,
                                provider_event_id=provider_event_id,
                                event_type=event_type,
                                payload=payload,
                                received_at=utc_now(),
                                attempts=1,
                                error=error[:2000],
                            )
                        )
                    elif event.processed_at is None:
                        event.error = error[:2000]
        except Exception:
            # Never mask the original failure
            logger.exception(
                "Could not record failure for %s event %s",
                platform.value,
                provider_event_id,
            )
