"""
Pydantic Schemas
================

Request/response schemas for API validation.
"""

from app.schemas.common import (
    BaseResponse,
    ErrorResponse,
)
from app.schemas.entitlements import GrantEntitlementRequest, RevokeEntitlementRequest
from app.schemas.receipts import ReceiptRequest
from app.schemas.subscribers import (
    AttributesUpdateRequest,
    SubscriberCreateRequest,
    SubscriberResponse,
    SubscriberSnapshot,
)
from app.schemas.webhooks import WebhookAck

__all__ = [
    "AttributesUpdateRequest",
    "BaseResponse",
    "ErrorResponse",
    "GrantEntitlementRequest",
    "ReceiptRequest",
    "RevokeEntitlementRequest",
    "SubscriberCreateRequest",
    "SubscriberResponse",
    "SubscriberSnapshot",
    "WebhookAck",
]
