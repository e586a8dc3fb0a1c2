"""
Receipt Schemas
===============

Pydantic schemas for receipt validation.
"""

from typing import Optional

from pydantic import BaseModel, Field, model_validator

from app.models.subscription import Platform


class ReceiptRequest(BaseModel):
    """
    Receipt submitted by a client after a purchase or restore.

    iOS: ``receipt_data`` is the StoreKit 2 signed transaction, and/or
    ``transaction_id`` is given.
    Android: ``receipt_data`` is the purchase token and ``product_id``
    (or ``subscription_id``) the store product id.
    """

    app_user_id: str = Field(min_length=1, max_length=255)
    platform: Platform
    receipt_data: Optional[str] = None
    product_id: Optional[str] = None
    transaction_id: Optional[str] = None
    subscription_id: Optional[str] = None

    @model_validator(mode="after")
    def check_receipt_reference(self) -> "ReceiptRequest":
        if not self.receipt_data and not self.transaction_id:
            raise ValueError("receipt_data or transaction_id is required")
        return self
