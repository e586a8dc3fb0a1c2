"""
Entitlement Schemas
===================

Pydantic schemas for manual entitlement grants and revokes.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class GrantEntitlementRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    app_user_id: str = Field(min_length=1, max_length=255)
    entitlement_identifier: str = Field(alias="entitlement", min_length=1)
    expires_date: Optional[datetime] = Field(
        default=None, description="Omit for a grant that never expires"
    )
    reason: Optional[str] = Field(default=None, max_length=500)


class RevokeEntitlementRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    app_user_id: str = Field(min_length=1, max_length=255)
    entitlement_identifier: str = Field(alias="entitlement", min_length=1)
    reason: Optional[str] = Field(default=None, max_length=500)
