"""
Webhook Schemas
===============

Acknowledgement returned to the stores.
"""

from typing import Optional

from pydantic import BaseModel


class WebhookAck(BaseModel):
    """
    Body of every 2xx webhook response.

    Stores only look at the status code; ``status`` is for logs and tests.
    """

    received: bool = True
    duplicate: bool = False
    status: Optional[str] = None
