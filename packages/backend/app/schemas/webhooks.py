from __future__ import annotations

from pydantic import BaseModel


class WebhookAckResponse(BaseModel):
    received: bool = True
    processed: bool
    duplicate: bool = False
