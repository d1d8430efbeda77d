"""HTTP request and response models."""

from datetime import datetime

from pydantic import BaseModel


class WebhookAck(BaseModel):
    """Immediate acknowledgement for an accepted gateway event."""

    status: str = "received"


class FollowUpSweepResponse(BaseModel):
    """Outcome of one follow-up sweep."""

    processed: int
    failed: int
    message: str


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    timestamp: datetime
    version: str
