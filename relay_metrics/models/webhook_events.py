"""Payloads posted by the messaging server's webhooks.

    {"time_ms": 1760870000000, "events": [{"name": "channel_occupied", "channel": "presence-room"}, ...]}

Unknown event names are accepted and ignored so a server that sends more
event kinds than we track does not get its whole batch rejected.
"""

from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

TRACKED_EVENTS = (
    'channel_occupied',
    'channel_vacated',
    'member_added',
    'member_removed',
    'client_event',
    'subscription_count',
)


class WebhookEvent(BaseModel):
    model_config = ConfigDict(extra='allow')

    name: str = Field(..., min_length=1, max_length=100)
    channel: Optional[str] = Field(None, max_length=255)
    event: Optional[str] = Field(None, max_length=255, description='Client event name')
    data: Any = None
    subscription_count: Optional[int] = Field(None, ge=0)

    @model_validator(mode='after')
    def check_subscription_count(self) -> 'WebhookEvent':
        if self.name == 'subscription_count':
            if not self.channel:
                raise ValueError('subscription_count events need a channel')
            if self.subscription_count is None:
                raise ValueError('subscription_count events need a subscription_count')
        return self


class WebhookPayload(BaseModel):
    time_ms: int = Field(..., ge=0)
    events: List[WebhookEvent] = Field(default_factory=list)

    @property
    def occurred_at(self) -> datetime:
        """Batch time as naive UTC."""
        return datetime.fromtimestamp(self.time_ms / 1000, tz=timezone.utc).replace(tzinfo=None)


class WebhookBatchResponse(BaseModel):
    app_id: str
    processed: int = Field(..., description='Events that updated a tracked metric')
    ignored: int = Field(..., description='Events with a name that is not tracked')
