"""Request models for the admin API."""

from pydantic import BaseModel, ConfigDict, Field

from eventrelay.events.models import DeadLetterStatus


class RetryFilter(BaseModel):
    """Body of POST /dlq/retry."""

    model_config = ConfigDict(populate_by_name=True)

    status: DeadLetterStatus | None = None
    event_name: str | None = Field(default=None, alias="eventName", max_length=200)
