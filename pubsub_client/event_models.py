from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Any, Dict, List, Union
from enum import Enum


class ReplayPreset(str, Enum):
    """Where in the bus history a subscription begins."""
    LATEST = "LATEST"
    EARLIEST = "EARLIEST"
    CUSTOM = "CUSTOM"


class SubscriptionStatus(str, Enum):
    """Terminal status of a subscription run."""
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


ReplayToken = Union[bytes, str]

# Recursive decoded value: scalar, nested mapping, ordered list or null.
DecodedValue = Union[None, str, int, float, bool, Dict[str, "DecodedValue"], List["DecodedValue"]]
DecodedEvent = Dict[str, DecodedValue]


class SubscriptionRequest(BaseModel):
    topic: str = Field(..., min_length=1, description="Topic to subscribe to")
    replay_preset: ReplayPreset = ReplayPreset.LATEST
    replay_token: ReplayToken | None = Field(default=None, description="Required for CUSTOM replay")
    requested_count: int = Field(default=0, ge=0, description="0 streams indefinitely")

    @field_validator("replay_preset", mode="before")
    @classmethod
    def _upper_preset(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @model_validator(mode="after")
    def _check_replay_token(self) -> "SubscriptionRequest":
        if self.replay_preset == ReplayPreset.CUSTOM:
            if not self.replay_token:
                raise ValueError("replay_token is required when replay_preset is CUSTOM")
        else:
            self.replay_token = None
        return self


class EventEnvelope(BaseModel):
    replay_token: ReplayToken
    attributes: Dict[str, str] = Field(default_factory=dict)
    raw_payload: bytes = b""
    schema_id: str | None = None
    event_id: str | None = None


class EventBatch(BaseModel):
    events: List[EventEnvelope] = Field(default_factory=list)
    latest_replay_token: ReplayToken | None = None
    pending_count: int | None = None


class SchemaRef(BaseModel):
    schema_id: str
    definition: Dict[str, Any] | None = Field(
        default=None,
        description="Parsed schema document; None forces schema-less decode"
    )


class SubscriptionResult(BaseModel):
    status: SubscriptionStatus
    topic: str
    batches_received: int = 0
    events_received: int = 0
    events_failed: int = 0
    last_replay_token: ReplayToken | None = None
    error: str | None = None


def format_replay_token(token: ReplayToken | None) -> str | None:
    """Render a replay token for log output."""
    if token is None:
        return None
    if isinstance(token, (bytes, bytearray)):
        return bytes(token).hex()
    return str(token)
