"""
Records and wire models.

Field names are snake_case in Python; the JSON the mobile clients exchange is
camelCase, so every wire field carries an explicit alias.
"""

import re
from datetime import UTC, datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

QUIET_HOURS_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
MAX_TIMER_NAME_LENGTH = 100
MAX_SHARE_TARGETS = 100


def utc_now_iso() -> str:
    """Format the current UTC time as ISO 8601 with Z suffix."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _not_blank(value: str | None) -> str | None:
    if value is not None and not value.strip():
        raise ValueError("must not be blank")
    return value


# ============================================================
# TIMERS
# ============================================================


class TimerPayload(BaseModel):
    """Timer as sent by a client. The owner may be omitted."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1)
    user_id: str | None = Field(None, alias="userId")
    name: str = Field(..., min_length=1, max_length=MAX_TIMER_NAME_LENGTH)
    total_duration: str = Field(..., min_length=1, alias="totalDuration")
    remaining_duration: str | None = Field(None, alias="remainingDuration")
    end_time: str | None = Field(
        None,
        validation_alias=AliasChoices("timerEnd", "endTime"),
        serialization_alias="endTime",
    )

    @field_validator("id", "name", "total_duration", "remaining_duration")
    @classmethod
    def validate_not_blank(cls, v: str | None) -> str | None:
        return _not_blank(v)


class Timer(TimerPayload):
    """Persisted timer. Always has an owner."""

    user_id: str = Field(..., min_length=1, alias="userId")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class TimerReference(BaseModel):
    """Inline timer data attached to a stop message; only used to recover the owner."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str | None = None
    user_id: str | None = Field(None, alias="userId")


class SharingRelationship(BaseModel):
    timer_id: str
    shared_with_user_id: str
    created_at: str


# ============================================================
# CONNECTIONS
# ============================================================


class Connection(BaseModel):
    user_id: str
    device_id: str
    connection_id: str | None = None


# ============================================================
# NOTIFICATIONS
# ============================================================


class NotificationPreferences(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    timer_invitations_enabled: bool = Field(
        True,
        validation_alias=AliasChoices(
            "timerInvitationsEnabled", "timer_invitations", "timer_invitations_enabled"
        ),
        serialization_alias="timerInvitationsEnabled",
    )
    quiet_hours_start: str | None = Field(
        None,
        validation_alias=AliasChoices("quietHoursStart", "quiet_hours_start"),
        serialization_alias="quietHoursStart",
    )
    quiet_hours_end: str | None = Field(
        None,
        validation_alias=AliasChoices("quietHoursEnd", "quiet_hours_end"),
        serialization_alias="quietHoursEnd",
    )

    @field_validator("quiet_hours_start", "quiet_hours_end")
    @classmethod
    def validate_clock_time(cls, v: str | None) -> str | None:
        if v is not None and not QUIET_HOURS_PATTERN.match(v):
            raise ValueError(f"{v!r} is not a HH:MM time")
        return v


class DeviceToken(BaseModel):
    user_id: str
    device_id: str
    fcm_token: str
    platform: str = "android"
    created_at: str
    last_used: str
    preferences: NotificationPreferences = Field(default_factory=NotificationPreferences)


class PushResult(BaseModel):
    device_id: str
    success: bool
    status: str


# ============================================================
# FANOUT RESULTS
# ============================================================


class DeliveryResult(BaseModel):
    user_id: str
    device_id: str
    connection_id: str
    success: bool
    status: str


class FanoutReport(BaseModel):
    recipients: set[str] = Field(default_factory=set)
    deliveries: list[DeliveryResult] = Field(default_factory=list)
    persisted: bool = True
    added: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    failed_adds: list[str] = Field(default_factory=list)
    failed_removes: list[str] = Field(default_factory=list)

    @property
    def delivered_users(self) -> set[str]:
        return {d.user_id for d in self.deliveries if d.success}


class ShareResult(BaseModel):
    success: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)


# ============================================================
# REST REQUEST BODIES
# ============================================================


class TimerUpdateRequest(BaseModel):
    timer: TimerPayload


class ShareTimerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    timer_id: str = Field(..., min_length=1, alias="timerId")
    user_ids: list[str] = Field(..., max_length=MAX_SHARE_TARGETS, alias="userIds")
    timer: TimerPayload | None = None


class RejectSharedTimerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    timer_id: str = Field(..., min_length=1, alias="timerId")


class DeviceTokenRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    device_id: str = Field(..., min_length=1, alias="deviceId")
    fcm_token: str = Field(..., min_length=1, alias="fcmToken")
    platform: str = "android"


# ============================================================
# WEBSOCKET MESSAGES
# ============================================================


class MessageData(BaseModel):
    """The `data` object of an inbound envelope. Unknown fields are kept for rebroadcast."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str = Field(..., min_length=1)
    message_id: str | None = Field(None, alias="messageId")


class Envelope(BaseModel):
    data: MessageData


class StopTimerMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    timer_id: str = Field(..., min_length=1, alias="timerId")
    timer: TimerReference | None = None


class UpdateTimerMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    timer: TimerPayload
    share_with: list[str] | None = Field(None, alias="shareWith")
