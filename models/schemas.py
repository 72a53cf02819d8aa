"""
Core data models for the notification worker.
These are the types shared by the queue client, processors, and the loop.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class QueueKind(str, Enum):
    NOTIFICATION_JOB = "notification_job"
    COMPLETED_EMAIL = "completed_email"


class CycleOutcome(str, Enum):
    BOTH_DISABLED = "both_disabled"
    IDLE = "idle"
    PRODUCTIVE = "productive"
    ERROR = "error"


class JobStatus(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"
    RETRY = "retry"
    DEAD = "dead"


class ErrorKind(str, Enum):
    PERMANENT = "permanent"
    TRANSIENT = "transient"


class ExecutionMode(str, Enum):
    """How a channel send is carried out.

    ENQUEUE publishes the send as a queue job (application side).
    DIRECT performs it immediately (worker side, never re-enqueues).
    """
    ENQUEUE = "enqueue"
    DIRECT = "direct"


class IdempotencyStatus(str, Enum):
    SENT = "SENT"
    FAILED = "FAILED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Queue message & results
# ──────────────────────────────────────────────────────────────

@dataclass
class QueueMessage:
    """A unit of work pulled from a queue."""
    queue_kind: QueueKind
    payload: Any
    delivery_tag: str
    redelivery_count: int = 0


@dataclass
class JobOutcome:
    """Per-message processing result: the ack/nack decision and why."""
    ack: bool
    status: JobStatus
    error: Optional[ErrorKind] = None
    detail: str = ""

    @classmethod
    def sent(cls) -> JobOutcome:
        return cls(ack=True, status=JobStatus.SENT)

    @classmethod
    def skipped(cls, detail: str = "") -> JobOutcome:
        return cls(ack=True, status=JobStatus.SKIPPED, detail=detail)

    @classmethod
    def retry(cls, detail: str = "") -> JobOutcome:
        return cls(ack=False, status=JobStatus.RETRY, error=ErrorKind.TRANSIENT, detail=detail)

    @classmethod
    def dead(cls, detail: str = "", error: ErrorKind = ErrorKind.PERMANENT) -> JobOutcome:
        return cls(ack=False, status=JobStatus.DEAD, error=error, detail=detail)


@dataclass
class BatchResult:
    """Aggregate counters for one Batch Runner invocation."""
    processed: int = 0
    failed: int = 0
    disabled: bool = False
    sent: int = 0
    skipped: int = 0
    retried: int = 0
    dead: int = 0
    errors: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return not self.errors

    @classmethod
    def disabled_result(cls) -> BatchResult:
        now = _utcnow()
        return cls(disabled=True, started_at=now, completed_at=now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "failed": self.failed,
            "disabled": self.disabled,
            "sent": self.sent,
            "skipped": self.skipped,
            "retried": self.retried,
            "dead": self.dead,
            "errors": self.errors[-10:],
        }


# ──────────────────────────────────────────────────────────────
#  Notification job payloads
# ──────────────────────────────────────────────────────────────

class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)


class PasswordResetLinkPayload(_Payload):
    to: str
    reset_url: str = Field(alias="resetUrl")
    expires_at: datetime = Field(alias="expiresAt")


class PasswordResetOtpPayload(_Payload):
    to: str
    name: str = ""
    code: str
    expires_in_minutes: int = Field(default=15, alias="expiresInMinutes")
    locale: str = "en"


class CustomerOrderStatusPayload(_Payload):
    order_number: str = Field(alias="orderNumber")
    status: str
    merchant_name: str = Field(default="", alias="merchantName")
    merchant_code: str = Field(default="", alias="merchantCode")
    customer_id: Optional[str] = Field(default=None, alias="customerId")
    order_type: Optional[str] = Field(default=None, alias="orderType")


class EmailAttachment(_Payload):
    filename: str
    content_base64: str = Field(alias="contentBase64")
    content_type: Optional[str] = Field(default=None, alias="contentType")


class RawEmailPayload(_Payload):
    idempotency_key: str = Field(alias="idempotencyKey", min_length=1)
    to: str
    subject: str
    html: str
    from_address: Optional[str] = Field(default=None, alias="from")
    attachments: list[EmailAttachment] = []


class PushSubscriptionKeys(_Payload):
    p256dh: str
    auth: str


class PushSubscription(_Payload):
    endpoint: str
    keys: PushSubscriptionKeys


class WebPushRawPayload(_Payload):
    idempotency_key: str = Field(alias="idempotencyKey", min_length=1)
    subscription: PushSubscription
    payload: dict[str, Any] = {}


PAYLOAD_MODELS: dict[str, type[_Payload]] = {
    "email.password_reset_link": PasswordResetLinkPayload,
    "email.password_reset_otp": PasswordResetOtpPayload,
    "push.customer_order_status": CustomerOrderStatusPayload,
    "email.raw": RawEmailPayload,
    "push.webpush_raw": WebPushRawPayload,
}


class NotificationJob(_Payload):
    """Envelope for the notification jobs queue. `payload` is parsed per kind."""
    kind: str
    payload: dict[str, Any] = {}
    attempt: int = 0

    def typed_payload(self) -> Optional[_Payload]:
        """Validate `payload` against the model for `kind`; None for unknown kinds."""
        model = PAYLOAD_MODELS.get(self.kind)
        if model is None:
            return None
        return model.model_validate(self.payload)


class CompletedEmailJob(_Payload):
    """A completed-order receipt email to send (and optionally bill)."""
    order_id: str = Field(alias="orderId", min_length=1)
    merchant_id: str = Field(alias="merchantId", min_length=1)
    order_number: str = Field(default="", alias="orderNumber")
    customer_email: Optional[str] = Field(default=None, alias="customerEmail")
    customer_name: str = Field(default="Customer", alias="customerName")
    merchant_name: str = Field(default="Restaurant", alias="merchantName")
    merchant_code: str = Field(default="", alias="merchantCode")
    completed_email_fee: Optional[float] = Field(default=None, alias="completedEmailFee")
    currency: str = "IDR"
    total_amount: Optional[float] = Field(default=None, alias="totalAmount")
    attempt: int = 0

    @property
    def dedup_key(self) -> str:
        return f"completed_email:{self.order_id}"
