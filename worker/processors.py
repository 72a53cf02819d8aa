"""
Job Processors — turn one queue message into one side effect.

Each processor validates the message body, performs the delivery through an
injected channel, and returns a JobOutcome telling the Batch Runner whether
to ack or nack:

  sent / skipped  → ack
  retry           → nack with requeue (backend dead-letters after max attempts)
  dead            → nack without requeue

Failure classification:
  - payload fails validation, PermanentJobError,
    non-retryable ChannelError                      → dead
  - channel reported failure, TransientJobError,
    retryable ChannelError (circuit open, …)        → retry

Anything else escaping `process` is treated as transient by the Batch Runner.
"""
from __future__ import annotations

import structlog
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, ValidationError

from channels.base import ChannelError
from channels.email_adapter import EmailChannel, redact_email, should_send_customer_email
from channels.push_adapter import CustomerPushNotifier, SubscriptionRegistry, WebPushChannel
from database.idempotency import IdempotencyStore
from models.schemas import (
    CompletedEmailJob,
    CustomerOrderStatusPayload,
    ExecutionMode,
    IdempotencyStatus,
    JobOutcome,
    JobStatus,
    NotificationJob,
    PasswordResetLinkPayload,
    PasswordResetOtpPayload,
    QueueKind,
    QueueMessage,
    RawEmailPayload,
    WebPushRawPayload,
)
from worker.exceptions import PermanentJobError, TransientJobError

logger = structlog.get_logger()

FeeCharger = Callable[[CompletedEmailJob], Awaitable[Any]]


def _validation_summary(error: ValidationError) -> str:
    parts = []
    for err in error.errors()[:3]:
        loc = ".".join(str(p) for p in err.get("loc", ())) or "body"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "invalid payload (" + "; ".join(parts) + ")"


class JobProcessor(ABC):
    """Base processor: failure classification and per-job outcome logging."""

    kind: QueueKind

    def __init__(self, ledger: IdempotencyStore):
        self._ledger = ledger

    async def process(self, message: QueueMessage) -> JobOutcome:
        try:
            outcome = await self._process(message)
        except ValidationError as e:
            outcome = JobOutcome.dead(_validation_summary(e))
        except PermanentJobError as e:
            outcome = JobOutcome.dead(str(e))
        except TransientJobError as e:
            outcome = JobOutcome.retry(str(e))
        except ChannelError as e:
            outcome = JobOutcome.retry(str(e)) if e.retryable else JobOutcome.dead(str(e))

        self._log_outcome(message, outcome)
        return outcome

    @abstractmethod
    async def _process(self, message: QueueMessage) -> JobOutcome:
        ...

    def _log_outcome(self, message: QueueMessage, outcome: JobOutcome) -> None:
        fields = {
            "queue": self.kind.value,
            "delivery_tag": message.delivery_tag,
            "redelivery_count": message.redelivery_count,
        }
        if outcome.detail:
            fields["detail"] = outcome.detail
        if outcome.status in (JobStatus.SENT, JobStatus.SKIPPED):
            logger.info(f"job_{outcome.status.value}", **fields)
        else:
            logger.warning(f"job_{outcome.status.value}", **fields)

    # ── Idempotency ledger ────────────────────────────────────

    async def _already_sent(self, key: str) -> bool:
        try:
            status = await self._ledger.get_status(key)
        except Exception as e:
            raise TransientJobError(f"idempotency lookup failed: {e}") from e
        return status == IdempotencyStatus.SENT

    async def _record_sent(self, key: str, kind: str) -> None:
        # The side effect already happened; a ledger failure must not fail the job
        try:
            await self._ledger.mark_sent(key, kind)
        except Exception as e:
            logger.error("idempotency_record_failed", key=key, kind=kind, status="SENT", error=str(e))

    async def _record_failed(self, key: str, kind: str, error: str) -> None:
        try:
            await self._ledger.mark_failed(key, kind, error)
        except Exception as e:
            logger.error("idempotency_record_failed", key=key, kind=kind, status="FAILED", error=str(e))


# ──────────────────────────────────────────────────────────────
#  Notification jobs
# ──────────────────────────────────────────────────────────────

class NotificationJobProcessor(JobProcessor):
    """Dispatches `NotificationJob`s by kind to the email and push channels."""

    kind = QueueKind.NOTIFICATION_JOB

    def __init__(
        self,
        email: EmailChannel,
        push: WebPushChannel,
        push_notifier: CustomerPushNotifier,
        ledger: IdempotencyStore,
        subscriptions: Optional[SubscriptionRegistry] = None,
    ):
        super().__init__(ledger)
        self._email = email
        self._push = push
        self._push_notifier = push_notifier
        self._subscriptions = subscriptions
        self._handlers: dict[str, Callable[[BaseModel], Awaitable[JobOutcome]]] = {
            "email.password_reset_link": self._password_reset_link,
            "email.password_reset_otp": self._password_reset_otp,
            "push.customer_order_status": self._customer_order_status,
            "email.raw": self._raw_email,
            "push.webpush_raw": self._raw_webpush,
        }

    async def _process(self, message: QueueMessage) -> JobOutcome:
        job = NotificationJob.model_validate(message.payload)
        handler = self._handlers.get(job.kind)
        if handler is None:
            return JobOutcome.skipped(f"unknown kind {job.kind!r}")
        return await handler(job.typed_payload())

    async def _password_reset_link(self, payload: PasswordResetLinkPayload) -> JobOutcome:
        ok = await self._email.send_password_reset_link(payload.to, payload.reset_url, payload.expires_at)
        return JobOutcome.sent() if ok else JobOutcome.retry("password reset link email not sent")

    async def _password_reset_otp(self, payload: PasswordResetOtpPayload) -> JobOutcome:
        ok = await self._email.send_password_reset_otp(
            payload.to, payload.name, payload.code, payload.expires_in_minutes, payload.locale,
        )
        return JobOutcome.sent() if ok else JobOutcome.retry("password reset OTP email not sent")

    async def _customer_order_status(self, payload: CustomerOrderStatusPayload) -> JobOutcome:
        # No subscriptions means nothing to do, which is still a success
        await self._push_notifier.notify_order_status_change(payload)
        return JobOutcome.sent()

    async def _raw_email(self, payload: RawEmailPayload) -> JobOutcome:
        key = payload.idempotency_key
        if await self._already_sent(key):
            return JobOutcome.skipped("already sent")

        ok = await self._email.send_email(
            payload.to,
            payload.subject,
            payload.html,
            from_address=payload.from_address,
            attachments=payload.attachments,
            mode=ExecutionMode.DIRECT,
        )
        if not ok:
            await self._record_failed(key, "email.raw", "send_failed")
            return JobOutcome.retry("raw email not sent")

        await self._record_sent(key, "email.raw")
        return JobOutcome.sent()

    async def _raw_webpush(self, payload: WebPushRawPayload) -> JobOutcome:
        key = payload.idempotency_key
        if await self._already_sent(key):
            return JobOutcome.skipped("already sent")

        result = await self._push.send(payload.subscription, payload.payload)
        if not result.success:
            if result.gone:
                await self._deactivate(payload.subscription.endpoint)
            error = f"push_failed status={result.status_code}" if result.status_code else "push_failed"
            await self._record_failed(key, "push.webpush_raw", error)
            return JobOutcome.retry(error)

        await self._record_sent(key, "push.webpush_raw")
        return JobOutcome.sent()

    async def _deactivate(self, endpoint: str) -> None:
        if self._subscriptions is None:
            return
        try:
            await self._subscriptions.deactivate_endpoint(endpoint)
        except Exception as e:
            logger.error("push_subscription_deactivate_failed", error=str(e))


# ──────────────────────────────────────────────────────────────
#  Completed-order emails
# ──────────────────────────────────────────────────────────────

class CompletedEmailProcessor(JobProcessor):
    """
    Sends the order-completed receipt email, once per order.

    `fee_charger`, when given, bills the merchant after a successful send.
    Billing problems are logged only: retrying would send the email again.
    """

    kind = QueueKind.COMPLETED_EMAIL

    def __init__(
        self,
        email: EmailChannel,
        ledger: IdempotencyStore,
        fee_charger: Optional[FeeCharger] = None,
    ):
        super().__init__(ledger)
        self._email = email
        self._fee_charger = fee_charger

    async def _process(self, message: QueueMessage) -> JobOutcome:
        job = CompletedEmailJob.model_validate(message.payload)
        key = job.dedup_key

        if await self._already_sent(key):
            return JobOutcome.skipped("already sent")

        to = (job.customer_email or "").strip()
        if not to:
            return JobOutcome.skipped("no recipient")
        if not should_send_customer_email(to):
            return JobOutcome.skipped(f"recipient rejected ({redact_email(to)})")

        ok = await self._email.send_order_completed(job, to)
        if not ok:
            await self._record_failed(key, "completed_email", "send_failed")
            return JobOutcome.retry(f"completed email not sent to {redact_email(to)}")

        await self._record_sent(key, "completed_email")
        await self._charge_fee(job)
        return JobOutcome.sent()

    async def _charge_fee(self, job: CompletedEmailJob) -> None:
        if self._fee_charger is None:
            return
        try:
            await self._fee_charger(job)
        except Exception as e:
            logger.error("completed_email_fee_charge_failed",
                         order_id=job.order_id,
                         merchant_id=job.merchant_id,
                         error=str(e))
