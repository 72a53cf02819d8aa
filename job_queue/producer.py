"""
Producer helpers — the enqueue side of the queue contract.

Called by the application layer (outside this repo) and by channels running
in ENQUEUE mode. Job bodies are validated before they reach the broker so a
malformed job fails at the caller instead of being dead-lettered later.
"""
from __future__ import annotations

import structlog
from typing import Any, Union

from job_queue.message_queue import MessageQueue
from models.schemas import CompletedEmailJob, NotificationJob, QueueKind

logger = structlog.get_logger()


async def _enqueue(queue: MessageQueue, kind: QueueKind, body: dict[str, Any], **log_fields) -> bool:
    if not queue.is_enabled(kind):
        logger.warning("enqueue_skipped_queue_disabled", queue=kind.value, **log_fields)
        return False
    await queue.ensure_topology(kind)
    tag = await queue.publish(kind, body)
    logger.info("job_enqueued", queue=kind.value, delivery_tag=tag, **log_fields)
    return True


async def enqueue_notification_job(
    queue: MessageQueue, job: Union[NotificationJob, dict[str, Any]]
) -> bool:
    """Validate and publish a notification job. Returns False if the queue is disabled."""
    if not isinstance(job, NotificationJob):
        job = NotificationJob.model_validate(job)
    job.typed_payload()  # raises ValidationError for a bad payload of a known kind
    return await _enqueue(
        queue, QueueKind.NOTIFICATION_JOB, job.model_dump(mode="json"), job_kind=job.kind,
    )


async def enqueue_completed_email(
    queue: MessageQueue, job: Union[CompletedEmailJob, dict[str, Any]]
) -> bool:
    """Validate and publish a completed-order email job. Returns False if the queue is disabled."""
    if not isinstance(job, CompletedEmailJob):
        job = CompletedEmailJob.model_validate(job)
    return await _enqueue(
        queue, QueueKind.COMPLETED_EMAIL, job.model_dump(mode="json", by_alias=True),
        order_id=job.order_id,
    )
