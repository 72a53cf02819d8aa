"""
Batch Runner — drains one bounded batch from one queue.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional

from job_queue.message_queue import MessageQueue
from models.schemas import BatchResult, JobOutcome, JobStatus, QueueKind, QueueMessage
from worker.processors import JobProcessor

logger = structlog.get_logger()


class BatchRunner:
    """
    Fetches at most `max_messages` from one queue and settles each in order.

    Connectivity problems (topology, fetch, ack, nack) propagate to the
    caller; problems with an individual message never do.
    """

    def __init__(self, kind: QueueKind, queue: MessageQueue, processor: JobProcessor, max_messages: int = 50):
        if max_messages < 1:
            raise ValueError("max_messages must be at least 1")
        self.kind = kind
        self.queue = queue
        self.processor = processor
        self.max_messages = max_messages

    @property
    def enabled(self) -> bool:
        return self.queue.is_enabled(self.kind)

    async def run_batch(self, max_messages: Optional[int] = None) -> BatchResult:
        if not self.enabled:
            return BatchResult.disabled_result()

        limit = self.max_messages if max_messages is None else max(0, min(max_messages, self.max_messages))
        result = BatchResult()

        await self.queue.ensure_topology(self.kind)
        messages = await self.queue.fetch_batch(self.kind, limit)

        for message in messages[:limit]:
            outcome = await self._process(message, result)
            await self._settle(message, outcome, result)

        result.completed_at = datetime.now(timezone.utc)
        if messages:
            logger.debug("batch_completed", queue=self.kind.value, **result.to_dict())
        return result

    async def _process(self, message: QueueMessage, result: BatchResult) -> JobOutcome:
        try:
            return await self.processor.process(message)
        except Exception as e:
            result.errors.append(f"{message.delivery_tag}: {e}")
            logger.error("job_processing_error",
                         queue=self.kind.value,
                         delivery_tag=message.delivery_tag,
                         error=str(e),
                         exc_info=True)
            return JobOutcome.retry(str(e))

    async def _settle(self, message: QueueMessage, outcome: JobOutcome, result: BatchResult) -> None:
        if outcome.ack:
            await self.queue.ack(message)
            result.processed += 1
            if outcome.status == JobStatus.SENT:
                result.sent += 1
            else:
                result.skipped += 1
            return

        requeued = await self.queue.nack(message, requeue=outcome.status == JobStatus.RETRY)
        result.failed += 1
        if requeued:
            result.retried += 1
        else:
            result.dead += 1
