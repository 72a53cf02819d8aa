"""
Notification worker process — bootstrap, signals and shutdown.

    notification-worker            # console script
    python -m worker               # same thing

Exit codes:
  0  graceful stop (SIGINT / SIGTERM)
  1  startup failure (invalid settings, unknown backend, bad broker URL,
     ledger unavailable) or the loop died unexpectedly
"""
from __future__ import annotations

import asyncio
import signal
import structlog
from dataclasses import asdict, dataclass
from typing import Optional

import yaml
from dotenv import load_dotenv
from sqlalchemy.exc import SQLAlchemyError

from channels.email_adapter import EmailChannel
from channels.push_adapter import (
    CustomerPushNotifier, InMemorySubscriptionRegistry, SubscriptionRegistry, WebPushChannel,
)
from config.logging_setup import configure_logging
from config.settings import Settings, SettingsError, load_settings
from database.idempotency import IdempotencyStore, create_idempotency_store
from job_queue.message_queue import MessageQueue, create_message_queue
from models.schemas import QueueKind
from worker.batch import BatchRunner
from worker.exceptions import QueueConnectionError, StartupError
from worker.loop import NotificationWorker
from worker.processors import CompletedEmailProcessor, FeeCharger, NotificationJobProcessor

logger = structlog.get_logger()


@dataclass
class WorkerRuntime:
    """Everything `main` has to start and later close."""
    worker: NotificationWorker
    queue: MessageQueue
    ledger: IdempotencyStore

    async def close(self) -> None:
        await self.queue.close()
        await self.ledger.close()


def _disabled_reason(settings: Settings, kind: QueueKind) -> str:
    if not settings.queue.enabled:
        return "QUEUE_ENABLED is off"
    if settings.queue.backend == "redis" and not settings.queue.redis_url:
        return "no broker URL configured"
    return f"{kind.value} queue switched off"


def build_worker(
    settings: Settings,
    queue: Optional[MessageQueue] = None,
    ledger: Optional[IdempotencyStore] = None,
    subscriptions: Optional[SubscriptionRegistry] = None,
    email: Optional[EmailChannel] = None,
    push: Optional[WebPushChannel] = None,
    fee_charger: Optional[FeeCharger] = None,
) -> WorkerRuntime:
    """Wire queue, ledger, channels, processors and runners into a worker."""
    try:
        queue = queue or create_message_queue(asdict(settings.queue))
        ledger = ledger or create_idempotency_store({
            "idempotency_backend": settings.database.idempotency_backend,
            "url": settings.database.url,
            "echo": settings.debug,
        })
    except (ValueError, SQLAlchemyError) as e:
        raise StartupError(str(e)) from e

    subscriptions = subscriptions or InMemorySubscriptionRegistry()
    email = email or EmailChannel(settings.email, queue=queue)
    push = push or WebPushChannel(settings.push)

    processors = {
        QueueKind.NOTIFICATION_JOB: NotificationJobProcessor(
            email=email,
            push=push,
            push_notifier=CustomerPushNotifier(push, subscriptions),
            ledger=ledger,
            subscriptions=subscriptions,
        ),
        QueueKind.COMPLETED_EMAIL: CompletedEmailProcessor(email, ledger, fee_charger=fee_charger),
    }
    # Fixed priority: notification jobs drain before completed emails
    runners = [
        BatchRunner(kind, queue, processors[kind], settings.worker.max_messages)
        for kind in (QueueKind.NOTIFICATION_JOB, QueueKind.COMPLETED_EMAIL)
    ]
    return WorkerRuntime(
        worker=NotificationWorker(runners, settings.worker),
        queue=queue,
        ledger=ledger,
    )


async def _startup(runtime: WorkerRuntime, settings: Settings) -> None:
    try:
        await runtime.ledger.initialize()
    except (SQLAlchemyError, OSError) as e:
        raise StartupError(f"idempotency ledger unavailable: {e}") from e

    for kind in QueueKind:
        if not runtime.queue.is_enabled(kind):
            logger.warning("queue_disabled", queue=kind.value, reason=_disabled_reason(settings, kind))

    if runtime.queue.enabled_kinds:
        try:
            await runtime.queue.connect()
        except QueueConnectionError as e:
            # Not fatal: the loop keeps retrying on the error backoff
            logger.warning("queue_connect_failed", error=str(e))


def _install_signal_handlers(worker: NotificationWorker) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.stop)
        except (NotImplementedError, RuntimeError):
            # Windows / non-main thread: rely on KeyboardInterrupt instead
            pass


async def _run_until_stopped(runtime: WorkerRuntime, settings: Settings) -> int:
    worker = runtime.worker
    task = worker.start_background()
    stop_requested = asyncio.create_task(worker.wait_stop_requested())

    try:
        done, _ = await asyncio.wait({task, stop_requested}, return_when=asyncio.FIRST_COMPLETED)
        if task not in done:
            try:
                await asyncio.wait_for(task, timeout=settings.worker.shutdown_timeout_s)
            except asyncio.TimeoutError:
                # Unacked messages of the abandoned batch are redelivered by the broker
                logger.warning("notification_worker_shutdown_timeout",
                               timeout_s=settings.worker.shutdown_timeout_s)
                return 0
    finally:
        stop_requested.cancel()

    if task.exception() is not None:
        logger.error("notification_worker_crashed", error=str(task.exception()))
        return 1
    return 0


async def main(settings: Optional[Settings] = None, runtime: Optional[WorkerRuntime] = None) -> int:
    """Run the worker until a stop signal. Returns the process exit code."""
    if settings is None:
        try:
            settings = load_settings()
        except (SettingsError, yaml.YAMLError, OSError) as e:
            configure_logging()
            logger.error("notification_worker_startup_failed", error=str(e))
            return 1
    configure_logging(settings.log_level, settings.environment)

    try:
        runtime = runtime or build_worker(settings)
        await _startup(runtime, settings)
    except StartupError as e:
        logger.error("notification_worker_startup_failed", error=str(e))
        if runtime is not None:
            await runtime.close()
        return 1

    _install_signal_handlers(runtime.worker)
    logger.info("notification_worker_started",
                max_messages=settings.worker.max_messages,
                idle_sleep_ms=settings.worker.idle_sleep_ms,
                error_sleep_ms=settings.worker.error_sleep_ms,
                queue_backend=settings.queue.backend,
                enabled_queues=sorted(k.value for k in runtime.queue.enabled_kinds),
                idempotency_backend=settings.database.idempotency_backend)

    try:
        return await _run_until_stopped(runtime, settings)
    finally:
        await runtime.close()


def run() -> int:
    """Console script entry point."""
    load_dotenv()
    try:
        return asyncio.run(main())
    except KeyboardInterrupt:
        return 0
