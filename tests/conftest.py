"""Shared test fixtures for the notification worker."""
import pytest
from typing import Any
from unittest.mock import MagicMock

from channels.email_adapter import EmailChannel
from channels.push_adapter import InMemorySubscriptionRegistry, WebPushChannel
from config.settings import EmailConfig, PushConfig, Settings, WorkerConfig, reset_settings
from database.idempotency import InMemoryIdempotencyStore
from job_queue.message_queue import InMemoryMessageQueue, reset_message_queue
from models.schemas import QueueKind, QueueMessage


@pytest.fixture(autouse=True)
def _reset_singletons():
    reset_message_queue()
    reset_settings()
    yield
    reset_message_queue()
    reset_settings()


@pytest.fixture
def worker_config() -> WorkerConfig:
    return WorkerConfig(max_messages=50, idle_sleep_ms=2000, error_sleep_ms=10000, shutdown_timeout_s=1.0)


@pytest.fixture
def memory_settings() -> Settings:
    """Settings that need no broker, database, SMTP server or push service."""
    settings = Settings()
    settings.queue.backend = "memory"
    settings.database.idempotency_backend = "memory"
    settings.worker.idle_sleep_ms = 60_000
    settings.worker.shutdown_timeout_s = 1.0
    return settings


@pytest.fixture
def queue() -> InMemoryMessageQueue:
    return InMemoryMessageQueue()


@pytest.fixture
def ledger() -> InMemoryIdempotencyStore:
    return InMemoryIdempotencyStore()


@pytest.fixture
def email_config() -> EmailConfig:
    return EmailConfig(
        smtp_host="smtp.shop.test",
        smtp_port=587,
        smtp_user="orders@shop.test",
        from_email="orders@shop.test",
        from_name="Shop",
    )


@pytest.fixture
def sent_emails() -> list:
    return []


@pytest.fixture
def email_channel(email_config, sent_emails, queue) -> EmailChannel:
    async def transport(message):
        sent_emails.append(message)

    return EmailChannel(email_config, queue=queue, transport=transport)


@pytest.fixture
def push_config() -> PushConfig:
    return PushConfig(vapid_private_key="test-vapid-key", vapid_email="ops@shop.test")


@pytest.fixture
def push_calls() -> list:
    return []


@pytest.fixture
def push_channel(push_config, push_calls) -> WebPushChannel:
    def sender(**kwargs):
        push_calls.append(kwargs)
        return MagicMock(status_code=201)

    return WebPushChannel(push_config, sender=sender)


@pytest.fixture
def registry() -> InMemorySubscriptionRegistry:
    return InMemorySubscriptionRegistry()


@pytest.fixture
def make_message():
    """Factory for QueueMessage objects."""
    counter = {"n": 0}

    def _make(payload: Any, kind: QueueKind = QueueKind.NOTIFICATION_JOB,
              tag: str = None, redelivery_count: int = 0) -> QueueMessage:
        counter["n"] += 1
        return QueueMessage(
            queue_kind=kind,
            payload=payload,
            delivery_tag=tag or f"tag_{counter['n']}",
            redelivery_count=redelivery_count,
        )

    return _make


@pytest.fixture
def subscription_dict() -> dict:
    return {
        "endpoint": "https://push.example.net/send/abc123",
        "keys": {"p256dh": "BNcRdreALRFXTkOOUHK1EtK2wtaz5Ry4YfYCA_0QTpQtUbVlUls0VJXg7A8u-Ts1XbjhazAkj7I99e8QcYP7DkM", "auth": "tBHItJI5svbpez7KI4CCXg"},
    }
