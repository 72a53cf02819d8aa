"""Delivery channels used by the notification worker."""
from channels.base import (
    ChannelAdapter,
    ChannelError,
    CircuitBreaker,
    CircuitOpenError,
    ChannelMetrics,
)
from channels.email_adapter import EmailChannel, redact_email, should_send_customer_email
from channels.push_adapter import (
    CustomerPushNotifier,
    InMemorySubscriptionRegistry,
    PushResult,
    StoredSubscription,
    SubscriptionRegistry,
    WebPushChannel,
)

__all__ = [
    "ChannelAdapter", "ChannelError",
    "CircuitBreaker", "CircuitOpenError", "ChannelMetrics",
    "EmailChannel", "redact_email", "should_send_customer_email",
    "WebPushChannel", "PushResult", "CustomerPushNotifier",
    "SubscriptionRegistry", "InMemorySubscriptionRegistry", "StoredSubscription",
]
