"""
Web Push Channel — VAPID push delivery to browser subscriptions.

Provides:
- WebPushChannel: single push send over pywebpush, reporting the HTTP status
- SubscriptionRegistry: where customer subscriptions live (injected)
- CustomerPushNotifier: order-status fan-out to a customer's subscriptions

pywebpush is synchronous (requests underneath), so sends run in a worker
thread to keep the event loop free.
"""
from __future__ import annotations

import abc
import asyncio
import json
import structlog
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pywebpush import WebPushException, webpush

from channels.base import ChannelAdapter, ChannelError
from config.settings import PushConfig
from models.schemas import CustomerOrderStatusPayload, PushSubscription

logger = structlog.get_logger()

# Push services answer these for expired or unsubscribed endpoints
GONE_STATUS_CODES = frozenset({404, 410})


@dataclass
class PushResult:
    success: bool
    status_code: Optional[int] = None
    error: str = ""

    @property
    def gone(self) -> bool:
        return self.status_code in GONE_STATUS_CODES


class WebPushChannel(ChannelAdapter):
    """
    VAPID web push channel.

    `sender` defaults to pywebpush.webpush; tests pass a callable with the
    same keyword signature.
    """

    channel_name = "web_push"

    def __init__(self, config: PushConfig, sender: Optional[Callable[..., Any]] = None):
        super().__init__()
        self._config = config
        self._sender = sender or webpush

    @property
    def configured(self) -> bool:
        return bool(self._config.vapid_private_key and self._config.vapid_email)

    async def send(self, subscription: PushSubscription, payload: dict[str, Any]) -> PushResult:
        """Send one push message. Never raises for push-service errors; see PushResult."""
        if not self.configured:
            logger.warning("push_not_configured")
            return PushResult(success=False, error="push not configured")

        try:
            response = await self._call(self._send_sync, subscription, payload)
        except ChannelError as e:
            return PushResult(success=False, error=str(e))
        except WebPushException as e:
            status = getattr(e.response, "status_code", None) if e.response is not None else None
            logger.warning("push_send_failed",
                           endpoint=_short_endpoint(subscription.endpoint),
                           status_code=status,
                           error=e.message)
            return PushResult(success=False, status_code=status, error=e.message)
        except Exception as e:
            logger.error("push_send_error",
                         endpoint=_short_endpoint(subscription.endpoint),
                         error=str(e))
            return PushResult(success=False, error=str(e))

        status = getattr(response, "status_code", None)
        logger.debug("push_sent", endpoint=_short_endpoint(subscription.endpoint), status_code=status)
        return PushResult(success=True, status_code=status)

    async def _send_sync(self, subscription: PushSubscription, payload: dict[str, Any]) -> Any:
        return await asyncio.to_thread(
            self._sender,
            subscription_info=subscription.model_dump(),
            data=json.dumps(payload),
            vapid_private_key=self._config.vapid_private_key,
            vapid_claims={"sub": f"mailto:{self._config.vapid_email}"},
            ttl=self._config.ttl_s,
        )


def _short_endpoint(endpoint: str) -> str:
    return endpoint[:48] + "…" if len(endpoint) > 48 else endpoint


# ──────────────────────────────────────────────────────────────
#  Subscription registry
# ──────────────────────────────────────────────────────────────

@dataclass
class StoredSubscription:
    subscription: PushSubscription
    customer_id: Optional[str] = None
    order_numbers: list[str] = field(default_factory=list)
    active: bool = True


class SubscriptionRegistry(abc.ABC):
    """Source of customer push subscriptions."""

    @abc.abstractmethod
    async def active_for_order(self, order_number: str, customer_id: Optional[str] = None) -> list[PushSubscription]:
        """Active subscriptions owned by the customer or following the order."""
        ...

    @abc.abstractmethod
    async def deactivate_endpoint(self, endpoint: str) -> int:
        """Mark every subscription with this endpoint inactive. Returns rows changed."""
        ...


class InMemorySubscriptionRegistry(SubscriptionRegistry):

    def __init__(self, subscriptions: Optional[list[StoredSubscription]] = None):
        self._subscriptions: list[StoredSubscription] = list(subscriptions or [])

    def add(self, stored: StoredSubscription) -> None:
        self._subscriptions.append(stored)

    async def active_for_order(self, order_number: str, customer_id: Optional[str] = None) -> list[PushSubscription]:
        return [
            s.subscription for s in self._subscriptions
            if s.active and (
                (customer_id is not None and s.customer_id == customer_id)
                or order_number in s.order_numbers
            )
        ]

    async def deactivate_endpoint(self, endpoint: str) -> int:
        changed = 0
        for s in self._subscriptions:
            if s.active and s.subscription.endpoint == endpoint:
                s.active = False
                changed += 1
        return changed


# ──────────────────────────────────────────────────────────────
#  Customer notifier
# ──────────────────────────────────────────────────────────────

_STATUS_TEXT = {
    "id": {
        "PREPARING": ("Pesanan sedang disiapkan", "Pesanan {order} di {merchant} sedang disiapkan."),
        "READY": ("Pesanan siap", "Pesanan {order} di {merchant} sudah siap."),
        "COMPLETED": ("Pesanan selesai", "Pesanan {order} di {merchant} telah selesai."),
        "CANCELLED": ("Pesanan dibatalkan", "Pesanan {order} di {merchant} dibatalkan."),
    },
    "en": {
        "PREPARING": ("Order is being prepared", "Order {order} at {merchant} is being prepared."),
        "READY": ("Order ready", "Order {order} at {merchant} is ready."),
        "COMPLETED": ("Order completed", "Order {order} at {merchant} is completed."),
        "CANCELLED": ("Order cancelled", "Order {order} at {merchant} was cancelled."),
    },
}


def order_status_message(payload: CustomerOrderStatusPayload, locale: str = "id") -> dict[str, Any]:
    texts = _STATUS_TEXT.get(locale, _STATUS_TEXT["en"])
    title, body = texts.get(payload.status.upper(), (payload.status, "Order {order}: {status}"))
    return {
        "title": title,
        "body": body.format(order=payload.order_number, merchant=payload.merchant_name, status=payload.status),
        "tag": f"order-{payload.order_number}",
        "data": {
            "orderNumber": payload.order_number,
            "status": payload.status,
            "merchantCode": payload.merchant_code,
            "orderType": payload.order_type,
        },
    }


class CustomerPushNotifier:
    """Fans an order status change out to every active subscription for it."""

    def __init__(self, push: WebPushChannel, registry: SubscriptionRegistry, locale: str = "id"):
        self._push = push
        self._registry = registry
        self._locale = locale

    async def notify_order_status_change(self, payload: CustomerOrderStatusPayload) -> int:
        """Returns the number of subscriptions reached; 0 when none exist."""
        if not self._push.configured:
            logger.info("customer_push_skipped_not_configured", order_number=payload.order_number)
            return 0

        subscriptions = await self._registry.active_for_order(payload.order_number, payload.customer_id)
        message = order_status_message(payload, self._locale)
        sent = 0
        for subscription in subscriptions:
            result = await self._push.send(subscription, message)
            if result.success:
                sent += 1
            elif result.gone:
                changed = await self._registry.deactivate_endpoint(subscription.endpoint)
                logger.info("push_subscription_deactivated",
                            endpoint=_short_endpoint(subscription.endpoint),
                            rows=changed)

        logger.info("customer_push_sent",
                    order_number=payload.order_number,
                    subscriptions=len(subscriptions),
                    sent=sent)
        return sent
