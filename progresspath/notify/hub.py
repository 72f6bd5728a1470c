from __future__ import annotations

"""
Channel registry for real-time fan-out.

Design intent:
- Two namespaces: one channel per group, one per participant session.
- Subscribe/unsubscribe/publish are safe from any thread.
- Delivery runs outside the registry lock so a slow subscriber never blocks
  other publishers.
"""

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)

Deliver = Callable[[dict[str, Any]], None]


def group_channel(group_id: str) -> str:
    return f"group:{group_id}"


def session_channel(session_id: str) -> str:
    return f"session:{session_id}"


@dataclass(frozen=True)
class Subscription:
    subscription_id: str
    channel: str


class NotificationHub:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._channels: dict[str, dict[str, Deliver]] = {}

    def subscribe(self, channel: str, deliver: Deliver) -> Subscription:
        subscription = Subscription(subscription_id=uuid.uuid4().hex, channel=channel)
        with self._lock:
            self._channels.setdefault(channel, {})[subscription.subscription_id] = deliver
        logger.debug("subscribed channel=%s subscription_id=%s", channel, subscription.subscription_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._channels.get(subscription.channel)
            if not subscribers:
                return
            subscribers.pop(subscription.subscription_id, None)
            if not subscribers:
                self._channels.pop(subscription.channel, None)
        logger.debug(
            "unsubscribed channel=%s subscription_id=%s",
            subscription.channel,
            subscription.subscription_id,
        )

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._channels.get(channel, {}))

    def publish(self, channel: str, event: dict[str, Any]) -> int:
        """Deliver `event` to every current subscriber; returns how many received it."""

        with self._lock:
            targets = list((self._channels.get(channel) or {}).items())

        delivered = 0
        for subscription_id, deliver in targets:
            try:
                deliver(event)
                delivered += 1
            except Exception as exc:
                # One broken observer must not stop the others.
                logger.warning(
                    "delivery_failed channel=%s subscription_id=%s type=%s error=%s",
                    channel,
                    subscription_id,
                    event.get("type"),
                    exc,
                )
        return delivered
