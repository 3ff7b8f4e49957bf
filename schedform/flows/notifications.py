import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Set

from schedform import monitoring
from schedform.db import utcnow

from redis.asyncio import Redis

CHANNEL_NAME = "schedform:flows"

logger = logging.getLogger("flows.notifications")


@dataclass
class FlowNotification:
    flow_id: str
    organization_id: str
    previous_status: Optional[str]
    new_status: Optional[str]
    event_type: str
    payload: Optional[Dict[str, Any]] = None
    occurred_at: datetime = field(default_factory=utcnow)

    def as_message(self) -> Dict[str, Any]:
        return {
            "flowId": self.flow_id,
            "organizationId": self.organization_id,
            "previousStatus": self.previous_status,
            "newStatus": self.new_status,
            "eventType": self.event_type,
            "payload": self.payload or {},
            "occurredAt": self.occurred_at.isoformat(),
        }


Handler = Callable[[FlowNotification], Awaitable[Any]]


@dataclass
class Subscription:
    name: str
    handler: Handler
    statuses: Optional[FrozenSet[str]] = None
    event_types: Optional[FrozenSet[str]] = None

    def matches(self, notification: FlowNotification) -> bool:
        if self.statuses is not None and notification.new_status not in self.statuses:
            return False
        if self.event_types is not None and notification.event_type not in self.event_types:
            return False
        return True


class FlowNotifier:
    """Fan-out of committed flow changes to fire-and-forget subscribers.

    Each subscriber delivery runs in its own task and is retried with capped
    exponential backoff. Delivery failures are logged and reported, never
    raised to the code that committed the flow change.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.logger = logger or logging.getLogger("flows.notifications")
        self._subscriptions: List[Subscription] = []
        self._pending: Set[asyncio.Task] = set()

    def subscribe(
        self,
        handler: Handler,
        *,
        name: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
        event_types: Optional[Iterable[str]] = None,
    ) -> Subscription:
        subscription = Subscription(
            name=name or getattr(handler, "__name__", "handler"),
            handler=handler,
            statuses=frozenset(str(s) for s in statuses) if statuses is not None else None,
            event_types=frozenset(event_types) if event_types is not None else None,
        )
        self._subscriptions.append(subscription)
        return subscription

    @property
    def subscriptions(self) -> List[Subscription]:
        return list(self._subscriptions)

    def publish(self, notification: FlowNotification) -> None:
        for subscription in self._subscriptions:
            if not subscription.matches(notification):
                continue
            try:
                task = asyncio.get_running_loop().create_task(self._deliver(subscription, notification))
            except RuntimeError as exc:
                self.logger.error(
                    "notification",
                    extra={"notification": {"flow_id": notification.flow_id, "status": "dropped", "error": str(exc)}},
                )
                continue
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for in-flight deliveries; used on shutdown and in tests."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _deliver(self, subscription: Subscription, notification: FlowNotification) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            try:
                await subscription.handler(notification)
                return True
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.logger.warning(
                    "notification",
                    extra={
                        "notification": {
                            "flow_id": notification.flow_id,
                            "subscriber": subscription.name,
                            "attempt": attempt,
                            "status": "error",
                            "error": str(exc),
                        }
                    },
                )
                if attempt >= self.max_attempts:
                    monitoring.capture_exception(exc, flow_id=notification.flow_id)
                    return False
                await asyncio.sleep(min(2 ** (attempt - 1), 5) * self.backoff_seconds)
        return False


def redis_publisher(redis: Redis, channel: str = CHANNEL_NAME) -> Handler:
    async def publish_to_redis(notification: FlowNotification) -> None:
        await redis.publish(channel, json.dumps(notification.as_message()))

    return publish_to_redis


def connect_redis(url: Optional[str]) -> Optional[Redis]:
    if not url:
        return None
    try:
        return Redis.from_url(url)
    except Exception as exc:  # pragma: no cover - fallback
        logger.warning("Failed to connect to Redis: %s", exc)
        return None
