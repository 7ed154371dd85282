from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from loguru import logger

SESSION_STARTED = 'session.started'
SESSION_COMPLETED = 'session.completed'
CONTAINER_VISITED = 'container.visited'
HANDOFF_CREATED = 'handoff.created'
HANDOFF_SENDER_CONFIRMED = 'handoff.sender_confirmed'
HANDOFF_COMPLETED = 'handoff.completed'
HANDOFF_REJECTED = 'handoff.rejected'
HANDOFF_TOKEN_REISSUED = 'handoff.token_reissued'


@dataclass(frozen=True)
class DomainEvent:
    name: str
    payload: dict[str, Any]
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Subscriber = Callable[[DomainEvent], Awaitable[Any]]


class EventDispatcher:
    """
    Fans domain events out to subscribers (the Telegram relay, for example).
    Publishing happens after the state change is committed, and a failing
    subscriber is logged and skipped: delivery never rolls back the core.
    """
    def __init__(self):
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    async def publish(self, name: str, **payload) -> DomainEvent:
        event = DomainEvent(name=name, payload=payload)
        for subscriber in self._subscribers:
            try:
                await subscriber(event)
            except Exception as e:
                logger.error(f"Event subscriber failed for '{name}': {e}")
        return event
