"""
Event/notification bus with two delivery channels.

Producers publish a payload once; it is delivered through:

1. The EventBus subscriber list (topic-based publish/subscribe).
2. A RuntimeBroadcaster, an independent listener list shared at process
   level, so listeners that never registered on a particular bus instance
   (for example components created before the bus existed) still receive
   every update.

Both channels carry the same payload object. Delivery is synchronous, in
registration order, and isolated: a callback that raises is logged and the
next callback still runs.

Example:
    >>> from ironsync.core.events import EventBus, RuntimeBroadcaster
    >>> bus = EventBus(broadcaster=RuntimeBroadcaster())
    >>> received = []
    >>> unsubscribe = bus.subscribe("entity-updated", received.append)
    >>> bus.publish("entity-updated", {"identity": "zezima"})
    >>> received
    [{'identity': 'zezima'}]
    >>> unsubscribe()
    >>> unsubscribe()  # idempotent
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

Callback = Callable[[Any], None]
Unsubscribe = Callable[[], None]

# Topics published by the reconciliation engine
ENTITY_UPDATED = "entity-updated"
GROUP_SYNCED = "group-synced"
SOURCE_STATUS_CHANGED = "source-status-changed"

_ids = itertools.count(1)


@dataclass
class Subscription:
    """Internal subscription record."""

    id: int
    topic: str
    callback: Callback


def _deliver(channel: str, topic: str, subscriptions: list[Subscription], payload: Any) -> int:
    """Call each subscription in order, isolating failures. Returns delivery count."""
    delivered = 0
    for sub in subscriptions:
        try:
            sub.callback(payload)
            delivered += 1
        except Exception:
            logger.exception(
                f"{channel}: subscriber {sub.id} failed while handling '{topic}'"
            )
    return delivered


class _ListenerList:
    """Ordered topic -> subscriptions registry shared by both channels."""

    def __init__(self) -> None:
        self._subs: dict[int, Subscription] = {}

    def add(self, topic: str, callback: Callback) -> int:
        sub_id = next(_ids)
        self._subs[sub_id] = Subscription(id=sub_id, topic=topic, callback=callback)
        return sub_id

    def remove(self, sub_id: int) -> None:
        self._subs.pop(sub_id, None)

    def for_topic(self, topic: str) -> list[Subscription]:
        # Snapshot so callbacks may (un)subscribe during delivery
        return [s for s in self._subs.values() if s.topic == topic or s.topic == "*"]

    def clear(self) -> None:
        self._subs.clear()

    def __len__(self) -> int:
        return len(self._subs)


class RuntimeBroadcaster:
    """
    Process-level notification target, the secondary delivery channel.

    Works like a document-level event target: any component can listen for
    a topic without holding a reference to the bus that publishes it.
    Remembers the last payload per topic so late listeners can catch up.
    """

    def __init__(self) -> None:
        self._listeners = _ListenerList()
        self._last: dict[str, Any] = {}

    def add_listener(
        self, topic: str, handler: Callback, replay_last: bool = False
    ) -> Unsubscribe:
        """
        Register a listener for a topic ("*" listens to every topic).

        Args:
            topic: Topic name
            handler: Callable receiving the payload
            replay_last: Immediately deliver the most recent payload for the
                topic, if one was broadcast before registration

        Returns:
            Idempotent function removing the listener
        """
        sub_id = self._listeners.add(topic, handler)
        if replay_last and topic in self._last:
            _deliver(
                "broadcast",
                topic,
                [Subscription(id=sub_id, topic=topic, callback=handler)],
                self._last[topic],
            )
        return lambda: self._listeners.remove(sub_id)

    def broadcast(self, topic: str, payload: Any) -> int:
        """Deliver a payload to every listener of the topic."""
        self._last[topic] = payload
        return _deliver("broadcast", topic, self._listeners.for_topic(topic), payload)

    def last_payload(self, topic: str) -> Any | None:
        """Most recent payload broadcast on a topic."""
        return self._last.get(topic)

    def reset(self) -> None:
        """Remove every listener and forget remembered payloads."""
        self._listeners.clear()
        self._last.clear()

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


# Shared process-level broadcaster used when a bus is built without one
runtime_broadcaster = RuntimeBroadcaster()


class EventBus:
    """
    Topic-based publish/subscribe bus feeding two independent channels.

    Attributes:
        broadcaster: Secondary channel receiving every published payload
    """

    def __init__(self, broadcaster: RuntimeBroadcaster | None = None) -> None:
        self.broadcaster = broadcaster if broadcaster is not None else runtime_broadcaster
        self._subscribers = _ListenerList()
        self._closed = False

    def subscribe(self, topic: str, callback: Callback) -> Unsubscribe:
        """
        Register a callback for a topic ("*" subscribes to every topic).

        Returns:
            Function removing the subscription; safe to call any number of
            times, including after the bus has been closed.
        """
        if self._closed:
            logger.debug(f"Ignoring subscription to '{topic}' on a closed bus")
            return lambda: None
        sub_id = self._subscribers.add(topic, callback)
        return lambda: self._subscribers.remove(sub_id)

    def publish(self, topic: str, payload: Any) -> None:
        """Deliver a payload on both channels. No-op once the bus is closed."""
        if self._closed:
            return
        delivered = _deliver("pubsub", topic, self._subscribers.for_topic(topic), payload)
        broadcast = self.broadcaster.broadcast(topic, payload)
        logger.debug(
            f"Published '{topic}' to {delivered} subscriber(s) and "
            f"{broadcast} broadcast listener(s)"
        )

    def close(self) -> None:
        """Drop all subscribers and stop delivering."""
        self._closed = True
        self._subscribers.clear()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscription_count(self) -> int:
        """Number of active primary-channel subscriptions."""
        return len(self._subscribers)


__all__ = [
    "Callback",
    "Unsubscribe",
    "EventBus",
    "RuntimeBroadcaster",
    "runtime_broadcaster",
    "ENTITY_UPDATED",
    "GROUP_SYNCED",
    "SOURCE_STATUS_CHANGED",
]
