import asyncio
import logging
import uuid
from collections import defaultdict
from typing import Any, Dict, Optional, Set

logger = logging.getLogger(__name__)

PROGRESS_EVENT = "progress"
COMPLETE_EVENT = "complete"
ERROR_EVENT = "error"


def owner_channel(owner_id: str) -> str:
    return f"owner:{owner_id}"


def asset_channel(asset_id: str) -> str:
    return f"asset:{asset_id}"


class Subscriber:
    """One connected observer. Events are buffered in a bounded queue."""

    def __init__(self, owner_id: str, max_queue: int):
        self.id = uuid.uuid4().hex
        self.owner_id = owner_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self.channels: Set[str] = set()

    async def next_event(self) -> dict:
        return await self.queue.get()

    def __repr__(self) -> str:
        return f"Subscriber(id={self.id}, owner_id={self.owner_id})"


class ProgressNotifier:
    """Best-effort fan-out of pipeline events to owner and asset channels.

    Publishing never awaits, so it can interleave freely with connects and
    subscription changes on the event loop. Nothing is stored for observers
    that are not connected.
    """

    def __init__(self, max_queue: int = 100):
        self.max_queue = max_queue
        self._channels: Dict[str, Dict[str, Subscriber]] = defaultdict(dict)

    def connect(self, owner_id: str) -> Subscriber:
        subscriber = Subscriber(owner_id, self.max_queue)
        self._join(subscriber, owner_channel(owner_id))
        logger.info("Observer %s connected for owner %s", subscriber.id, owner_id)
        return subscriber

    def disconnect(self, subscriber: Subscriber) -> None:
        for channel in list(subscriber.channels):
            self._leave(subscriber, channel)
        logger.info("Observer %s disconnected", subscriber.id)

    def subscribe_asset(self, subscriber: Subscriber, asset_id: str) -> None:
        self._join(subscriber, asset_channel(asset_id))
        logger.debug("Observer %s subscribed to asset %s", subscriber.id, asset_id)

    def unsubscribe_asset(self, subscriber: Subscriber, asset_id: str) -> None:
        self._leave(subscriber, asset_channel(asset_id))

    def subscriber_count(self, channel: str) -> int:
        return len(self._channels.get(channel, {}))

    def notify(
        self,
        event: str,
        owner_id: str,
        asset_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Queue an event for the owner channel and, if given, the asset channel.

        Args:
            event: Event name (progress, complete or error)
            owner_id: Owning identity whose channel receives the event
            asset_id: Optional asset whose watchers also receive the event
            payload: Event body

        Returns:
            Number of observers the event was queued for
        """
        channels = [owner_channel(owner_id)]
        if asset_id is not None:
            channels.append(asset_channel(asset_id))

        # Snapshot so the registry may change while we deliver
        recipients: Dict[str, Subscriber] = {}
        for channel in channels:
            recipients.update(self._channels.get(channel, {}))

        message = {"event": event, "data": dict(payload or {})}
        delivered = 0
        for subscriber in recipients.values():
            try:
                subscriber.queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(
                    "Dropping %s event for observer %s: queue full",
                    event,
                    subscriber.id,
                )
        return delivered

    def _join(self, subscriber: Subscriber, channel: str) -> None:
        self._channels[channel][subscriber.id] = subscriber
        subscriber.channels.add(channel)

    def _leave(self, subscriber: Subscriber, channel: str) -> None:
        members = self._channels.get(channel)
        if members is not None:
            members.pop(subscriber.id, None)
            if not members:
                del self._channels[channel]
        subscriber.channels.discard(channel)
