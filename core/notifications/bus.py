"""
Message bus used to decouple pipeline stages.

Each topic is an append-only log of JSON-serialized payloads. Consumer groups
track their own offset, so every group sees every message; workers inside a
group compete for messages. Handler errors are logged and the worker moves on.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable

import sentry_sdk

from core.notifications.errors import InfrastructureError

logger = logging.getLogger(__name__)


# Topics
NOTIFICATIONS_IN = "notifications.in"
NOTIFICATIONS_SCHEDULED = "notifications.scheduled"
NOTIFICATIONS_AGGREGATED = "notifications.aggregated"
NOTIFICATIONS_DLQ = "notifications.dlq"
NOTIFICATIONS_RECEIPTS = "notifications.receipts"

Handler = Callable[[dict], Awaitable[None]]


class MessageBus(ABC):
    @abstractmethod
    async def publish(self, topic: str, payload: dict) -> None:
        """
        Publish a payload (at-least-once).

        Raises:
            InfrastructureError: If the bus is unavailable
        """

    @abstractmethod
    async def subscribe(
        self, topic: str, group: str, handler: Handler, workers: int = 1
    ) -> None:
        """Start `workers` consumer tasks for a consumer group."""

    @abstractmethod
    async def close(self) -> None:
        ...


class InMemoryMessageBus(MessageBus):
    """Single-process bus; logs live for the lifetime of the object."""

    def __init__(self):
        self._logs: dict[str, list[str]] = {}
        self._conditions: dict[str, asyncio.Condition] = {}
        self._offsets: dict[tuple[str, str], int] = {}
        self._in_flight: dict[tuple[str, str], int] = {}
        self._tasks: list[asyncio.Task] = []
        self._closed = False

    def _condition(self, topic: str) -> asyncio.Condition:
        if topic not in self._conditions:
            self._conditions[topic] = asyncio.Condition()
            self._logs.setdefault(topic, [])
        return self._conditions[topic]

    async def publish(self, topic, payload):
        if self._closed:
            raise InfrastructureError(f"Message bus closed, cannot publish to {topic}")
        try:
            raw = json.dumps(payload, default=str)
        except (TypeError, ValueError) as e:
            raise InfrastructureError(f"Payload for {topic} is not serializable: {e}") from e

        condition = self._condition(topic)
        async with condition:
            self._logs[topic].append(raw)
            condition.notify_all()
        logger.debug(f"Published message to {topic}")

    async def subscribe(self, topic, group, handler, workers=1):
        key = (topic, group)
        self._condition(topic)
        self._offsets.setdefault(key, 0)
        self._in_flight.setdefault(key, 0)
        for index in range(workers):
            task = asyncio.create_task(
                self._consume(topic, group, handler),
                name=f"{group}:{topic}:{index}",
            )
            self._tasks.append(task)
        logger.info(f"Consumer group {group} started on {topic} ({workers} workers)")

    async def _consume(self, topic: str, group: str, handler: Handler) -> None:
        key = (topic, group)
        condition = self._condition(topic)
        log = self._logs[topic]
        while True:
            async with condition:
                await condition.wait_for(lambda: self._offsets[key] < len(log))
                raw = log[self._offsets[key]]
                self._offsets[key] += 1
                self._in_flight[key] += 1
            try:
                await handler(json.loads(raw))
            except Exception as e:
                logger.error(f"Error processing message from {topic} in {group}: {e}")
                sentry_sdk.capture_exception(e)
            finally:
                self._in_flight[key] -= 1

    def messages(self, topic: str) -> list[dict]:
        """Decoded contents of a topic's log."""
        return [json.loads(raw) for raw in self._logs.get(topic, [])]

    def is_idle(self) -> bool:
        caught_up = all(
            offset >= len(self._logs[topic])
            for (topic, _), offset in self._offsets.items()
        )
        return caught_up and not any(self._in_flight.values())

    async def join(self, timeout: float = 5.0) -> None:
        """Wait until every consumer group has processed everything published."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not self.is_idle():
            if loop.time() > deadline:
                raise TimeoutError("Message bus did not drain in time")
            await asyncio.sleep(0.01)

    async def close(self):
        self._closed = True
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Message bus closed")
