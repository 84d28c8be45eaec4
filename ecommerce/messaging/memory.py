"""
Broker-free ``MessageBus`` for local development and tests.

Mirrors the broker semantics the services rely on: topic routing with
``*`` / ``#`` wildcards, one copy per matching queue, queues that outlive
their consumers, one worker task per subscription holding at most
``prefetch_limit`` deliveries, requeue on handler failure with a delivery
counter, and dead-lettering of malformed or exhausted messages.
"""
import asyncio
import logging
from dataclasses import dataclass, field

from ecommerce.errors import HandlerError, SerializationError, TransportError
from ecommerce.messaging.bus import MessageBus, Subscription, invoke_handler
from ecommerce.messaging.events import EventEnvelope, decode_envelope, encode_envelope

logger = logging.getLogger(__name__)


def topic_matches(pattern: str, routing_key: str) -> bool:
    """
    Return True when *routing_key* matches the topic *pattern*.

    Words are dot-delimited; ``*`` matches exactly one word and ``#``
    matches zero or more words.
    """
    return _match(pattern.split("."), routing_key.split("."))


def _match(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match(rest, words[1:])
    return False


@dataclass
class _Delivery:
    body: bytes
    routing_key: str
    message_id: str
    delivery_count: int = 0


@dataclass
class _Queue:
    name: str
    messages: asyncio.Queue = field(default_factory=asyncio.Queue)
    bindings: set[tuple[str, str]] = field(default_factory=set)
    dead_letters: list[_Delivery] = field(default_factory=list)
    acknowledged: int = 0

    def accepts(self, exchange_name: str, routing_key: str) -> bool:
        return any(
            exchange == exchange_name and topic_matches(pattern, routing_key)
            for exchange, pattern in self.bindings
        )


@dataclass
class _Consumer:
    subscription: Subscription
    queue: _Queue
    outstanding: int = 0
    peak_outstanding: int = 0


class InMemoryMessageBus(MessageBus):
    def __init__(self, *, delivery_limit: int | None = 5) -> None:
        self._delivery_limit = delivery_limit
        self._connected = False
        self._exchanges: set[str] = set()
        self._queues: dict[str, _Queue] = {}
        self._consumers: list[_Consumer] = []
        self._workers: list[asyncio.Task] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True

    async def shutdown(self) -> None:
        self._connected = False
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        self._consumers.clear()

    async def publish(self, exchange_name: str, routing_key: str, envelope: EventEnvelope) -> None:
        if not self._connected:
            raise TransportError("Message bus is not connected")
        body = encode_envelope(envelope)
        self._exchanges.add(exchange_name)
        for queue in self._queues.values():
            if queue.accepts(exchange_name, routing_key):
                queue.messages.put_nowait(_Delivery(body, routing_key, str(envelope.id)))
        logger.debug("Published %s %s to %s/%s", envelope.event_type, envelope.id, exchange_name, routing_key)

    async def subscribe(self, subscription: Subscription) -> None:
        if not self._connected:
            raise TransportError("Message bus is not connected")
        self._exchanges.add(subscription.exchange_name)
        queue = self._queues.get(subscription.queue_name)
        if queue is None:
            queue = self._queues[subscription.queue_name] = _Queue(subscription.queue_name)
        queue.bindings.add((subscription.exchange_name, subscription.routing_key_pattern))

        consumer = _Consumer(subscription, queue)
        self._consumers.append(consumer)
        for _ in range(subscription.prefetch_limit):
            self._workers.append(
                asyncio.create_task(
                    self._consume(consumer), name=f"memory-consumer-{subscription.queue_name}"
                )
            )

    # ------------------------------------------------------------------
    # Delivery loop
    # ------------------------------------------------------------------

    async def _consume(self, consumer: _Consumer) -> None:
        queue = consumer.queue
        while True:
            delivery = await queue.messages.get()
            consumer.outstanding += 1
            consumer.peak_outstanding = max(consumer.peak_outstanding, consumer.outstanding)
            try:
                await self._deliver(consumer, delivery)
            except asyncio.CancelledError:
                # Unacknowledged at shutdown: back to the queue for the next consumer.
                queue.messages.put_nowait(delivery)
                raise
            finally:
                consumer.outstanding -= 1
                queue.messages.task_done()
            await asyncio.sleep(0)

    async def _deliver(self, consumer: _Consumer, delivery: _Delivery) -> None:
        subscription, queue = consumer.subscription, consumer.queue
        try:
            envelope = decode_envelope(delivery.body, subscription.payload_type)
        except SerializationError as exc:
            logger.error("Dead-lettering malformed message on %s: %s", queue.name, exc)
            queue.dead_letters.append(delivery)
            return

        try:
            await invoke_handler(subscription, envelope)
        except HandlerError as exc:
            delivery.delivery_count += 1
            if self._delivery_limit is not None and delivery.delivery_count > self._delivery_limit:
                logger.error(
                    "Handler on %s failed for %s %s after %d attempts; dead-lettering: %s",
                    queue.name, envelope.event_type, envelope.id, delivery.delivery_count, exc,
                )
                queue.dead_letters.append(delivery)
            else:
                logger.warning(
                    "Handler on %s failed for %s %s (attempt %d), requeueing: %s",
                    queue.name, envelope.event_type, envelope.id, delivery.delivery_count, exc,
                )
                queue.messages.put_nowait(delivery)
            return

        queue.acknowledged += 1

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def drain(self) -> None:
        """Wait until every queue with a consumer has settled all its messages."""
        consumed = {consumer.queue.name: consumer.queue for consumer in self._consumers}
        await asyncio.gather(*(queue.messages.join() for queue in consumed.values()))

    def pending(self, queue_name: str) -> int:
        queue = self._queues.get(queue_name)
        return queue.messages.qsize() if queue else 0

    def acknowledged(self, queue_name: str) -> int:
        queue = self._queues.get(queue_name)
        return queue.acknowledged if queue else 0

    def dead_letters(self, queue_name: str) -> list[bytes]:
        queue = self._queues.get(queue_name)
        return [d.body for d in queue.dead_letters] if queue else []

    def peak_outstanding(self, queue_name: str) -> int:
        """Highest number of in-flight deliveries any single subscription on *queue_name* held."""
        return max(
            (c.peak_outstanding for c in self._consumers if c.queue.name == queue_name),
            default=0,
        )
