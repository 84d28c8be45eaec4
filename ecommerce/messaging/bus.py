"""
Topic message bus: publish/subscribe over a durable topic exchange.

Delivery contract
-----------------
- At-least-once.  ``publish`` returns only after the broker has accepted the
  message (publisher confirms on the channel); the message is persistent
  and every queue is durable.  Delivery to subscribers is asynchronous.
- Each subscription consumes with a prefetch limit (1 by default), so a
  subscription never holds more than one unacknowledged delivery and its
  handler runs strictly sequentially.  Different subscriptions run
  concurrently on the same channel.
- Handler success acks the delivery.  Handler failure nacks it with
  requeue.  Undecodable bodies are rejected without requeue.
- Poison messages: queues are declared as quorum queues with
  ``x-delivery-limit`` so the broker dead-letters a message once it has been
  redelivered too often.  A ``delivery_limit`` of ``None`` falls back to a
  classic durable queue with unbounded requeue.
- The bus neither buffers nor retries publishes; a ``TransportError`` is the
  caller's to handle.
"""
import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError
from pydantic import BaseModel

from ecommerce.errors import HandlerError, SerializationError, TransportError
from ecommerce.messaging.events import (
    CONTENT_ENCODING,
    CONTENT_TYPE,
    EventEnvelope,
    decode_envelope,
    encode_envelope,
)

logger = logging.getLogger(__name__)

# Exceptions raised by aio-pika when the connection or channel is unusable.
BROKER_ERRORS = (AMQPError, ChannelInvalidStateError, OSError)

Handler = Callable[[EventEnvelope], Awaitable[bool | None] | bool | None]


@dataclass(frozen=True)
class Subscription:
    """
    Binding of one handler to one exchange/queue/pattern triple.

    ``routing_key_pattern`` uses topic wildcards (``*`` matches exactly one
    dot-delimited word, ``#`` matches zero or more).  ``payload_type`` is the
    model the envelope payload is decoded into before the handler sees it.
    """

    queue_name: str
    exchange_name: str
    routing_key_pattern: str
    handler: Handler
    payload_type: type[BaseModel]
    prefetch_limit: int = 1

    def __post_init__(self) -> None:
        if self.prefetch_limit < 1:
            raise ValueError("prefetch_limit must be at least 1")


async def invoke_handler(subscription: Subscription, envelope: EventEnvelope) -> None:
    """
    Run the subscription's handler for *envelope*.

    Both plain and coroutine functions are accepted.  A raised exception or
    an explicit ``False`` return value is reported as ``HandlerError``.
    """
    try:
        result = subscription.handler(envelope)
        if inspect.isawaitable(result):
            result = await result
    except HandlerError:
        raise
    except Exception as exc:
        raise HandlerError(f"{type(exc).__name__}: {exc}") from exc
    if result is False:
        raise HandlerError("handler reported failure")


class MessageBus(ABC):
    """Transport-agnostic publish/subscribe interface used by the services."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def publish(self, exchange_name: str, routing_key: str, envelope: EventEnvelope) -> None:
        ...

    @abstractmethod
    async def subscribe(self, subscription: Subscription) -> None:
        ...

    @abstractmethod
    async def shutdown(self) -> None:
        ...

    async def __aenter__(self) -> "MessageBus":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()


def delivery_count(message: AbstractIncomingMessage) -> int:
    """
    Number of earlier deliveries of *message*.

    Quorum queues report it in the ``x-delivery-count`` header; classic
    queues only expose the ``redelivered`` flag.
    """
    value = (message.headers or {}).get("x-delivery-count")
    if value is not None:
        return int(value)
    return 1 if message.redelivered else 0


class RabbitMQMessageBus(MessageBus):
    """
    ``MessageBus`` backed by RabbitMQ through aio-pika.

    One robust connection and one channel are held for the lifetime of the
    bus and shared by all publishes and subscriptions.  Exchange handles are
    cached so each exchange is declared once per bus.
    """

    def __init__(
        self,
        url: str,
        *,
        dead_letter_exchange: str | None = "ecommerce.dead-letter",
        delivery_limit: int | None = 5,
        connect: Callable[..., Awaitable[AbstractRobustConnection]] = aio_pika.connect_robust,
    ) -> None:
        self._url = url
        self._dead_letter_exchange = dead_letter_exchange
        self._delivery_limit = delivery_limit
        self._connect = connect
        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchanges: dict[str, AbstractExchange] = {}
        self._consumers: list[tuple[AbstractQueue, str]] = []
        # Serialises declare/qos/consume so each prefetch applies to its own consumer.
        self._setup_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._channel is not None and not self._channel.is_closed

    async def connect(self) -> None:
        if self.is_connected:
            return
        try:
            self._connection = await self._connect(self._url)
            self._channel = await self._connection.channel(publisher_confirms=True)
        except BROKER_ERRORS as exc:
            logger.error("Cannot connect to message broker: %s", exc)
            await self._close_transport()
            raise TransportError(f"Cannot connect to message broker: {exc}") from exc
        logger.info("Connected to message broker")

    async def shutdown(self) -> None:
        """
        Stop consuming, then close the channel and the connection.

        Unacknowledged deliveries are returned to their queues by the broker
        once the channel closes.
        """
        for queue, consumer_tag in self._consumers:
            try:
                await queue.cancel(consumer_tag)
            except BROKER_ERRORS as exc:
                logger.warning("Cannot cancel consumer %s on %s: %s", consumer_tag, queue.name, exc)
        self._consumers.clear()
        await self._close_transport()
        logger.info("Message bus shut down")

    async def _close_transport(self) -> None:
        channel, connection = self._channel, self._connection
        self._channel = None
        self._connection = None
        self._exchanges.clear()
        try:
            if channel is not None and not channel.is_closed:
                await channel.close()
        except BROKER_ERRORS as exc:
            logger.warning("Error closing channel: %s", exc)
        finally:
            if connection is not None and not connection.is_closed:
                try:
                    await connection.close()
                except BROKER_ERRORS as exc:
                    logger.warning("Error closing connection: %s", exc)

    def _require_channel(self) -> AbstractChannel:
        if self._channel is None or self._channel.is_closed:
            raise TransportError("Message bus is not connected")
        return self._channel

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------

    async def _declare_exchange(
        self, name: str, exchange_type: ExchangeType = ExchangeType.TOPIC
    ) -> AbstractExchange:
        exchange = self._exchanges.get(name)
        if exchange is None:
            channel = self._require_channel()
            exchange = await channel.declare_exchange(name, exchange_type, durable=True)
            self._exchanges[name] = exchange
        return exchange

    async def _queue_arguments(self, queue_name: str) -> dict[str, Any]:
        arguments: dict[str, Any] = {}
        if self._dead_letter_exchange:
            dlx = await self._declare_exchange(self._dead_letter_exchange, ExchangeType.DIRECT)
            dlq = await self._require_channel().declare_queue(
                f"{queue_name}.dead-letter", durable=True
            )
            await dlq.bind(dlx, routing_key=queue_name)
            arguments["x-dead-letter-exchange"] = self._dead_letter_exchange
            arguments["x-dead-letter-routing-key"] = queue_name
        if self._delivery_limit is not None:
            arguments["x-queue-type"] = "quorum"
            arguments["x-delivery-limit"] = self._delivery_limit
        return arguments

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    async def publish(self, exchange_name: str, routing_key: str, envelope: EventEnvelope) -> None:
        body = encode_envelope(envelope)
        self._require_channel()
        message = Message(
            body,
            content_type=CONTENT_TYPE,
            content_encoding=CONTENT_ENCODING,
            delivery_mode=DeliveryMode.PERSISTENT,
            message_id=str(envelope.id),
            timestamp=envelope.created_at,
            type=envelope.event_type,
        )
        try:
            exchange = await self._declare_exchange(exchange_name)
            await exchange.publish(message, routing_key=routing_key, mandatory=False)
        except BROKER_ERRORS as exc:
            logger.error(
                "Failed to publish %s %s to %s/%s: %s",
                envelope.event_type, envelope.id, exchange_name, routing_key, exc,
            )
            raise TransportError(f"Publish to {exchange_name}/{routing_key} failed: {exc}") from exc
        logger.debug(
            "Published %s %s to %s/%s", envelope.event_type, envelope.id, exchange_name, routing_key
        )

    # ------------------------------------------------------------------
    # Subscribe
    # ------------------------------------------------------------------

    async def subscribe(self, subscription: Subscription) -> None:
        async with self._setup_lock:
            channel = self._require_channel()
            try:
                exchange = await self._declare_exchange(subscription.exchange_name)
                queue = await channel.declare_queue(
                    subscription.queue_name,
                    durable=True,
                    arguments=await self._queue_arguments(subscription.queue_name) or None,
                )
                await queue.bind(exchange, routing_key=subscription.routing_key_pattern)
                await channel.set_qos(prefetch_count=subscription.prefetch_limit)
                consumer_tag = await queue.consume(self._consumer(subscription), no_ack=False)
            except BROKER_ERRORS as exc:
                logger.error("Cannot subscribe %s: %s", subscription.queue_name, exc)
                raise TransportError(f"Subscribe {subscription.queue_name} failed: {exc}") from exc
            self._consumers.append((queue, consumer_tag))
        logger.info(
            "Subscribed %s to %s/%s",
            subscription.queue_name, subscription.exchange_name, subscription.routing_key_pattern,
        )

    def _consumer(self, subscription: Subscription) -> Callable[[AbstractIncomingMessage], Awaitable[None]]:
        async def on_message(message: AbstractIncomingMessage) -> None:
            await self._process(subscription, message)

        return on_message

    async def _process(self, subscription: Subscription, message: AbstractIncomingMessage) -> None:
        attempt = delivery_count(message) + 1
        try:
            envelope = decode_envelope(message.body, subscription.payload_type)
        except SerializationError as exc:
            logger.error(
                "Rejecting malformed message %s on %s: %s",
                message.message_id, subscription.queue_name, exc,
            )
            await self._settle(subscription, message, "reject", requeue=False)
            return

        try:
            await invoke_handler(subscription, envelope)
        except HandlerError as exc:
            if self._delivery_limit is not None and attempt > self._delivery_limit:
                logger.error(
                    "Handler on %s failed for %s %s after %d attempts; dead-lettering: %s",
                    subscription.queue_name, envelope.event_type, envelope.id, attempt, exc,
                )
            else:
                logger.warning(
                    "Handler on %s failed for %s %s (attempt %d), requeueing: %s",
                    subscription.queue_name, envelope.event_type, envelope.id, attempt, exc,
                )
            await self._settle(subscription, message, "nack", requeue=True)
            return

        await self._settle(subscription, message, "ack")
        logger.debug("Processed %s %s from %s", envelope.event_type, envelope.id, subscription.queue_name)

    async def _settle(
        self,
        subscription: Subscription,
        message: AbstractIncomingMessage,
        action: str,
        **kwargs: Any,
    ) -> None:
        try:
            await getattr(message, action)(**kwargs)
        except BROKER_ERRORS as exc:
            # The broker redelivers once the channel is gone.
            logger.warning(
                "Cannot %s message %s on %s: %s",
                action, message.message_id, subscription.queue_name, exc,
            )
