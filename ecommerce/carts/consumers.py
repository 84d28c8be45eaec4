"""Event subscriptions of the cart service."""
import logging

from ecommerce.carts.service import CartStore, cart_store, clear_cart
from ecommerce.config import settings
from ecommerce.messaging.bus import Handler, Subscription
from ecommerce.messaging.events import ORDER_CREATED, EventEnvelope, OrderCreated

logger = logging.getLogger(__name__)

ORDER_CREATED_QUEUE = "cart-service.order-created"


def order_created_handler(store: CartStore) -> Handler:
    async def on_order_created(envelope: EventEnvelope[OrderCreated]) -> None:
        # Deleting an absent key is a no-op, so redeliveries are harmless.
        order = envelope.payload
        await clear_cart(store, order.user_id)
        logger.info("Cart of user %s cleared after order %s", order.user_id, order.order_id)

    return on_order_created


def cart_subscriptions(store: CartStore = cart_store) -> list[Subscription]:
    return [
        Subscription(
            queue_name=ORDER_CREATED_QUEUE,
            exchange_name=settings.EVENTS_EXCHANGE,
            routing_key_pattern=ORDER_CREATED,
            handler=order_created_handler(store),
            payload_type=OrderCreated,
        ),
    ]
