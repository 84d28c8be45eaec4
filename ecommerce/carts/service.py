"""
Cart service: per-user shopping carts stored in Redis.

A cart is one JSON document under ``cart:{user_id}`` whose expiry is reset
to ``CART_TTL`` on every write.  Unlike the product cache, Redis is the
system of record here: connection errors propagate to the caller.
"""
import logging
import uuid
from datetime import datetime, timezone

import redis.asyncio as redis

from ecommerce.carts.schemas import AddToCartRequest, CartItem, ShoppingCart, UpdateCartItemRequest
from ecommerce.config import settings

logger = logging.getLogger(__name__)


class CartNotFound(Exception):
    pass


class CartItemNotFound(Exception):
    pass


class CartStore:
    def __init__(self, ttl: int | None = None) -> None:
        self._redis: redis.Redis | None = None
        self._ttl = ttl

    @property
    def ttl(self) -> int:
        return self._ttl if self._ttl is not None else settings.CART_TTL

    async def connect(self, url: str | None = None) -> None:
        url = url or settings.REDIS_URL
        self._redis = redis.from_url(url, decode_responses=True, socket_connect_timeout=2, socket_timeout=2)
        await self._redis.ping()
        logger.info("Cart store connected: %s", url)

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def _client(self) -> redis.Redis:
        if self._redis is None:
            raise RuntimeError("Cart store is not connected")
        return self._redis

    @staticmethod
    def key(user_id: uuid.UUID) -> str:
        return f"cart:{user_id}"

    async def load(self, user_id: uuid.UUID) -> ShoppingCart | None:
        data = await self._client().get(self.key(user_id))
        if not data:
            return None
        return ShoppingCart.model_validate_json(data)

    async def save(self, cart: ShoppingCart) -> None:
        cart.updated_at = datetime.now(timezone.utc)
        await self._client().set(self.key(cart.user_id), cart.model_dump_json(), ex=self.ttl)

    async def delete(self, user_id: uuid.UUID) -> bool:
        return bool(await self._client().delete(self.key(user_id)))


# Module-level singleton shared across request handlers and consumers.
cart_store = CartStore()


async def get_cart(store: CartStore, user_id: uuid.UUID) -> ShoppingCart:
    """Return the user's cart; a missing cart reads as an empty one."""
    return await store.load(user_id) or ShoppingCart(user_id=user_id)


async def add_item(store: CartStore, user_id: uuid.UUID, data: AddToCartRequest) -> ShoppingCart:
    cart = await get_cart(store, user_id)
    item = cart.find(data.product_id)
    if item is not None:
        item.quantity += data.quantity
    else:
        cart.items.append(CartItem(**data.model_dump()))
    await store.save(cart)
    logger.info("Item %s added to cart for user %s", data.product_id, user_id)
    return cart


async def update_item(
    store: CartStore, user_id: uuid.UUID, product_id: uuid.UUID, data: UpdateCartItemRequest
) -> ShoppingCart:
    cart = await store.load(user_id)
    if cart is None:
        raise CartNotFound("Cart not found")
    item = cart.find(product_id)
    if item is None:
        raise CartItemNotFound("Item not found in cart")

    if data.quantity <= 0:
        cart.items.remove(item)
    else:
        item.quantity = data.quantity
    await store.save(cart)
    logger.info("Cart item %s updated for user %s", product_id, user_id)
    return cart


async def remove_item(store: CartStore, user_id: uuid.UUID, product_id: uuid.UUID) -> ShoppingCart:
    cart = await store.load(user_id)
    if cart is None:
        raise CartNotFound("Cart not found")
    item = cart.find(product_id)
    if item is not None:
        cart.items.remove(item)
        await store.save(cart)
        logger.info("Item %s removed from cart for user %s", product_id, user_id)
    return cart


async def clear_cart(store: CartStore, user_id: uuid.UUID) -> None:
    await store.delete(user_id)
    logger.info("Cart cleared for user %s", user_id)
