import uuid

from fastapi import APIRouter, HTTPException
from redis.exceptions import RedisError

from ecommerce.carts import service as cart_service
from ecommerce.carts.schemas import AddToCartRequest, ShoppingCart, UpdateCartItemRequest
from ecommerce.carts.service import CartItemNotFound, CartNotFound, cart_store

router = APIRouter(prefix="/api/cart", tags=["cart"])

def _unavailable(exc: RedisError) -> HTTPException:
    return HTTPException(status_code=503, detail=f"Cart store unavailable: {exc}")

@router.get("/{user_id}", response_model=ShoppingCart)
async def get_cart(user_id: uuid.UUID):
    try:
        return await cart_service.get_cart(cart_store, user_id)
    except RedisError as exc:
        raise _unavailable(exc)

@router.post("/{user_id}/items", response_model=ShoppingCart)
async def add_to_cart(user_id: uuid.UUID, data: AddToCartRequest):
    try:
        return await cart_service.add_item(cart_store, user_id, data)
    except RedisError as exc:
        raise _unavailable(exc)

@router.put("/{user_id}/items/{product_id}", response_model=ShoppingCart)
async def update_cart_item(user_id: uuid.UUID, product_id: uuid.UUID, data: UpdateCartItemRequest):
    try:
        return await cart_service.update_item(cart_store, user_id, product_id, data)
    except (CartNotFound, CartItemNotFound) as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except RedisError as exc:
        raise _unavailable(exc)

@router.delete("/{user_id}/items/{product_id}", response_model=ShoppingCart)
async def remove_from_cart(user_id: uuid.UUID, product_id: uuid.UUID):
    try:
        return await cart_service.remove_item(cart_store, user_id, product_id)
    except CartNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except RedisError as exc:
        raise _unavailable(exc)

@router.delete("/{user_id}", status_code=204)
async def clear_cart(user_id: uuid.UUID):
    try:
        await cart_service.clear_cart(cart_store, user_id)
    except RedisError as exc:
        raise _unavailable(exc)
