import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class CartItem(BaseModel):
    product_id: uuid.UUID
    product_name: str = ""
    quantity: int
    price: Decimal


class ShoppingCart(BaseModel):
    user_id: uuid.UUID
    items: list[CartItem] = []
    updated_at: datetime | None = None

    def find(self, product_id: uuid.UUID) -> CartItem | None:
        return next((item for item in self.items if item.product_id == product_id), None)


class AddToCartRequest(BaseModel):
    product_id: uuid.UUID
    product_name: str = Field("", max_length=200)
    quantity: int = Field(gt=0)
    price: Decimal = Field(ge=0)


class UpdateCartItemRequest(BaseModel):
    # Zero or below removes the line
    quantity: int
