import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class ProductCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    price: Decimal = Field(gt=0, max_digits=18, decimal_places=2)
    stock_quantity: int = Field(0, ge=0)
    category: str | None = Field(None, max_length=100)
    image_url: str | None = None


class ProductUpdate(BaseModel):
    name: str | None = Field(None, max_length=200)
    description: str | None = None
    price: Decimal | None = Field(None, gt=0, max_digits=18, decimal_places=2)
    stock_quantity: int | None = Field(None, ge=0)
    category: str | None = Field(None, max_length=100)
    image_url: str | None = None


class ProductResponse(BaseModel):
    id: uuid.UUID
    name: str
    description: str | None
    price: Decimal
    stock_quantity: int
    category: str | None
    image_url: str | None
    is_active: bool
    created_at: datetime | None
    updated_at: datetime | None
    model_config = ConfigDict(from_attributes=True)


class ProductPage(BaseModel):
    total_count: int
    page: int
    page_size: int
    products: list[ProductResponse]
