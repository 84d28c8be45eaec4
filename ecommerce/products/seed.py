"""Catalogue seed data for empty product databases."""
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ecommerce.products.models import Product

SEED_PRODUCTS = [
    {
        "name": "Laptop Dell XPS 15",
        "description": "High-performance laptop with Intel i7, 16GB RAM, 512GB SSD",
        "price": Decimal("1499.99"),
        "stock_quantity": 50,
        "category": "Electronics",
        "image_url": "https://example.com/laptop.jpg",
    },
    {
        "name": "Smartphone Samsung Galaxy S23",
        "description": "Latest Samsung flagship with amazing camera",
        "price": Decimal("999.99"),
        "stock_quantity": 100,
        "category": "Electronics",
        "image_url": "https://example.com/phone.jpg",
    },
    {
        "name": "Wireless Headphones Sony WH-1000XM5",
        "description": "Premium noise-cancelling headphones",
        "price": Decimal("399.99"),
        "stock_quantity": 75,
        "category": "Electronics",
        "image_url": "https://example.com/headphones.jpg",
    },
]


async def seed_products(session: AsyncSession) -> int:
    """Insert the seed catalogue when the products table is empty; return rows added."""
    existing = (await session.execute(select(func.count()).select_from(Product))).scalar_one()
    if existing:
        return 0
    session.add_all(Product(**row) for row in SEED_PRODUCTS)
    await session.commit()
    return len(SEED_PRODUCTS)
