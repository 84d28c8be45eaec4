"""
Product service: business logic for the Product aggregate.

Design notes
------------
- Detail reads go through the cache-aside pattern (Redis, then the
  database) with a fixed TTL; every write to a product drops its entry.
- Deletion is soft: ``is_active`` is cleared and inactive products are
  invisible to reads.
- ``update_product`` publishes ``InventoryUpdated`` on the events exchange
  after the row is flushed.  A ``TransportError`` propagates so the router
  can fail the request and the session rolls back; the bus never buffers.
- Service functions flush but do not commit; the transaction boundary is
  owned by the ``get_db`` dependency in the router layer.
"""
import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ecommerce.cache import cache
from ecommerce.config import settings
from ecommerce.dependencies import ProductSearchParams
from ecommerce.messaging.bus import MessageBus
from ecommerce.messaging.events import INVENTORY_UPDATED, EventEnvelope, InventoryUpdated
from ecommerce.products.models import Product
from ecommerce.products.schemas import ProductCreate, ProductPage, ProductResponse, ProductUpdate

logger = logging.getLogger(__name__)


def _cache_key(product_id: uuid.UUID) -> str:
    return f"product:{product_id}"


def _product_to_dict(product: Product) -> dict:
    return ProductResponse.model_validate(product).model_dump(mode="json")


async def _get_active(db: AsyncSession, product_id: uuid.UUID) -> Product | None:
    product = await db.get(Product, product_id)
    if product is None or not product.is_active:
        return None
    return product


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

async def search_products(db: AsyncSession, params: ProductSearchParams) -> ProductPage:
    """Return one page of active products matching *params*, ordered by name."""
    conditions = [Product.is_active.is_(True)]
    if params.search_term:
        pattern = f"%{params.search_term}%"
        conditions.append(or_(Product.name.ilike(pattern), Product.description.ilike(pattern)))
    if params.category:
        conditions.append(Product.category == params.category)
    if params.min_price is not None:
        conditions.append(Product.price >= params.min_price)
    if params.max_price is not None:
        conditions.append(Product.price <= params.max_price)

    total = (
        await db.execute(select(func.count()).select_from(Product).where(*conditions))
    ).scalar_one()

    result = await db.execute(
        select(Product)
        .where(*conditions)
        .order_by(Product.name)
        .offset(params.offset)
        .limit(params.page_size)
    )
    return ProductPage(
        total_count=total,
        page=params.page,
        page_size=params.page_size,
        products=[ProductResponse.model_validate(p) for p in result.scalars().all()],
    )


async def get_product(db: AsyncSession, product_id: uuid.UUID) -> dict | None:
    """
    Return the product dict for *product_id*, serving from the cache when
    possible.  Returns None for unknown or inactive products.
    """

    async def load() -> dict | None:
        product = await _get_active(db, product_id)
        return _product_to_dict(product) if product is not None else None

    return await cache.get_or_load(_cache_key(product_id), load, ttl=settings.CACHE_TTL_PRODUCT)


async def get_categories(db: AsyncSession) -> list[str]:
    result = await db.execute(
        select(Product.category)
        .where(Product.is_active.is_(True), Product.category.is_not(None))
        .distinct()
        .order_by(Product.category)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

async def create_product(db: AsyncSession, data: ProductCreate) -> dict:
    product = Product(**data.model_dump(), is_active=True, created_at=datetime.now(timezone.utc))
    db.add(product)
    await db.flush()
    logger.info("Product created: %s", product.id)
    return _product_to_dict(product)


async def update_product(
    db: AsyncSession, bus: MessageBus, product_id: uuid.UUID, data: ProductUpdate
) -> bool:
    """
    Apply the fields set in *data* and announce the resulting stock level.

    Returns False when the product does not exist.
    """
    product = await db.get(Product, product_id)
    if product is None:
        return False

    for field, value in data.model_dump(exclude_unset=True).items():
        # An empty name would violate the create-time constraint; ignore it.
        if field == "name" and not value:
            continue
        setattr(product, field, value)
    product.updated_at = datetime.now(timezone.utc)
    await db.flush()
    await cache.invalidate(_cache_key(product_id))

    envelope = EventEnvelope(
        payload=InventoryUpdated(product_id=product.id, new_quantity=product.stock_quantity)
    )
    await bus.publish(settings.EVENTS_EXCHANGE, INVENTORY_UPDATED, envelope)
    logger.info("Product updated: %s", product_id)
    return True


async def delete_product(db: AsyncSession, product_id: uuid.UUID) -> bool:
    product = await db.get(Product, product_id)
    if product is None:
        return False

    product.is_active = False
    product.updated_at = datetime.now(timezone.utc)
    await db.flush()
    await cache.invalidate(_cache_key(product_id))
    logger.info("Product deleted: %s", product_id)
    return True
