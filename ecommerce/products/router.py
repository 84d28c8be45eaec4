import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from ecommerce.database import get_db
from ecommerce.dependencies import ProductSearchParams, get_message_bus
from ecommerce.errors import TransportError
from ecommerce.messaging.bus import MessageBus
from ecommerce.products import service as product_service
from ecommerce.products.schemas import ProductCreate, ProductPage, ProductResponse, ProductUpdate

router = APIRouter(prefix="/api/products", tags=["products"])

@router.get("", response_model=ProductPage)
async def list_products(
    params: ProductSearchParams = Depends(),
    db: AsyncSession = Depends(get_db),
):
    return await product_service.search_products(db, params)

@router.get("/categories", response_model=list[str])
async def list_categories(db: AsyncSession = Depends(get_db)):
    return await product_service.get_categories(db)

@router.get("/{product_id}", response_model=ProductResponse)
async def get_product(product_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    product = await product_service.get_product(db, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product

@router.post("", status_code=201, response_model=ProductResponse)
async def create_product(data: ProductCreate, db: AsyncSession = Depends(get_db)):
    return await product_service.create_product(db, data)

@router.put("/{product_id}", status_code=204)
async def update_product(
    product_id: uuid.UUID,
    data: ProductUpdate,
    db: AsyncSession = Depends(get_db),
    bus: MessageBus = Depends(get_message_bus),
):
    try:
        updated = await product_service.update_product(db, bus, product_id, data)
    except TransportError:
        raise HTTPException(status_code=503, detail="Event bus unavailable, update not applied")
    if not updated:
        raise HTTPException(status_code=404, detail="Product not found")

@router.delete("/{product_id}", status_code=204)
async def delete_product(product_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    deleted = await product_service.delete_product(db, product_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Product not found")
