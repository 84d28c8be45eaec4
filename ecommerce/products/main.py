from contextlib import asynccontextmanager

from fastapi import FastAPI

from ecommerce.cache import cache
from ecommerce.config import settings
from ecommerce.database import async_session, create_schema
from ecommerce.logging_config import configure_logging
from ecommerce.middleware import TimingMiddleware
from ecommerce.products import router as products
from ecommerce.products.seed import seed_products
from ecommerce.runtime import build_runtime, health_router, instance_id_of

SERVICE_NAME = "product-service"

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    configure_logging(settings.SERVICE_NAME or SERVICE_NAME)
    await create_schema()
    if settings.SEED_DATA:
        async with async_session() as session:
            await seed_products(session)
    await cache.connect()  # Reads fall back to the database without Redis
    runtime = app.state.runtime = build_runtime(SERVICE_NAME)
    await runtime.start()
    yield
    # Shutdown
    await runtime.stop()
    await cache.disconnect()

app = FastAPI(
    title="Product Service",
    description="Product catalogue with cache-aside reads and inventory events",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(TimingMiddleware, instance_id=instance_id_of(app))

app.include_router(products.router)
app.include_router(health_router)
