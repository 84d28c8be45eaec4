from contextlib import asynccontextmanager

from fastapi import FastAPI

from ecommerce.carts import router as carts
from ecommerce.carts.consumers import cart_subscriptions
from ecommerce.carts.service import cart_store
from ecommerce.config import settings
from ecommerce.logging_config import configure_logging
from ecommerce.middleware import TimingMiddleware
from ecommerce.runtime import build_runtime, health_router, instance_id_of

SERVICE_NAME = "cart-service"

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    configure_logging(settings.SERVICE_NAME or SERVICE_NAME)
    await cart_store.connect()
    runtime = app.state.runtime = build_runtime(SERVICE_NAME)
    await runtime.start(cart_subscriptions(cart_store))
    yield
    # Shutdown
    await runtime.stop()
    await cart_store.disconnect()

app = FastAPI(
    title="Cart Service",
    description="Redis-backed shopping carts, cleared when an order is placed",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(TimingMiddleware, instance_id=instance_id_of(app))

app.include_router(carts.router)
app.include_router(health_router)
