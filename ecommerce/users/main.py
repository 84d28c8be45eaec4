from contextlib import asynccontextmanager

from fastapi import FastAPI

from ecommerce.config import settings
from ecommerce.database import create_schema
from ecommerce.logging_config import configure_logging
from ecommerce.middleware import TimingMiddleware
from ecommerce.runtime import build_runtime, health_router, instance_id_of
from ecommerce.users import router as users

SERVICE_NAME = "user-service"

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    configure_logging(settings.SERVICE_NAME or SERVICE_NAME)
    await create_schema()
    runtime = app.state.runtime = build_runtime(SERVICE_NAME)
    await runtime.start()
    yield
    # Shutdown
    await runtime.stop()

app = FastAPI(
    title="User Service",
    description="Account registration, login and profiles",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(TimingMiddleware, instance_id=instance_id_of(app))

app.include_router(users.router)
app.include_router(health_router)
