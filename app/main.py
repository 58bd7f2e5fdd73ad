import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger
from tortoise.contrib.fastapi import RegisterTortoise

from app import settings
from app.routers.booking import router as booking_router
from app.routers.payment import router as payment_router

TORTOISE_MODULES = {"models": ["app.models"]}

logger.remove()
logger.add(sys.stderr, level=settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.environment == "production" and not settings.intasend_webhook_secret:
        logger.critical("INTASEND_WEBHOOK_SECRET not set: payment webhooks will be refused")
    async with RegisterTortoise(
        app,
        db_url=settings.db_url,
        modules=TORTOISE_MODULES,
        generate_schemas=settings.generate_schemas,
    ):
        yield


app = FastAPI(title="bookings-ms", lifespan=lifespan)
app.include_router(booking_router)
app.include_router(payment_router)
