from fastapi import FastAPI
from contextlib import asynccontextmanager
import logging

from checkout_core.presentation.api import router
from checkout_core.database import engine, create_tables

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle"""
    await create_tables(engine)
    logger.info("Tables ready")

    yield

    await engine.dispose()
    logger.info("Application stopped")

app = FastAPI(
    title="Checkout Service",
    description="Checkout to order: inventory, order numbers, payment confirmation, audit history",
    version="1.0.0",
    lifespan=lifespan
)

app.include_router(router, prefix="/api")


@app.get("/health")
async def health():
    return {"status": "healthy"}
