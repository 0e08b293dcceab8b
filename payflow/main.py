import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Import all models to ensure they're registered with SQLAlchemy Base
from . import (
    models,  # noqa: F401
    models_mercadopago,  # noqa: F401
    models_whatsapp,  # noqa: F401
)
from .database import Base, engine
from .routes.automation import router as automation_router
from .routes.checkout import router as checkout_router
from .routes.mercadopago_webhooks import router as mercadopago_webhooks_router
from .routes.subscriptions import router as subscriptions_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        # Ignore "already exists" errors from race conditions between workers
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"Failed to create database tables: {e}")

    yield

    logger.info("Application shutting down...")


app = FastAPI(title="PayFlow API", version="1.0.0", lifespan=lifespan)


# CORS Configuration
ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    "http://localhost:5173,http://localhost:3000",
).split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Routes
app.include_router(mercadopago_webhooks_router)
app.include_router(checkout_router)
app.include_router(subscriptions_router)
app.include_router(automation_router)


@app.get("/")
def root():
    return {"message": "PayFlow API is running"}


@app.get("/health")
def health():
    return {"status": "healthy"}
