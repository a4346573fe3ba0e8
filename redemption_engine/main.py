"""
Main FastAPI application for the Voucher Redemption & Fraud Detection Engine
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging

from sqlalchemy.exc import SQLAlchemyError

from redemption_engine.config import settings
from redemption_engine.api import fraud, redemptions, system
from redemption_engine.api.error_handlers import add_error_handlers
from redemption_engine.db import models  # noqa: F401  (registers tables)
from redemption_engine.db.database import Base, engine

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.APP_DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup
    logger.info("Starting Redemption Engine...")
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables ready")
    except SQLAlchemyError as e:
        logger.error(f"Error creating database tables: {e}")

    yield

    # Shutdown
    logger.info("Shutting down Redemption Engine...")
    engine.dispose()


app = FastAPI(
    title="Voucher Redemption & Fraud Detection Engine",
    description="Voucher redemption, offline reconciliation and fraud case review",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

add_error_handlers(app)

# Include routers
app.include_router(system.router, tags=["System"])
app.include_router(redemptions.router, prefix="/redemptions", tags=["Redemptions"])
app.include_router(fraud.router, prefix="/fraud", tags=["Fraud"])


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": "Voucher Redemption & Fraud Detection Engine",
        "version": "1.0.0",
        "status": "running"
    }
