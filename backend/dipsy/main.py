"""Dipsy - Dispatch Assistant API"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from dipsy.core.config import get_settings
from dipsy.core.logging import configure_logging, logger
from dipsy.routers import dipsy, telegram, whatsapp
from dipsy.services.dipsy import dipsy_service


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info(
        "Dipsy API starting",
        version="0.1.0",
        model=settings.dipsy_model,
        assistant_ready=dipsy_service.is_ready(),
        telegram_enabled=settings.telegram_enabled(),
        whatsapp_enabled=settings.whatsapp_enabled(),
    )
    yield
    # Shutdown
    logger.info("Dipsy API shutting down")


app = FastAPI(
    title="Dipsy API",
    description="Tool-calling dispatch assistant for trucking TMS operations",
    version="0.1.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(dipsy.router)
app.include_router(telegram.router)
app.include_router(whatsapp.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Dipsy API",
        "version": "0.1.0",
        "description": "Dispatch assistant for loads, drivers and proof of delivery",
        "endpoints": {
            "dipsy": "/dipsy",
            "telegram": "/telegram/webhook",
            "whatsapp": "/whatsapp/webhook",
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "assistant_ready": dipsy_service.is_ready()}
