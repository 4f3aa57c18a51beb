"""InvoiceFlow - invoice lifecycle and barcode reconciliation API"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from invoiceflow.core.config import get_settings
from invoiceflow.core.logging import configure_logging, logger
from invoiceflow.routers import admin, audit, dispatch, invoices, logs


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)
    logger.info(
        "InvoiceFlow API starting",
        version="0.1.0",
        bin_capacities=sorted(settings.plant_bin_capacities()),
        block_on_mismatch=settings.block_on_mismatch,
        auth_enabled=settings.auth_enabled,
    )
    yield
    # Shutdown
    logger.info("InvoiceFlow API shutting down")


app = FastAPI(
    title=get_settings().app_name,
    description="Invoice upload, two-label bin audit, mismatch review and vehicle dispatch with gatepasses",
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
app.include_router(invoices.router)
app.include_router(audit.router)
app.include_router(dispatch.router)
app.include_router(admin.router)
app.include_router(logs.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "InvoiceFlow API",
        "version": "0.1.0",
        "description": "Invoice lifecycle and barcode reconciliation",
        "endpoints": {
            "invoices": "/invoices",
            "audit": "/audit",
            "dispatch": "/dispatch",
            "admin": "/admin",
            "logs": "/logs",
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
