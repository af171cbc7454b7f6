"""
FastAPI application entry point.
Configures routes, middleware, and lifecycle events.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.database import close_db
from app.errors import PaymentError
from app.logging_config import configure_logging
import logging

from app.api.orders import router as orders_router
from app.api.payments import router as payments_router
from app.api.webhooks.razorpay import router as razorpay_router


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifecycle manager."""
    configure_logging()
    logging.info(f"Starting up {settings.app_name}...")

    yield

    await close_db()
    logging.info("Shutting down...")


app = FastAPI(
    title="KartPay",
    description="Order and payment service (Razorpay + cash on delivery)",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    logging.info(f"{request.method} {request.url.path} -> {exc.kind}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Global Exception Handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logging.error(f"Global exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"status": "error", "message": "Internal Server Error"},
    )


origins = []
if settings.is_development:
    origins.append("*")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "app": settings.app_name,
        "env": settings.app_env,
    }


app.include_router(
    orders_router,
    prefix="/orders",
    tags=["orders"],
)
app.include_router(
    payments_router,
    prefix="/payments",
    tags=["payments"],
)
app.include_router(
    razorpay_router,
    prefix="/webhooks",
    tags=["webhooks"],
)
