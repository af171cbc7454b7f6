#!/usr/bin/env python3
"""Startup script for the API server."""
import uvicorn

from app.config import settings

if __name__ == "__main__":
    print(f"Starting {settings.app_name} API on {settings.host}:{settings.port} ({settings.app_env})")
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level=settings.log_level.lower(),
    )
