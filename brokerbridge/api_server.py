#!/usr/bin/env python3

"""
API server for BrokerBridge. Provides endpoints for broker connections,
file imports and aggregated positions.
"""

import contextlib
import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

from brokerbridge.routes.brokerbridge_routes import router as brokerbridge_router, shutdown_services  # noqa: E402


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting BrokerBridge API server...")

    yield

    logger.info("Shutting down BrokerBridge API server...")
    try:
        await shutdown_services()
    except Exception as e:
        logger.error(f"Error shutting down BrokerBridge services: {e}")


app = FastAPI(
    title="BrokerBridge API",
    description="Broker connections, position imports and cross-broker portfolio aggregation.",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(brokerbridge_router)

allowed_origins = [
    origin.strip()
    for origin in os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "brokerbridge"}


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting BrokerBridge API server for local development...")
    uvicorn.run(
        "brokerbridge.api_server:app",
        host="0.0.0.0",
        port=int(os.getenv("BIND_PORT", 8000)),
        reload=os.getenv("ENVIRONMENT", "production").lower() in ("development", "dev", "local"),
        log_level="info",
    )
