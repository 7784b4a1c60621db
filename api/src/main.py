"""
DrillX API - trigger surface and live-update channels of the execution engine.
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.src.config import get_settings
from api.src.routes import execution_router, health_router, realtime_router
from engine.src.services.orchestrator import Orchestrator

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

settings = get_settings()

def create_app(orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info("Starting DrillX API")
        app.state.orchestrator = orchestrator or Orchestrator.from_settings()
        yield
        # Shutdown
        logger.info("Shutting down DrillX API")
        await app.state.orchestrator.shutdown()

    app = FastAPI(
        title="DrillX",
        description="Disaster-recovery drill execution engine",
        version="0.1.0",
        lifespan=lifespan
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(health_router)
    app.include_router(execution_router, prefix="/api")
    app.include_router(realtime_router)

    @app.get("/")
    async def root():
        return {
            "name": "DrillX",
            "version": "0.1.0",
            "docs": "/docs"
        }

    return app

app = create_app()

def main():
    """Main entry point."""
    logger.info(f"Listening on {settings.api_host}:{settings.api_port}")
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)

if __name__ == "__main__":
    main()
