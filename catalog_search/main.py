"""
Main application entry point.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from catalog_search.api.v1.admin_endpoints import router as admin_router
from catalog_search.api.v1.dependencies import get_sync_queue, reset_dependencies
from catalog_search.api.v1.experiment_endpoints import router as experiment_router
from catalog_search.api.v1.search_endpoints import router as search_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run the index sync worker for the lifetime of the app."""
    get_sync_queue().start()
    logger.info("Catalog search API started")
    yield
    logger.info("Catalog search API shutting down")
    reset_dependencies()


app = FastAPI(
    title="Catalog Search API",
    description="Search, suggestions, ranking experiments and index synchronization for a data asset catalog.",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Include API routers
app.include_router(search_router, prefix="/api/v1", tags=["search"])
app.include_router(admin_router, prefix="/api/v1", tags=["admin"])
app.include_router(experiment_router, prefix="/api/v1", tags=["experiments"])


@app.get("/")
def read_root():
    """Root endpoint."""
    return {
        "message": "Welcome to the Catalog Search API",
        "docs": "/docs",
        "health": "/api/v1/health"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("catalog_search.main:app", host="0.0.0.0", port=8000, reload=True)
