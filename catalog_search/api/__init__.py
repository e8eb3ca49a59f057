"""HTTP layer - FastAPI routers over the domain services."""
