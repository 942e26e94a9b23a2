"""
Operational HTTP surface for the proxy shop: health checks and Prometheus metrics.
"""
from fastapi import FastAPI

from proxyshop.api.routes import health
from proxyshop.core.logging import configure_logging
from proxyshop.utils.metrics import router as metrics_router


configure_logging()

app = FastAPI(
    title="Proxy Shop",
    description="Health and metrics for the proxy shop workers",
    version="1.0.0",
)

# Routers
app.include_router(health.router, tags=["health"])
app.include_router(metrics_router)
