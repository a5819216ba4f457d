"""
API v1 Router Module

All v1 endpoints are prefixed with /api/v1/

- /api/v1/images/* - Upload, realtime updates, task history and requeue
- /api/v1/metrics  - Prometheus scrape endpoint
"""

from fastapi import APIRouter

from erazor.api.v1.images import router as images_router
from erazor.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(images_router, prefix="/images", tags=["images"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
