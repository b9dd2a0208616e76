from fastapi import APIRouter

from brickyard_api.api.routes import cleanup, datasets, dispatches, health, jobs, reconcile

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(cleanup.router, prefix="/jobs/cleanup", tags=["cleanup"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
api_router.include_router(datasets.router, prefix="/datasets", tags=["datasets"])
api_router.include_router(reconcile.router, prefix="/reconcile", tags=["reconcile"])
api_router.include_router(dispatches.router, prefix="/dispatches", tags=["worker"])
