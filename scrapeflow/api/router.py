from fastapi import APIRouter

from scrapeflow.api.routes import health, jobs

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(jobs.router, tags=["jobs"])
