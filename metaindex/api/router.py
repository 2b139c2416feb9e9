from fastapi import APIRouter

from metaindex.api.routes import admin, health, index

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(index.router, prefix="/index", tags=["index"])
api_router.include_router(admin.router, prefix="/index/admin", tags=["admin"])
