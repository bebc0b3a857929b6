"""API v1 router - aggregates all endpoint routers."""

from fastapi import APIRouter

from cannes.api.v1 import admin, rankings, titles

api_router = APIRouter()

api_router.include_router(rankings.router, prefix="/rankings", tags=["rankings"])
api_router.include_router(titles.router, prefix="/titles", tags=["titles"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
