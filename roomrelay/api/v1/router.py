"""Main router for API v1."""

from fastapi import APIRouter

from roomrelay.api.v1.routes.webhook import router as webhook_router

api_router = APIRouter()

api_router.include_router(webhook_router, tags=["webhook"])
