"""API v1 router."""

from fastapi import APIRouter

from identity_service.api.v1.endpoints import auth

api_router = APIRouter()

api_router.include_router(auth.router, prefix="/auth")
