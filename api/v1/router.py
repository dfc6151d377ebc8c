from __future__ import annotations

from fastapi import APIRouter

from api.v1.endpoints import appointments as appointments_endpoints


api_router = APIRouter()

api_router.include_router(appointments_endpoints.router)
