"""API v1 router aggregating all endpoints."""

from fastapi import APIRouter

from calbridge.api.v1 import calendar

api_router = APIRouter()

api_router.include_router(calendar.router, prefix="/calendar", tags=["calendar"])
