# node_healer/api/v1/api.py
from fastapi import APIRouter
from node_healer.api.v1.endpoints import fleets

api_router = APIRouter()

# Include routers from endpoint modules
api_router.include_router(fleets.router, tags=["Fleets"])
