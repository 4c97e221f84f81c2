from fastapi import APIRouter
from pantry_scanner.api.endpoints import auth, receipts

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(auth.router)
api_router.include_router(receipts.router)
