from fastapi import APIRouter
from bankfeeds.routes import mpesa, sync

api_router = APIRouter()

api_router.include_router(sync.router, prefix="/sync", tags=["sync"])
api_router.include_router(mpesa.router, prefix="/mpesa", tags=["mpesa"])
