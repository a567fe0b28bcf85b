from fastapi import APIRouter
from app.api.v1.routes import price_changes, approvals, product_price_changes, scheduler

api_router = APIRouter()

api_router.include_router(price_changes.router, tags=["price-changes"])
api_router.include_router(approvals.router, prefix="/approvals", tags=["approvals"])
api_router.include_router(product_price_changes.router, tags=["product-price-changes"])
api_router.include_router(scheduler.router, prefix="/scheduler", tags=["scheduler"])
