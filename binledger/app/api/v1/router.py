from fastapi import APIRouter

from binledger.app.api.v1.endpoints.deductions import router as deductions_router
from binledger.app.api.v1.endpoints.stock_movements import router as stock_movements_router

router = APIRouter()
router.include_router(deductions_router, tags=["deductions"])
router.include_router(stock_movements_router, tags=["stock_movements"])
