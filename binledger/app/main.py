import logging

from fastapi import FastAPI

from binledger.app.api.errors import register_exception_handlers
from binledger.app.api.v1.router import router as v1_router
from binledger.app.core.config import settings

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="BIN Ledger", version="0.1.0")
register_exception_handlers(app)
app.include_router(v1_router, prefix="/v1")
