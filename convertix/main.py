import logging

from fastapi import FastAPI

from convertix.api.v1.router import router as v1_router
from convertix.core import settings

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

app = FastAPI(title="convertix API", version="0.1.0")
app.include_router(v1_router, prefix="/v1")
