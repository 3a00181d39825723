from fastapi import APIRouter
from convertix.api.v1 import batch, tracks

router = APIRouter()
router.include_router(tracks.router, prefix="/tracks", tags=["tracks"])
router.include_router(batch.router, prefix="/batch", tags=["batch"])
