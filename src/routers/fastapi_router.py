from fastapi import APIRouter, Depends

from src.data_models.schemas import ErrorResponse
from src.routers.deps import validate_api_key
from src.utils.logger import logger

from .routes_stream import router as stream_router
from .routes_voting import router as voting_router


error_responses = {code: {"model": ErrorResponse} for code in (400, 404, 409, 422, 503)}

router = APIRouter(prefix="/v1", dependencies=[Depends(validate_api_key)], responses=error_responses)

router.include_router(stream_router, tags=["results-stream"])
router.include_router(voting_router, tags=["liquid-voting"])

logger.info("Liquid voting routes mounted under /v1")
