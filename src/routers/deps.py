from typing import Dict, List, Optional

from fastapi import Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.config import common_settings
from src.data_models.schemas import ErrorResponse
from src.utils.logger import logger
from src.voting.engine import VotingEngine, get_voting_engine
from src.voting.exceptions import (
    LiquidVotingError,
    MissingOrganizationError,
    ValidationError,
    classify_exception,
)


def _required_api_key() -> Optional[str]:
    return common_settings.REQUIRED_API_KEY


def validate_api_key(authorization: Optional[str] = Header(None)) -> None:
    """Enforce the bearer token when LIQUID_VOTING_TOKEN is configured."""
    required = _required_api_key()
    if not required:
        return
    if not authorization or not authorization.startswith("Bearer "):
        logger.warning("Router: missing or malformed Authorization header")
        raise HTTPException(status_code=401, detail={
            "error": {
                "kind": "unauthorized",
                "message": "You didn't provide an API key.",
                "details": {},
            }
        })
    token_value = authorization.split("Bearer ")[-1].strip()
    if token_value != required:
        logger.warning("Router: incorrect API key provided")
        raise HTTPException(status_code=401, detail={
            "error": {
                "kind": "unauthorized",
                "message": "Incorrect API key provided.",
                "details": {},
            }
        })


def get_organization_id(x_organization_id: Optional[str] = Header(None)) -> str:
    """Organization scope of the request; the engine never defaults it."""
    if x_organization_id is None or not x_organization_id.strip():
        raise MissingOrganizationError()
    return x_organization_id.strip()


def get_engine() -> VotingEngine:
    return get_voting_engine()


def _error_response(error: LiquidVotingError) -> JSONResponse:
    body = ErrorResponse(error=error.to_dict())
    return JSONResponse(status_code=error.code, content=body.model_dump())


async def liquid_voting_error_handler(request: Request, exc: LiquidVotingError) -> JSONResponse:
    return _error_response(exc)


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render FastAPI body/query validation failures as a structured ValidationError."""
    details: Dict[str, List[str]] = {}
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "header", "path")]
        field = ".".join(loc) or "request"
        details.setdefault(field, []).append(err.get("msg", "is invalid"))
    return _error_response(ValidationError("Invalid request data", details=details))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort for faults that escaped the engine's own error types."""
    logger.error("Router: unhandled error on %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
    return _error_response(classify_exception(exc))
