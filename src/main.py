from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from datetime import datetime, timezone

from src.config.common_settings import ALLOWED_ORIGINS
from src.routers.deps import (
    liquid_voting_error_handler,
    request_validation_error_handler,
    unhandled_error_handler,
)
from src.routers.fastapi_router import router as api_router
from src.utils.startup_validation import validate_startup
from src.utils.logger import logger
from src.voting.exceptions import LiquidVotingError

# Run startup validation
logger.info("Liquid Voting Backend starting up...")
if not validate_startup():
    logger.error("Startup validation failed. Please check configuration.")
    # Keep serving so health checks can report the problem

app = FastAPI(title="Liquid Voting Backend", version="0.1.0")

allowed_origins = [origin.strip() for origin in ALLOWED_ORIGINS.split(",") if origin.strip()]
logger.info("Allowed origins: %s", allowed_origins)

# Credentials cannot be combined with a wildcard origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials="*" not in allowed_origins,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)
logger.info("CORS middleware configured")

app.add_exception_handler(LiquidVotingError, liquid_voting_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_error_handler)
app.add_exception_handler(Exception, unhandled_error_handler)


@app.get("/healthz")
def healthz() -> dict:
    """Health check with entity store status."""
    health_status = {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}
    try:
        from src.voting.store import get_entity_store
        store_health = get_entity_store().health()
        health_status["store"] = store_health
        if store_health.get("status") != "ok":
            health_status["status"] = "degraded"
    except Exception as e:
        health_status["store"] = {"status": f"error: {str(e)[:100]}"}
        health_status["status"] = "degraded"
    return health_status


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up resources on application shutdown."""
    logger.info("Shutting down Liquid Voting Backend...")
    try:
        from src.voting.engine import reset_voting_engine
        from src.voting.store import reset_entity_store
        reset_voting_engine()
        reset_entity_store()
    except Exception as e:
        logger.warning("Error during entity store shutdown: %s", e)


# Mount API routes
app.include_router(api_router)
