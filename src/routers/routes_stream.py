import json
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse

from src.config.common_settings import SUBSCRIPTION_KEEPALIVE_SECONDS
from src.data_models.schemas import VotingResult
from src.routers.deps import get_engine, get_organization_id
from src.utils.logger import logger
from src.voting.engine import VotingEngine


router = APIRouter()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _result_event(result: VotingResult) -> str:
    return "event: voting_result\n" + "data: " + result.model_dump_json() + "\n\n"


@router.get("/results/stream")
async def stream_result_changes(
    proposal_url: str,
    organization_id: str = Depends(get_organization_id),
    engine: VotingEngine = Depends(get_engine),
):
    """
    Server-sent events for one proposal's VotingResult.

    The current result is sent first, then one event per change. There is
    no replay of changes that happened before the connection was opened.
    """
    # Subscribe before reading so no change can fall between the two
    subscription = engine.subscribe(proposal_url, organization_id)
    try:
        current = await run_in_threadpool(engine.get_result, proposal_url, organization_id)
    except Exception:
        subscription.close()
        raise

    async def event_stream():
        logger.info("STREAMING: subscriber attached to %s (org=%s)", proposal_url, organization_id)
        try:
            yield _result_event(current)
            while True:
                result = await subscription.get(timeout=SUBSCRIPTION_KEEPALIVE_SECONDS)
                if result is None:
                    yield ": keep-alive " + json.dumps({"timestamp": _now_iso()}) + "\n\n"
                    continue
                yield _result_event(result)
        finally:
            subscription.close()
            logger.info("STREAMING: subscriber detached from %s (org=%s)", proposal_url, organization_id)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )
