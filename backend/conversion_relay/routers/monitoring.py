"""Queue monitoring endpoints.

WHAT:
    Read-only HTTP view of the dispatch queues: per-platform counts and the
    dead-letter store.

WHY:
    - Ops visibility into backlog and failures without Redis access
    - Routers stay thin; counts come from DispatchQueue

REFERENCES:
    - conversion_relay/workers/dispatch_queue.py
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from conversion_relay.models import IntegrationTypeEnum
from conversion_relay.schemas import QueueStats
from conversion_relay.workers.dispatch_queue import DispatchQueue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/monitoring", tags=["Monitoring"])


def get_queues(request: Request) -> Dict[IntegrationTypeEnum, DispatchQueue]:
    """Queues opened by the app lifespan."""
    return request.app.state.queues


@router.get("/queues", response_model=Dict[str, QueueStats])
async def queue_stats(
    queues: Dict[IntegrationTypeEnum, DispatchQueue] = Depends(get_queues),
) -> Dict[str, QueueStats]:
    """Counts per platform queue (waiting, active, completed, failed, delayed)."""
    stats = {platform.value: await queue.stats() for platform, queue in queues.items()}
    logger.debug("[MONITORING] Queue stats requested")
    return stats


@router.get("/queues/{platform}/dead-letters")
async def dead_letters(
    platform: IntegrationTypeEnum,
    limit: int = Query(50, ge=1, le=500),
    queues: Dict[IntegrationTypeEnum, DispatchQueue] = Depends(get_queues),
) -> List[Dict[str, Any]]:
    """Most recent terminally failed jobs for one platform (hashed data only)."""
    queue = queues.get(platform)
    if queue is None:
        raise HTTPException(status_code=404, detail=f"No queue for {platform.value}")
    return await queue.dead_letters(limit)
