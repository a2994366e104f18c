"""Producer helper: hash a conversion once and enqueue it per platform.

WHAT:
    Builds one DeliveryJob per target platform from a CanonicalEvent and
    enqueues each on its platform's DispatchQueue.

WHY:
    - Raw PII is hashed here, before anything reaches Redis
    - Events with no usable match keys for a platform are never enqueued

USAGE:
    results = await dispatch_conversion(event, app.state.queues)
    # {"META_CAPI": {"job_id": "meta-evt_1", "status": "enqueued"}, ...}
"""

import logging
from typing import Dict, Iterable, List, Optional

from conversion_relay.models import IntegrationTypeEnum
from conversion_relay.schemas import CanonicalEvent, DeliveryJob, EventSummary
from conversion_relay.services.google_conversions_service import has_minimum_data
from conversion_relay.services.hashing_service import hash_user_data
from conversion_relay.services.meta_capi_service import has_minimum_user_data
from conversion_relay.workers.dispatch_queue import DispatchQueue

logger = logging.getLogger(__name__)

MINIMUM_DATA_CHECKS = {
    IntegrationTypeEnum.meta_capi: has_minimum_user_data,
    IntegrationTypeEnum.google_ads: has_minimum_data,
}


def build_delivery_jobs(
    event: CanonicalEvent,
    platforms: Iterable[IntegrationTypeEnum],
    default_country_code: Optional[str] = None,
) -> List[DeliveryJob]:
    """Hash the event's user data once and build one job per platform."""
    hashed = hash_user_data(event.user_data, default_country_code, event_time=event.occurred_at)
    summary = EventSummary(
        id=event.id,
        name=event.name,
        value=event.value,
        currency=event.currency,
        occurred_at=event.occurred_at,
        page_url=event.page_url,
    )
    return [
        DeliveryJob(
            conversion_event_id=event.id,
            organization_id=event.organization_id,
            lead_id=event.lead_id,
            platform=platform,
            event=summary,
            hashed_user_data=hashed,
        )
        for platform in platforms
    ]


async def dispatch_conversion(
    event: CanonicalEvent,
    queues: Dict[IntegrationTypeEnum, DispatchQueue],
    default_country_code: Optional[str] = None,
) -> Dict[str, Dict]:
    """Enqueue the event on every given platform queue.

    Returns:
        {platform: {"job_id", "status"}} with status enqueued, duplicate or skipped
    """
    results: Dict[str, Dict] = {}

    for job in build_delivery_jobs(event, queues.keys(), default_country_code):
        if not MINIMUM_DATA_CHECKS[job.platform](job.hashed_user_data):
            logger.info(
                "[DISPATCH] Skipping %s for event %s: no usable match keys",
                job.platform.value, event.id,
            )
            results[job.platform.value] = {"job_id": None, "status": "skipped"}
            continue

        results[job.platform.value] = await queues[job.platform].enqueue(job)

    return results
