"""ARQ async workers - one per ad platform queue.

WHAT:
    The `deliver_conversion` job function plus Meta CAPI and Google Ads
    worker settings. Each worker consumes only its own platform queue.

WHY:
    - ARQ provides async job processing, exclusive claims and deferred retries
    - Per-platform workers scale and fail independently
    - Clean separation: this module maps outcomes onto ARQ, the
      DeliveryProcessor holds the delivery logic

ARCHITECTURE:
    ┌─────────────────┐   delegates to   ┌───────────────────┐    ┌──────────────┐
    │  arq_worker.py  │─────────────────▶│ DeliveryProcessor │───▶│ adapter.send │
    │  (orchestrator) │                  │ (attempt logic)   │    └──────────────┘
    └─────────────────┘                  └───────────────────┘
                                                  │
                                                  ▼
                                       ┌─────────────────────┐
                                       │ Integration / SyncLog│
                                       └─────────────────────┘

USAGE:
    # Start a worker
    arq conversion_relay.workers.arq_worker.MetaCapiWorkerSettings
    arq conversion_relay.workers.arq_worker.GoogleAdsWorkerSettings

    # Or use the start script
    python -m conversion_relay.workers.start_arq_worker meta

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - conversion_relay/workers/delivery_worker.py
    - conversion_relay/workers/dispatch_queue.py
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict

import httpx
from arq import Retry
from pydantic import ValidationError

from conversion_relay.database import create_session_factory
from conversion_relay.exceptions import DeliveryFailedError, InvalidDeliveryJobError
from conversion_relay.models import IntegrationTypeEnum
from conversion_relay.schemas import DeliveryJob
from conversion_relay.security import CredentialVault
from conversion_relay.services.google_conversions_service import AccessTokenCache
from conversion_relay.services.integration_service import IntegrationDirectory
from conversion_relay.services.platform_adapter import get_adapter
from conversion_relay.telemetry import init_sentry
from conversion_relay.utils.env import GOOGLE_ADS_ENV, load_env_file, warn_missing_env
from conversion_relay.workers.delivery_worker import (
    STATUS_COMPLETED,
    STATUS_RETRY,
    DeliveryProcessor,
)
from conversion_relay.workers.dispatch_queue import (
    GOOGLE_ADS_QUEUE,
    META_CAPI_QUEUE,
    DispatchQueue,
    QueueOptions,
    get_redis_settings,
)

logger = logging.getLogger(__name__)

MAX_CONCURRENT_JOBS = 5
JOB_TIMEOUT_SECONDS = 120


# =============================================================================
# DELIVERY JOB
# =============================================================================

async def deliver_conversion(ctx: Dict, payload: Dict[str, Any]) -> Dict:
    """Deliver one conversion to the worker's platform.

    Args:
        ctx: ARQ context (holds the processor built at startup)
        payload: DeliveryJob as JSON

    Returns:
        Summary dict on success

    Raises:
        Retry: Retryable failure with attempts left (deferred by backoff)
        DeliveryFailedError: Terminal failure; ARQ records a failed result
        InvalidDeliveryJobError: Payload is not a valid job for this worker
    """
    processor: DeliveryProcessor = ctx["processor"]
    attempt = ctx.get("job_try", 1)

    try:
        job = DeliveryJob.model_validate(payload)
    except ValidationError as e:
        logger.error("[ARQ] Invalid delivery payload for %s: %s error(s)", ctx.get("job_id"), e.error_count())
        raise InvalidDeliveryJobError(f"Invalid delivery payload: {e.error_count()} validation error(s)") from None

    if job.platform != processor.platform:
        raise InvalidDeliveryJobError(
            f"{job.platform.value} job on the {processor.platform.value} worker"
        )

    outcome = await processor.process(job, attempt)

    if outcome.status == STATUS_RETRY:
        raise Retry(defer=outcome.retry_in)

    if outcome.status == STATUS_COMPLETED:
        return {
            "success": True,
            "job_id": job.idempotency_key,
            "events_accepted": outcome.result.provider_events_accepted,
            "trace_id": outcome.result.trace_id,
        }

    raise DeliveryFailedError(
        outcome.error or "Delivery failed",
        job_id=job.idempotency_key,
        error_code=outcome.error_code,
        reason=outcome.reason,
    )


# =============================================================================
# WORKER LIFECYCLE
# =============================================================================

def _build_startup(options: QueueOptions):
    async def startup(ctx: Dict) -> None:
        """Worker startup - build process-wide state once and log config."""
        import platform

        load_env_file()
        init_sentry(component=f"worker:{options.platform.value}")
        if options.platform == IntegrationTypeEnum.google_ads:
            warn_missing_env(GOOGLE_ADS_ENV, "Google Ads worker")

        logger.info("=" * 60)
        logger.info(f"[ARQ] {options.platform.value} delivery worker starting up")
        logger.info("=" * 60)
        logger.info(f"[ARQ] Python: {platform.python_version()}")
        logger.info(f"[ARQ] Host: {platform.node()}")
        logger.info(f"[ARQ] Queue: {options.queue_name}")
        logger.info(f"[ARQ] Max concurrent jobs: {MAX_CONCURRENT_JOBS}")
        logger.info(f"[ARQ] Attempts: {options.max_attempts} (backoff base {options.backoff_base_seconds}s)")
        logger.info("=" * 60)

        vault = CredentialVault.from_env()
        directory = IntegrationDirectory(create_session_factory(), vault)
        http_client = httpx.AsyncClient()
        adapter = get_adapter(options.platform, http_client, token_cache=AccessTokenCache())
        queue = DispatchQueue(ctx["redis"], options)

        ctx["http_client"] = http_client
        ctx["queue"] = queue
        ctx["processor"] = DeliveryProcessor(options.platform, adapter, directory, queue)
        ctx["startup_time"] = datetime.now(timezone.utc)
        ctx["jobs_processed"] = 0

    return startup


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - close the HTTP client and log stats."""
    http_client = ctx.get("http_client")
    if http_client is not None:
        await http_client.aclose()

    jobs = ctx.get("jobs_processed", 0)
    uptime = datetime.now(timezone.utc) - ctx.get("startup_time", datetime.now(timezone.utc))

    logger.info("=" * 60)
    logger.info("[ARQ] Worker shutting down")
    logger.info(f"[ARQ] Jobs processed: {jobs}")
    logger.info(f"[ARQ] Uptime: {uptime}")
    logger.info("=" * 60)


async def on_job_end(ctx: Dict) -> None:
    """Called after each job attempt."""
    ctx["jobs_processed"] = ctx.get("jobs_processed", 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class MetaCapiWorkerSettings:
    """ARQ worker configuration for the Meta CAPI queue.

    - max_jobs=5: bounded concurrency against the Graph API
    - job_timeout=120: bounds a whole attempt; the adapter call itself is capped at 70s
    - max_tries=max_attempts + 1: the extra try lets a crash-recovered
      re-run finalize the job instead of ARQ dropping it silently
    - keep_result: a finished job id stays reserved, so re-enqueues dedupe
    """

    functions = [deliver_conversion]

    on_startup = _build_startup(META_CAPI_QUEUE)
    on_shutdown = shutdown
    after_job_end = on_job_end

    redis_settings = get_redis_settings()

    max_jobs = MAX_CONCURRENT_JOBS
    job_timeout = JOB_TIMEOUT_SECONDS
    keep_result = META_CAPI_QUEUE.keep_completed_seconds
    retry_jobs = True
    max_tries = META_CAPI_QUEUE.max_attempts + 1
    health_check_interval = 30

    queue_name = META_CAPI_QUEUE.queue_name


class GoogleAdsWorkerSettings:
    """ARQ worker configuration for the Google Ads queue (same limits as Meta)."""

    functions = [deliver_conversion]

    on_startup = _build_startup(GOOGLE_ADS_QUEUE)
    on_shutdown = shutdown
    after_job_end = on_job_end

    redis_settings = get_redis_settings()

    max_jobs = MAX_CONCURRENT_JOBS
    job_timeout = JOB_TIMEOUT_SECONDS
    keep_result = GOOGLE_ADS_QUEUE.keep_completed_seconds
    retry_jobs = True
    max_tries = GOOGLE_ADS_QUEUE.max_attempts + 1
    health_check_interval = 30

    queue_name = GOOGLE_ADS_QUEUE.queue_name
