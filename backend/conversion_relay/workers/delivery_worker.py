"""Per-attempt delivery processing.

WHAT:
    Runs one attempt of one DeliveryJob: cancellation and attempt-limit checks,
    integration lookup, adapter call, and the bookkeeping that follows
    (integration status, sync log, retention, signals).

WHY:
    - Keeps arq glue thin: arq only decides *when* an attempt runs,
      this module decides *what* the attempt means
    - Testable without Redis: the queue and directory are injected

FLOW:
    cancelled? ──▶ failed (CANCELLED)
    past limit?  ─▶ failed (exhausted)
    no integration ─▶ failed (NO_ACTIVE_INTEGRATION)
    adapter.send ──▶ success ─────────────▶ completed
                 └─▶ retryable + attempts left ─▶ retry (backoff)
                 └─▶ otherwise ────────────▶ failed (dead-letter + signals)
    adapter.send over send_timeout ─▶ retryable TIMEOUT
    database / Redis error ─▶ retry while attempts remain, then failed (exhausted)

REFERENCES:
    - conversion_relay/services/integration_service.py
    - conversion_relay/services/platform_adapter.py
    - conversion_relay/workers/dispatch_queue.py
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from conversion_relay.exceptions import ConversionRelayError
from conversion_relay.models import IntegrationStatusEnum, IntegrationTypeEnum, SyncStatusEnum
from conversion_relay.schemas import DeliveryJob
from conversion_relay.services.integration_service import IntegrationDirectory
from conversion_relay.services.platform_adapter import PlatformAdapter, SendResult
from conversion_relay.telemetry import capture_exception
from conversion_relay.workers.dispatch_queue import (
    SIGNAL_COMPLETED,
    SIGNAL_FAILED,
    SIGNAL_RETRIES_EXHAUSTED,
    DispatchQueue,
    backoff_delay,
)

logger = logging.getLogger(__name__)

NO_ACTIVE_INTEGRATION = "NO_ACTIVE_INTEGRATION"
CANCELLED = "CANCELLED"
UNEXPECTED_ERROR = "UNEXPECTED_ERROR"
INFRASTRUCTURE_ERROR = "INFRASTRUCTURE_ERROR"
TIMEOUT = "TIMEOUT"

# Caps one adapter call; must stay well under the arq job_timeout
SEND_TIMEOUT_SECONDS = 70

REASON_NON_RETRYABLE = "non_retryable"
REASON_ATTEMPTS_EXHAUSTED = "attempts_exhausted"
REASON_CANCELLED = "cancelled"

STATUS_COMPLETED = "completed"
STATUS_RETRY = "retry"
STATUS_FAILED = "failed"


@dataclass
class DeliveryOutcome:
    """What the arq glue should do with an attempt."""
    status: str  # completed | retry | failed
    result: Optional[SendResult] = None
    retry_in: Optional[float] = None
    reason: Optional[str] = None

    @property
    def error(self) -> Optional[str]:
        return self.result.error if self.result else None

    @property
    def error_code(self) -> Optional[str]:
        return self.result.error_code if self.result else None


class DeliveryProcessor:
    """Processes delivery attempts for one platform.

    Built once per worker process; holds only injected, shareable state.
    """

    def __init__(
        self,
        platform: IntegrationTypeEnum,
        adapter: PlatformAdapter,
        directory: IntegrationDirectory,
        queue: DispatchQueue,
        send_timeout: float = SEND_TIMEOUT_SECONDS,
    ):
        self.platform = platform
        self.send_timeout = send_timeout
        self.adapter = adapter
        self.directory = directory
        self.queue = queue

    @property
    def max_attempts(self) -> int:
        return self.queue.options.max_attempts

    async def process(self, job: DeliveryJob, attempt: int) -> DeliveryOutcome:
        """Run attempt number `attempt` (1-based) of a job.

        Database, Redis and timeout errors never escape: they become a retry
        while attempts remain and a terminal `attempts_exhausted` failure after.
        Providers dedupe on the event id, so re-sending after a bookkeeping
        error is safe.
        """
        try:
            return await self._attempt(job, attempt)
        except ConversionRelayError:
            raise
        except Exception as e:
            return await self._handle_infrastructure_error(job, attempt, e)

    async def _attempt(self, job: DeliveryJob, attempt: int) -> DeliveryOutcome:
        job_id = job.idempotency_key
        logger.info("[DELIVERY] %s attempt %s/%s", job_id, attempt, self.max_attempts)

        cancelled = await self.queue.is_cancelled(job_id)
        integration = await asyncio.to_thread(
            self.directory.get_active_integration, job.organization_id, self.platform
        )
        integration_id = integration.id if integration else None

        if cancelled:
            logger.info("[DELIVERY] %s was cancelled, not sending", job_id)
            result = SendResult.fail("Delivery cancelled", CANCELLED)
            return await self._fail_terminal(job, attempt - 1, result, REASON_CANCELLED, integration_id)

        if attempt > self.max_attempts:
            # Crash-recovered re-run of a job whose last attempt already ran
            logger.warning("[DELIVERY] %s re-run past its %s attempts", job_id, self.max_attempts)
            result = SendResult.fail("Delivery attempts exhausted", "ATTEMPTS_EXHAUSTED")
            return await self._fail_terminal(
                job, self.max_attempts, result, REASON_ATTEMPTS_EXHAUSTED, integration_id
            )

        if integration is None:
            logger.error(
                "[DELIVERY] No active %s integration for organization %s, failing %s",
                self.platform.value, job.organization_id, job_id,
            )
            result = SendResult.fail(
                f"No active {self.platform.value} integration for organization",
                NO_ACTIVE_INTEGRATION,
            )
            return await self._fail_terminal(job, attempt, result, REASON_NON_RETRYABLE, integration_id=None)

        log_id = await asyncio.to_thread(self.directory.open_sync_log, integration.id, job_id)

        try:
            result = await asyncio.wait_for(
                self.adapter.send(integration.credentials, job, integration.settings),
                timeout=self.send_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("[DELIVERY] %s adapter call exceeded %ss", job_id, self.send_timeout)
            result = SendResult.fail(
                f"Delivery attempt timed out after {self.send_timeout}s", TIMEOUT, retryable=True
            )
        except Exception as e:
            logger.exception("[DELIVERY] Adapter raised for %s: %s", job_id, e)
            capture_exception(e, extra={"job_id": job_id, "platform": self.platform.value, "attempt": attempt})
            result = SendResult.fail(f"Unexpected error: {type(e).__name__}", UNEXPECTED_ERROR, retryable=True)

        if result.success:
            return await self._complete(job, integration.id, log_id, result)

        if result.is_retryable and attempt < self.max_attempts:
            delay = backoff_delay(self.queue.options, attempt)
            logger.warning(
                "[DELIVERY] %s attempt %s failed (%s), retrying in %ss",
                job_id, attempt, result.error_code, delay,
            )
            return DeliveryOutcome(status=STATUS_RETRY, result=result, retry_in=delay)

        reason = REASON_ATTEMPTS_EXHAUSTED if result.is_retryable else REASON_NON_RETRYABLE
        return await self._fail_terminal(job, attempt, result, reason, integration.id, log_id)

    async def _handle_infrastructure_error(self, job: DeliveryJob, attempt: int, error: Exception) -> DeliveryOutcome:
        """Turn a database, Redis or timeout error into a retry or a terminal failure."""
        job_id = job.idempotency_key
        logger.exception("[DELIVERY] Infrastructure error on %s attempt %s: %s", job_id, attempt, error)
        capture_exception(error, extra={"job_id": job_id, "platform": self.platform.value, "attempt": attempt})
        result = SendResult.fail(
            f"Infrastructure error: {type(error).__name__}", INFRASTRUCTURE_ERROR, retryable=True
        )

        if attempt < self.max_attempts:
            delay = backoff_delay(self.queue.options, attempt)
            logger.warning("[DELIVERY] %s will retry in %ss after infrastructure error", job_id, delay)
            return DeliveryOutcome(status=STATUS_RETRY, result=result, retry_in=delay)

        attempts = min(attempt, self.max_attempts)
        integration_id = None
        try:
            integration = await asyncio.to_thread(
                self.directory.get_active_integration, job.organization_id, self.platform
            )
            integration_id = integration.id if integration else None
        except Exception as lookup_error:
            logger.error("[DELIVERY] %s integration lookup failed again: %s", job_id, lookup_error)

        if integration_id is not None:
            try:
                return await self._fail_terminal(job, attempts, result, REASON_ATTEMPTS_EXHAUSTED, integration_id)
            except Exception as bookkeeping_error:
                logger.error("[DELIVERY] %s could not close its sync log: %s", job_id, bookkeeping_error)
        return await self._fail_terminal(job, attempts, result, REASON_ATTEMPTS_EXHAUSTED)

    async def _complete(self, job: DeliveryJob, integration_id, log_id, result: SendResult) -> DeliveryOutcome:
        job_id = job.idempotency_key
        accepted = result.provider_events_accepted if result.provider_events_accepted is not None else 1

        await asyncio.to_thread(
            self.directory.update_integration_status, integration_id, IntegrationStatusEnum.active, None
        )
        await asyncio.to_thread(
            self.directory.complete_sync_log,
            log_id,
            SyncStatusEnum.completed,
            records_processed=accepted,
            metadata={"trace_id": result.trace_id, "event_id": job.event.id},
        )
        await self.queue.record_completed(job_id)
        await self.queue.emit(SIGNAL_COMPLETED, job_id=job_id, trace_id=result.trace_id)

        logger.info("[DELIVERY] %s delivered (%s accepted)", job_id, accepted)
        return DeliveryOutcome(status=STATUS_COMPLETED, result=result)

    async def _fail_terminal(
        self,
        job: DeliveryJob,
        attempts: int,
        result: SendResult,
        reason: str,
        integration_id=None,
        log_id=None,
    ) -> DeliveryOutcome:
        """Record a terminal failure: integration, sync log, dead-letter, signals."""
        job_id = job.idempotency_key
        job = job.model_copy(update={"retry_count": max(attempts - 1, 0)})

        if integration_id is not None:
            if result.requires_attention:
                await asyncio.to_thread(
                    self.directory.update_integration_status,
                    integration_id, IntegrationStatusEnum.error, result.error,
                )
            else:
                await asyncio.to_thread(self.directory.record_error, integration_id, result.error)

            if log_id is None:
                log_id = await asyncio.to_thread(self.directory.open_sync_log, integration_id, job_id)
            await asyncio.to_thread(
                self.directory.complete_sync_log,
                log_id,
                SyncStatusEnum.failed,
                records_failed=1,
                error=result.error,
                metadata={
                    "error_code": result.error_code,
                    "attempts": attempts,
                    "reason": reason,
                    "trace_id": result.trace_id,
                },
            )

        await self.queue.record_failed(job, result.error, result.error_code, attempts, reason)
        await self.queue.emit(
            SIGNAL_FAILED, job_id=job_id, error=result.error, error_code=result.error_code, attempts=attempts,
        )
        await self.queue.emit(
            SIGNAL_RETRIES_EXHAUSTED,
            job_id=job_id, reason=reason, error_code=result.error_code, attempts=attempts,
        )

        return DeliveryOutcome(status=STATUS_FAILED, result=result, reason=reason)
