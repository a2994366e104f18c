"""
Delivery Exceptions
===================

Custom exception types for the conversion delivery pipeline.

WHY THIS FILE EXISTS
--------------------
Provider outcomes (rate limits, revoked tokens, partial failures) are NOT
exceptions: adapters return a `SendResult` so retry classification stays an
explicit data field. Exceptions are reserved for failures that stay inside a
component:

- Credential blobs that fail authentication (vault)
- Job payloads that do not validate (worker input)
- Audit records completed twice (directory)
- The terminal marker that tells arq a job failed for good

RELATED FILES
-------------
- conversion_relay/security.py: Raises DecryptionError
- conversion_relay/services/integration_service.py: Raises SyncLogAlreadyCompletedError
- conversion_relay/workers/arq_worker.py: Raises DeliveryFailedError, InvalidDeliveryJobError
"""

from typing import Optional


class ConversionRelayError(Exception):
    """Base exception for all delivery pipeline errors."""


class DecryptionError(ConversionRelayError):
    """Stored credential blob could not be authenticated or parsed.

    The message never contains plaintext, partial or otherwise.
    """


class InvalidDeliveryJobError(ConversionRelayError):
    """A queued payload does not validate as a DeliveryJob."""


class SyncLogAlreadyCompletedError(ConversionRelayError):
    """A SyncLog received a second completion update."""


class DeliveryFailedError(ConversionRelayError):
    """Terminal delivery failure; arq records the job as failed and stops.

    Attributes:
        job_id: Idempotency key of the failed job
        error_code: Provider or pipeline error code (e.g. 190, "EXPIRED_GCLID")
        reason: "non_retryable", "attempts_exhausted" or "cancelled"
    """

    def __init__(
        self,
        message: str,
        job_id: str,
        error_code: Optional[object] = None,
        reason: str = "non_retryable",
    ):
        super().__init__(message)
        self.job_id = job_id
        self.error_code = error_code
        self.reason = reason
