"""Integration Directory: credential lookup and sync health bookkeeping.

WHAT:
    Resolves the ACTIVE integration (with decrypted credentials) for an
    organization + platform, and records the outcome of every delivery
    attempt on the integration row and in the sync log.

WHY:
    - Keeps decryption and persistence out of the workers
    - Decrypted credentials only ever exist in the returned object, for the
      duration of one adapter call; nothing here logs or stores them

STORE CONTRACT:
    Three narrow operations on the storage engine: read the active
    integration by org + type, update integration status, create/complete
    sync logs. All methods are synchronous; async callers wrap them in
    `asyncio.to_thread`.

REFERENCES:
    - conversion_relay/security.py (CredentialVault)
    - conversion_relay/workers/delivery_worker.py (caller)
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Type
from uuid import UUID

from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session, sessionmaker

from conversion_relay.exceptions import DecryptionError, SyncLogAlreadyCompletedError
from conversion_relay.models import (
    Integration,
    IntegrationStatusEnum,
    IntegrationTypeEnum,
    SyncLog,
    SyncStatusEnum,
)
from conversion_relay.schemas import GoogleAdsCredentials, IntegrationWithCredentials, MetaCredentials
from conversion_relay.security import CredentialVault

logger = logging.getLogger(__name__)

CREDENTIAL_MODELS: Dict[IntegrationTypeEnum, Type[BaseModel]] = {
    IntegrationTypeEnum.meta_capi: MetaCredentials,
    IntegrationTypeEnum.google_ads: GoogleAdsCredentials,
}

UNREADABLE_CREDENTIALS_ERROR = "Stored credentials could not be decrypted. Please reconnect."

ERROR_MAX_LENGTH = 1000


def _truncate(error: Optional[str]) -> Optional[str]:
    if error is None:
        return None
    return error[:ERROR_MAX_LENGTH]


class IntegrationDirectory:
    """Directory of per-organization platform integrations.

    Usage:
        ```python
        directory = IntegrationDirectory(SessionLocal, CredentialVault.from_env())
        integration = directory.get_active_integration("org_1", IntegrationTypeEnum.meta_capi)
        if integration:
            send(integration.credentials, job)
        ```
    """

    def __init__(self, session_factory: sessionmaker, vault: CredentialVault):
        self._session_factory = session_factory
        self._vault = vault

    def get_active_integration(
        self,
        organization_id: str,
        integration_type: IntegrationTypeEnum,
    ) -> Optional[IntegrationWithCredentials]:
        """Return the single ACTIVE integration with decrypted credentials.

        Returns None (never raises) when:
            - no ACTIVE integration exists
            - more than one ACTIVE integration exists (configuration error)
            - the credentials fail to decrypt or validate; the integration is
              then flagged ERROR and a FAILED sync log is written
        """
        db = self._session_factory()
        try:
            integrations = (
                db.query(Integration)
                .filter(
                    Integration.organization_id == organization_id,
                    Integration.type == integration_type,
                    Integration.status == IntegrationStatusEnum.active,
                )
                .limit(2)
                .all()
            )

            if not integrations:
                logger.debug(
                    "[INTEGRATIONS] No active %s integration for organization %s",
                    integration_type.value, organization_id,
                )
                return None

            if len(integrations) > 1:
                logger.error(
                    "[INTEGRATIONS] Multiple active %s integrations for organization %s; "
                    "refusing to pick one (deactivate all but one)",
                    integration_type.value, organization_id,
                )
                return None

            integration = integrations[0]
            integration_id = integration.id
            label = f"{integration_type.value}:{integration_id}"

            try:
                raw = self._vault.decrypt(integration.credentials, context=label)
                credentials = CREDENTIAL_MODELS[integration_type].model_validate(raw)
            except (DecryptionError, ValidationError) as exc:
                # Log the integration id and error class only; a ValidationError
                # message can echo credential values.
                logger.error(
                    "[INTEGRATIONS] Unusable credentials for integration %s (%s)",
                    integration_id, type(exc).__name__,
                )
                db.rollback()
            else:
                return IntegrationWithCredentials(
                    id=integration_id,
                    organization_id=integration.organization_id,
                    type=integration.type,
                    status=integration.status,
                    credentials=credentials,
                    settings=integration.settings or {},
                )
        finally:
            db.close()

        # Credential error: surface it on the integration and in the audit log
        self.update_integration_status(
            integration_id, IntegrationStatusEnum.error, UNREADABLE_CREDENTIALS_ERROR
        )
        self.create_sync_log(
            integration_id,
            SyncStatusEnum.failed,
            records_failed=0,
            error=UNREADABLE_CREDENTIALS_ERROR,
            metadata={"reason": "credentials_unreadable"},
            completed_at=datetime.utcnow(),
        )
        return None

    def update_integration_status(
        self,
        integration_id: UUID,
        status: IntegrationStatusEnum,
        error: Optional[str] = None,
    ) -> None:
        """Set status, stamp last_sync_at and replace last_error (None clears it)."""
        db = self._session_factory()
        try:
            integration = db.get(Integration, integration_id)
            if integration is None:
                logger.warning("[INTEGRATIONS] Integration %s vanished before status update", integration_id)
                return

            integration.status = status
            integration.last_sync_at = datetime.utcnow()
            integration.last_error = _truncate(error)
            db.commit()

            logger.info(
                "[INTEGRATIONS] Integration %s status=%s error=%s",
                integration_id, status.value, "yes" if error else "none",
            )
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def record_error(self, integration_id: UUID, error: str) -> None:
        """Stamp last_error and last_sync_at without touching status."""
        db = self._session_factory()
        try:
            integration = db.get(Integration, integration_id)
            if integration is None:
                return
            integration.last_sync_at = datetime.utcnow()
            integration.last_error = _truncate(error)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def create_sync_log(
        self,
        integration_id: UUID,
        status: SyncStatusEnum,
        *,
        records_processed: int = 0,
        records_failed: int = 0,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        completed_at: Optional[datetime] = None,
        job_id: Optional[str] = None,
    ) -> UUID:
        """Append a sync log row and return its id."""
        db = self._session_factory()
        try:
            log = SyncLog(
                integration_id=integration_id,
                job_id=job_id,
                status=status,
                started_at=datetime.utcnow(),
                records_processed=records_processed,
                records_failed=records_failed,
                error=_truncate(error),
                metadata_=metadata,
                completed_at=completed_at,
            )
            db.add(log)
            db.commit()
            return log.id
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def open_sync_log(self, integration_id: UUID, job_id: str) -> UUID:
        """Return the RUNNING log for this job, creating it on the first attempt.

        WHY: A job retried five times still gets a single audit record.
        """
        db = self._session_factory()
        try:
            existing = (
                db.query(SyncLog.id)
                .filter(
                    SyncLog.integration_id == integration_id,
                    SyncLog.job_id == job_id,
                    SyncLog.status == SyncStatusEnum.running,
                )
                .order_by(SyncLog.started_at.desc())
                .first()
            )
        finally:
            db.close()

        if existing:
            return existing[0]
        return self.create_sync_log(integration_id, SyncStatusEnum.running, job_id=job_id)

    def complete_sync_log(
        self,
        log_id: UUID,
        status: SyncStatusEnum,
        *,
        records_processed: int = 0,
        records_failed: int = 0,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Apply the single completion update to a RUNNING sync log.

        Raises:
            SyncLogAlreadyCompletedError: If the log was already completed
            ValueError: If asked to "complete" into RUNNING
        """
        if status == SyncStatusEnum.running:
            raise ValueError("A sync log can only be completed as COMPLETED or FAILED.")

        db: Session = self._session_factory()
        try:
            log = db.get(SyncLog, log_id)
            if log is None:
                raise ValueError(f"Sync log {log_id} not found.")
            if log.status != SyncStatusEnum.running or log.completed_at is not None:
                raise SyncLogAlreadyCompletedError(f"Sync log {log_id} is already {log.status.value}.")

            log.status = status
            log.completed_at = datetime.utcnow()
            log.records_processed = records_processed
            log.records_failed = records_failed
            log.error = _truncate(error)
            if metadata:
                log.metadata_ = {**(log.metadata_ or {}), **metadata}
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
