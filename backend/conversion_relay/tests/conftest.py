"""Pytest configuration for delivery pipeline tests

WHAT: Shared fixtures: SQLite-backed directory, credential vault, an in-memory
      stand-in for the ARQ Redis pool, and httpx MockTransport clients
WHY: Lets worker, queue and adapter tests run without Postgres, Redis or network
REFERENCES:
    - conversion_relay/services/integration_service.py
    - conversion_relay/workers/dispatch_queue.py
"""

import fnmatch
import os
import time
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Callable

import httpx
import pytest

# Set test environment
TEST_ENCRYPTION_KEY = "0123456789abcdef" * 4
os.environ.setdefault("ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")

from conversion_relay.database import create_session_factory
from conversion_relay.models import Base, Integration, IntegrationStatusEnum, IntegrationTypeEnum
from conversion_relay.schemas import DeliveryJob, EventSummary, HashedUserData
from conversion_relay.security import CredentialVault
from conversion_relay.services.integration_service import IntegrationDirectory
from conversion_relay.workers.dispatch_queue import GOOGLE_ADS_QUEUE, META_CAPI_QUEUE, DispatchQueue


META_CREDENTIALS = {"pixelId": "123456", "accessToken": "EAAB-test-token"}
GOOGLE_CREDENTIALS = {
    "customerId": "123-456-7890",
    "refreshToken": "1//refresh-token",
    "conversionActionId": "555",
}


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def session_factory(tmp_path):
    """File-backed SQLite so worker threads share one database."""
    factory = create_session_factory(f"sqlite:///{tmp_path / 'relay.db'}")
    Base.metadata.create_all(bind=factory.kw["bind"])
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def vault():
    return CredentialVault(bytes.fromhex(TEST_ENCRYPTION_KEY))


@pytest.fixture
def directory(session_factory, vault):
    return IntegrationDirectory(session_factory, vault)


@pytest.fixture
def seed_integration(session_factory, vault):
    """Factory: insert an integration and return its id."""

    def _seed(
        organization_id="org_1",
        integration_type=IntegrationTypeEnum.meta_capi,
        credentials=None,
        status=IntegrationStatusEnum.active,
        settings=None,
        raw_credentials=None,
    ):
        if credentials is None:
            credentials = META_CREDENTIALS if integration_type == IntegrationTypeEnum.meta_capi else GOOGLE_CREDENTIALS
        blob = raw_credentials if raw_credentials is not None else vault.encrypt(credentials)

        db = session_factory()
        try:
            integration = Integration(
                organization_id=organization_id,
                type=integration_type,
                name=f"{integration_type.value} test",
                status=status,
                credentials=blob,
                settings=settings,
            )
            db.add(integration)
            db.commit()
            return integration.id
        finally:
            db.close()

    return _seed


# ============================================================================
# Job Fixtures
# ============================================================================

@pytest.fixture
def make_job() -> Callable[..., DeliveryJob]:
    """Factory: a DeliveryJob with sensible defaults, overridable per field."""

    def _make(platform=IntegrationTypeEnum.meta_capi, event_id="evt_1", name="signup_complete", user_data=None):
        hashed = user_data if user_data is not None else {
            "email_hash": "a" * 64,
            "gclid": "CjwKCAjw-test-gclid",
        }
        return DeliveryJob(
            conversion_event_id=event_id,
            organization_id="org_1",
            lead_id="lead_1",
            platform=platform,
            event=EventSummary(
                id=event_id,
                name=name,
                value=49.0,
                currency="AUD",
                occurred_at=datetime(2024, 1, 15, 3, 30, tzinfo=timezone.utc),
                page_url="https://example.com/signup",
            ),
            hashed_user_data=HashedUserData(**hashed),
        )

    return _make


# ============================================================================
# Redis / ARQ Fixtures
# ============================================================================

def _bound(value):
    if isinstance(value, (int, float)):
        return float(value), True
    value = str(value)
    if value == "-inf":
        return float("-inf"), True
    if value == "+inf":
        return float("inf"), True
    if value.startswith("("):
        return float(value[1:]), False
    return float(value), True


def _in_range(score, low, high):
    lo, lo_inc = _bound(low)
    hi, hi_inc = _bound(high)
    above = score >= lo if lo_inc else score > lo
    below = score <= hi if hi_inc else score < hi
    return above and below


class FakeArqPool:
    """In-memory stand-in for ArqRedis covering the calls DispatchQueue makes.

    `enqueue_job` mirrors ARQ's contract: a job id already known (queued,
    running or retained) returns None.
    """

    def __init__(self):
        self.strings = {}
        self.zsets = {}
        self.hashes = {}
        self.job_ids = set()
        self.enqueued = []

    async def enqueue_job(self, function, *args, _job_id=None, _queue_name="arq:queue", _defer_by=None, **kwargs):
        if _job_id in self.job_ids:
            return None
        self.job_ids.add(_job_id)
        score = int(time.time() * 1000) + int((_defer_by or 0) * 1000)
        self.zsets.setdefault(_queue_name, {})[_job_id] = score
        self.enqueued.append(SimpleNamespace(function=function, args=args, job_id=_job_id, queue_name=_queue_name))
        return SimpleNamespace(job_id=_job_id)

    async def set(self, key, value, ex=None):
        self.strings[key] = value
        return True

    async def exists(self, *keys):
        return sum(1 for key in keys if key in self.strings)

    async def scan_iter(self, match="*"):
        for key in list(self.strings):
            if fnmatch.fnmatchcase(key, match):
                yield key.encode()

    async def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def zcard(self, key):
        return len(self.zsets.get(key, {}))

    async def zcount(self, key, low, high):
        return sum(1 for score in self.zsets.get(key, {}).values() if _in_range(score, low, high))

    async def zrangebyscore(self, key, low, high):
        members = self.zsets.get(key, {})
        return [m for m, s in sorted(members.items(), key=lambda kv: kv[1]) if _in_range(s, low, high)]

    async def zremrangebyscore(self, key, low, high):
        members = self.zsets.get(key, {})
        doomed = [m for m, s in members.items() if _in_range(s, low, high)]
        for member in doomed:
            del members[member]
        return len(doomed)

    async def zremrangebyrank(self, key, start, stop):
        members = self.zsets.get(key, {})
        ordered = [m for m, _ in sorted(members.items(), key=lambda kv: kv[1])]
        n = len(ordered)
        start = start + n if start < 0 else start
        stop = stop + n if stop < 0 else stop
        doomed = ordered[max(start, 0):stop + 1] if stop >= 0 else []
        for member in doomed:
            del members[member]
        return len(doomed)

    async def zrevrange(self, key, start, stop):
        members = self.zsets.get(key, {})
        ordered = [m for m, _ in sorted(members.items(), key=lambda kv: kv[1], reverse=True)]
        return ordered[start:stop + 1]

    async def hset(self, key, field, value):
        self.hashes.setdefault(key, {})[field] = value
        return 1

    async def hdel(self, key, *fields):
        table = self.hashes.get(key, {})
        return sum(1 for field in fields if table.pop(field, None) is not None)

    async def hmget(self, key, fields):
        table = self.hashes.get(key, {})
        return [table.get(field) for field in fields]


@pytest.fixture
def fake_pool():
    return FakeArqPool()


@pytest.fixture
def meta_queue(fake_pool):
    return DispatchQueue(fake_pool, META_CAPI_QUEUE)


@pytest.fixture
def google_queue(fake_pool):
    return DispatchQueue(fake_pool, GOOGLE_ADS_QUEUE)


# ============================================================================
# HTTP Fixtures
# ============================================================================

@pytest.fixture
def mock_http():
    """Factory: an httpx.AsyncClient whose requests go to `handler` and are recorded."""

    def _client(handler):
        requests = []

        def _record(request: httpx.Request):
            requests.append(request)
            return handler(request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(_record))
        client.requests = requests
        return client

    return _client
