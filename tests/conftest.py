"""
Pytest configuration and fixtures.

Provides shared fixtures for all tests including:
- In-memory SQLite database and the real SQL record gateway
- In-memory auth provider
- Instrumented gateway (call counting, injected failures)
- Seed helpers for profiles, societies and flats
"""

import asyncio
import itertools
from collections import Counter
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import pytest

from societyhub.core.config import Settings
from societyhub.exceptions import AccountExistsError, InvalidCredentialError
from societyhub.persistence.database import close_db, create_engine, create_session_maker, init_db
from societyhub.persistence.gateway import Record, RecordGateway, RecordPredicate
from societyhub.persistence.sql_gateway import SQLRecordGateway
from societyhub.services.auth_provider import AuthProvider, AuthSession, SessionEvent
from societyhub.services.occupancy import OccupancyCoordinator
from societyhub.services.session_resolver import SessionResolver


# Test database URL (in-memory, shared through a StaticPool)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

SOCIETY_ID = "sunrise-heights-ab12c"


# ============================================================================
# Test doubles
# ============================================================================

class FakeAuthProvider(AuthProvider):
    """
    In-memory credential backend.

    ``probe_gate`` (an asyncio.Event) blocks ``get_current_session_subject``
    until set, to simulate a backend that is slow or never answers.
    """

    def __init__(self) -> None:
        super().__init__()
        self.accounts: Dict[str, Tuple[str, str]] = {}
        self.current: Optional[AuthSession] = None
        self.probe_gate: Optional[asyncio.Event] = None
        self.calls: List[str] = []
        self._ids = itertools.count(1)

    def add_account(self, email: str, secret: str, subject: Optional[str] = None) -> str:
        subject = subject or f"user-{next(self._ids)}"
        self.accounts[email.lower()] = (subject, secret)
        return subject

    def set_session(self, subject: str, email: str = "") -> None:
        self.current = AuthSession(subject=subject, email=email)

    async def sign_in(self, email: str, secret: str) -> AuthSession:
        self.calls.append("sign_in")
        account = self.accounts.get(email.lower())
        if account is None or account[1] != secret:
            raise InvalidCredentialError("Invalid login credentials")
        self.current = AuthSession(subject=account[0], email=email.lower(), access_token="token")
        await self._emit(SessionEvent.SIGNED_IN, account[0])
        return self.current

    async def sign_up(self, email: str, secret: str, *, establish_session: bool = True) -> AuthSession:
        self.calls.append("sign_up")
        if email.lower() in self.accounts:
            raise AccountExistsError(email)
        subject = self.add_account(email, secret)
        session = AuthSession(subject=subject, email=email.lower(), access_token="token")
        if establish_session:
            self.current = session
            await self._emit(SessionEvent.SIGNED_IN, subject)
        return session

    async def sign_out(self) -> None:
        self.calls.append("sign_out")
        self.current = None
        await self._emit(SessionEvent.SIGNED_OUT, None)

    async def get_current_session_subject(self) -> Optional[str]:
        self.calls.append("get_current_session_subject")
        if self.probe_gate is not None:
            await self.probe_gate.wait()
        return self.current.subject if self.current else None

    async def emit(self, event: SessionEvent, subject: Optional[str]) -> None:
        """Simulate a notification from the backend's own refresh channel."""
        await self._emit(event, subject)


class InstrumentedGateway(RecordGateway):
    """
    Delegating gateway that counts calls and injects failures.

    ``fail_on("update", "flats", PersistenceError("boom"))`` makes the next
    matching call raise; ``times`` controls how many calls fail.
    """

    def __init__(self, inner: RecordGateway) -> None:
        self.inner = inner
        self.calls: Counter = Counter()
        self._failures: List[Dict[str, Any]] = []

    def fail_on(self, method: str, collection: str, error: Exception, times: int = 1,
                record_id: Optional[str] = None) -> None:
        self._failures.append({
            "method": method,
            "collection": collection,
            "error": error,
            "times": times,
            "record_id": record_id,
        })

    def count(self, method: str, collection: str) -> int:
        return self.calls[(method, collection)]

    def _check(self, method: str, collection: str, record_id: Optional[str] = None) -> None:
        self.calls[(method, collection)] += 1
        for failure in self._failures:
            if failure["times"] <= 0:
                continue
            if failure["method"] != method or failure["collection"] != collection:
                continue
            if failure["record_id"] is not None and failure["record_id"] != record_id:
                continue
            failure["times"] -= 1
            raise failure["error"]

    async def get(self, collection: str, record_id: str) -> Optional[Record]:
        self._check("get", collection, record_id)
        return await self.inner.get(collection, record_id)

    async def list(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        predicate: Optional[RecordPredicate] = None,
        order_by: Optional[Sequence[str]] = None,
    ) -> List[Record]:
        self._check("list", collection)
        return await self.inner.list(collection, filters=filters, predicate=predicate, order_by=order_by)

    async def insert(self, collection: str, record: Record) -> Record:
        self._check("insert", collection, record.get("id"))
        return await self.inner.insert(collection, record)

    async def update(
        self,
        collection: str,
        record_id: str,
        patch: Record,
        *,
        match: Optional[Mapping[str, Any]] = None,
    ) -> Record:
        self._check("update", collection, record_id)
        return await self.inner.update(collection, record_id, patch, match=match)

    async def delete(self, collection: str, record_id: str) -> None:
        self._check("delete", collection, record_id)
        await self.inner.delete(collection, record_id)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def test_settings() -> Settings:
    """Settings with fast timeouts and no retries."""
    return Settings(
        ENVIRONMENT="test",
        DATABASE_URL=TEST_DATABASE_URL,
        SUPABASE_URL="https://test-project.supabase.co",
        SUPABASE_KEY="anon-key",
        SESSION_WATCHDOG_TIMEOUT=0.2,
        PERSISTENCE_RETRY_ATTEMPTS=1,
        PERSISTENCE_RETRY_MAX_WAIT=0.01,
        SENTRY_DSN="",
    )


@pytest.fixture
async def db_engine(test_settings):
    """Create test database engine with all tables."""
    engine = create_engine(test_settings, url=TEST_DATABASE_URL)
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def sql_gateway(db_engine, test_settings) -> SQLRecordGateway:
    return SQLRecordGateway(create_session_maker(db_engine), config=test_settings)


@pytest.fixture
def gateway(sql_gateway) -> InstrumentedGateway:
    return InstrumentedGateway(sql_gateway)


@pytest.fixture
def auth() -> FakeAuthProvider:
    return FakeAuthProvider()


@pytest.fixture
def resolver(gateway, auth, test_settings) -> SessionResolver:
    return SessionResolver(gateway, auth, test_settings)


@pytest.fixture
def coordinator(gateway, resolver, test_settings) -> OccupancyCoordinator:
    return OccupancyCoordinator(gateway, resolver, test_settings)


# ============================================================================
# Seed helpers
# ============================================================================

async def seed_profile(
    gateway: RecordGateway,
    profile_id: str,
    email: str,
    *,
    role: str = "tenant",
    society_id: str = SOCIETY_ID,
    memberships: Optional[List[str]] = None,
    status: str = "active",
    name: str = "",
) -> Record:
    return await gateway.insert("users", {
        "id": profile_id,
        "email": email,
        "name": name or profile_id,
        "phone": "",
        "role": role,
        "societyId": society_id,
        "flatMemberships": memberships or [],
        "status": status,
    })


async def seed_flat(
    gateway: RecordGateway,
    flat_id: str,
    flat_number: str,
    *,
    society_id: str = SOCIETY_ID,
    owner_id: Optional[str] = None,
    current_tenant_id: Optional[str] = None,
    occupancy_status: str = "vacant",
) -> Record:
    return await gateway.insert("flats", {
        "id": flat_id,
        "societyId": society_id,
        "flatNumber": flat_number,
        "floor": 1,
        "bhkType": "2BHK",
        "area": 1200,
        "occupancyStatus": occupancy_status,
        "ownerId": owner_id,
        "currentTenantId": current_tenant_id,
    })


async def seed_society(gateway: RecordGateway, society_id: str = SOCIETY_ID, name: str = "Sunrise Heights") -> Record:
    return await gateway.insert("societies", {
        "id": society_id,
        "name": name,
        "totalFlats": 10,
    })
