from datetime import datetime, timedelta, timezone

import pytest

from approval_engine.config import Settings
from approval_engine.domain import EntityType
from approval_engine.engine import build_engine
from approval_engine.events import RecordingEventSink
from approval_engine.schemas.chain import ChainCreate
from approval_engine.services.role_resolver import DirectoryUser, StaticRoleResolver
from approval_engine.store.memory import InMemoryApprovalStore

TENANT = "tenant-1"
OTHER_TENANT = "tenant-2"
REQUESTER = "requester-1"


class FakeClock:
    """Callable clock the engine reads instead of the wall clock."""

    def __init__(self, start: datetime = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def settings():
    return Settings(
        ENVIRONMENT="test",
        ESCALATION_SCAN_ENABLED=False,
        INTERNAL_JOB_SECRET="test-secret",
        MAX_CONFLICT_RETRIES=3,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryApprovalStore()


@pytest.fixture
def directory():
    return StaticRoleResolver(
        [
            DirectoryUser("mgr-1", TENANT, "MANAGER"),
            DirectoryUser("mgr-2", TENANT, "MANAGER"),
            DirectoryUser("admin-1", TENANT, "ADMIN"),
            DirectoryUser("fin-1", TENANT, "FINANCE"),
            DirectoryUser("fin-2", TENANT, "FINANCE"),
            DirectoryUser(REQUESTER, TENANT, "EMPLOYEE"),
            DirectoryUser("outsider", OTHER_TENANT, "MANAGER"),
        ]
    )


@pytest.fixture
def sink():
    return RecordingEventSink()


@pytest.fixture
def engine(store, directory, sink, settings, clock):
    return build_engine(store, directory, sink, settings=settings, clock=clock)


@pytest.fixture
def create_chain(engine):
    """Factory: create_chain(*LevelSpec, entity_type=..., is_default=..., tenant_id=...)."""

    async def _create(
        *levels,
        entity_type: EntityType = EntityType.CONTRACT,
        is_default: bool = True,
        tenant_id: str = TENANT,
        name: str = "Contract approvals",
    ):
        return await engine.create_chain(
            tenant_id,
            ChainCreate(
                name=name,
                entity_type=entity_type,
                is_default=is_default,
                levels=list(levels),
            ),
        )

    return _create
