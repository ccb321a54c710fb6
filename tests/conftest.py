import os
import tempfile
from datetime import datetime

import pytest
import pytest_asyncio


os.environ.setdefault('DATABASE_URL', 'sqlite+aiosqlite:///:memory:')
os.environ.setdefault('LOG_FILE', os.path.join(tempfile.gettempdir(), 'cycle_engine_tests', 'cycle_engine.log'))

from cycle_engine.database.crud.subscriber import get_subscriber_by_id  # noqa: E402
from cycle_engine.database.database import build_engine, build_session_factory, init_db  # noqa: E402
from cycle_engine.database.models import Plan, Subscriber  # noqa: E402


T0 = datetime(2025, 1, 15, 12, 0, 0)

GB = 1024**3


@pytest.fixture
def now() -> datetime:
    return T0


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = build_engine(f'sqlite+aiosqlite:///{tmp_path / "cycle_engine.db"}')
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def create_plan(session_factory):
    async def _create(**fields) -> Plan:
        fields.setdefault('name', 'Plan')
        async with session_factory() as db:
            plan = Plan(**fields)
            db.add(plan)
            await db.commit()
            return plan

    return _create


@pytest.fixture
def create_subscriber(session_factory):
    async def _create(**fields) -> Subscriber:
        fields.setdefault('used_upload', 0)
        fields.setdefault('used_download', 0)
        fields.setdefault('traffic_quota', 0)
        async with session_factory() as db:
            subscriber = Subscriber(**fields)
            db.add(subscriber)
            await db.commit()
            return subscriber

    return _create


@pytest.fixture
def load_subscriber(session_factory):
    async def _load(subscriber_id: int) -> Subscriber:
        async with session_factory() as db:
            return await get_subscriber_by_id(db, subscriber_id)

    return _load
