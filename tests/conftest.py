import io
import pytest
from typing import AsyncGenerator
from unittest.mock import AsyncMock

from httpx import AsyncClient, ASGITransport
from PIL import Image

from erazor.core.database import create_db_and_tables, create_worker_session_maker
from erazor.core.storage import LocalStorage
from erazor.integrations.billing import CustomerState
from erazor.modules.imagery.repositories import ImageTaskRepository
from erazor.realtime.hub import RealtimeHub


class FakePipeline:
    """Queues commands and runs them in order on execute()."""

    def __init__(self, redis):
        self.redis = redis
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.commands = []
        return False

    def set(self, *args, **kwargs):
        self.commands.append(("set", args, kwargs))
        return self

    def incr(self, *args, **kwargs):
        self.commands.append(("incr", args, kwargs))
        return self

    async def execute(self):
        results = []
        for name, args, kwargs in self.commands:
            results.append(await getattr(self.redis, name)(*args, **kwargs))
        self.commands = []
        return results


class FakeRedis:
    """In-memory stand-in for the redis.asyncio commands the service uses."""

    def __init__(self):
        self.store = {}
        self.ttls = {}
        self.published = []

    async def get(self, key):
        return self.store.get(key)

    async def mget(self, keys):
        return [self.store.get(key) for key in keys]

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = str(value)
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def incr(self, key):
        value = int(self.store.get(key, 0)) + 1
        self.store[key] = str(value)
        return value

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

    async def ping(self):
        return True

    async def aclose(self):
        return None

    def pipeline(self, transaction=True):
        return FakePipeline(self)


def make_png(size=(4, 4), fmt="PNG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, (10, 200, 30)).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    return LocalStorage(base_path=str(tmp_path / "storage"))


@pytest.fixture
def hub() -> RealtimeHub:
    return RealtimeHub(queue_size=10)


@pytest.fixture
def billing() -> AsyncMock:
    client = AsyncMock()
    client.get_subscription_state.return_value = CustomerState()
    return client


@pytest.fixture
async def session_factory(tmp_path):
    engine, maker = create_worker_session_maker(f"sqlite+aiosqlite:///{tmp_path}/tasks.db")
    await create_db_and_tables(engine)
    yield maker
    await engine.dispose()


@pytest.fixture
def task_repo(session_factory) -> ImageTaskRepository:
    return ImageTaskRepository(session_factory)


@pytest.fixture
def job_queue() -> AsyncMock:
    queue = AsyncMock()
    queue.enqueue.side_effect = lambda job: job.id
    return queue


@pytest.fixture
async def client(fake_redis, billing, storage, task_repo, job_queue, hub) -> AsyncGenerator[AsyncClient, None]:
    # Lifespan is not run: it would connect to a real Redis
    from erazor.main import app
    from erazor.api.dependencies import (
        get_identity_resolver,
        get_job_queue,
        get_realtime_hub,
        get_task_repository,
    )
    from erazor.core.storage import get_storage
    from erazor.integrations.identity import IdentityResolver

    app.state.redis = fake_redis
    app.state.billing = billing
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_task_repository] = lambda: task_repo
    app.dependency_overrides[get_job_queue] = lambda: job_queue
    app.dependency_overrides[get_realtime_hub] = lambda: hub
    app.dependency_overrides[get_identity_resolver] = lambda: IdentityResolver(
        public_key=TEST_JWT_SECRET, algorithm="HS256"
    )

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


TEST_JWT_SECRET = "test-secret"


def bearer(subject: str) -> dict:
    from jose import jwt
    token = jwt.encode({"sub": subject}, TEST_JWT_SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def auth_headers():
    return bearer
