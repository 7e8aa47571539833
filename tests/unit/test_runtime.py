import pytest

from app.config import Settings
from app.jobs import runtime


class FakePool:
    def __init__(self, name):
        self.name = name
        self.closed = False

    async def initialize(self):
        pass

    async def close(self):
        self.closed = True

    async def health_check(self):
        return {"healthy": True, "service": self.name, "connection_time_ms": 1.5}


class BrokenRedis:
    def __init__(self, url):
        self.url = url

    async def initialize(self):
        raise RuntimeError("Redis initialization failed")

    async def close(self):
        raise AssertionError("never initialized, must not be closed")


@pytest.mark.asyncio
async def test_runtime_opens_and_closes_requested_services(monkeypatch):
    pools = {}

    def fake_create_supabase_pool(config):
        pools["supabase"] = FakePool("supabase")
        return pools["supabase"]

    monkeypatch.setattr(runtime, "create_supabase_pool", fake_create_supabase_pool)

    async with runtime.worker_runtime(supabase=True, config=Settings(_env_file=None)) as rt:
        assert rt.supabase_pool is pools["supabase"]
        assert rt.radius_pool is None
        assert rt.redis is None

    assert pools["supabase"].closed is True


@pytest.mark.asyncio
async def test_runtime_cleans_up_when_startup_fails(monkeypatch):
    pool = FakePool("supabase")
    monkeypatch.setattr(runtime, "create_supabase_pool", lambda config: pool)
    monkeypatch.setattr(runtime, "RedisClient", BrokenRedis)

    with pytest.raises(RuntimeError):
        async with runtime.worker_runtime(
            supabase=True, redis=True, config=Settings(_env_file=None, REDIS_URL="redis://x")
        ):
            pass

    assert pool.closed is True
