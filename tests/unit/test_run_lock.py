"""Unit tests for the best-effort run lock."""

import pytest
import redis.asyncio as redis

from app.services.automation.run_lock import RunLock


class FakeRedis:
    """Just enough of SET NX / compare-and-delete for the lock."""

    def __init__(self, fail: bool = False):
        self.store: dict[str, str] = {}
        self.fail = fail

    async def set(self, key, value, nx=False, px=None):
        if self.fail:
            raise redis.ConnectionError("redis down")
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def eval(self, script, numkeys, key, token):
        if self.store.get(key) == token:
            del self.store[key]
            return 1
        return 0


class TestRunLock:
    @pytest.mark.asyncio
    async def test_second_holder_refused(self):
        client = FakeRedis()
        first = RunLock(client)
        second = RunLock(client)

        assert await first.acquire()
        assert not await second.acquire()

    @pytest.mark.asyncio
    async def test_release_frees_key(self):
        client = FakeRedis()
        lock = RunLock(client)

        await lock.acquire()
        await lock.release()

        assert await RunLock(client).acquire()

    @pytest.mark.asyncio
    async def test_release_keeps_other_owner(self):
        client = FakeRedis()
        owner = RunLock(client)
        await owner.acquire()
        refused = RunLock(client)
        await refused.acquire()

        await refused.release()

        assert client.store[owner.key] == owner.token

    @pytest.mark.asyncio
    async def test_fails_open_without_redis(self):
        assert await RunLock(None).acquire()
        assert await RunLock(FakeRedis(fail=True)).acquire()

    @pytest.mark.asyncio
    async def test_ttl_in_milliseconds(self):
        assert RunLock(FakeRedis(), ttl_seconds=600).ttl_ms == 600_000
