"""Tests for the Redis quota ledger wrapper without a live server."""

from canvasflow.storage.redis_cache import RedisCache


class FakeEvalClient:
    def __init__(self, results):
        self.results = list(results)
        self.calls = []

    async def eval(self, script, numkeys, *args):
        self.calls.append((script, numkeys, args))
        return self.results.pop(0)

    async def ping(self):
        return True

    async def aclose(self):
        self.closed = True


def _cache(results):
    cache = RedisCache("redis://localhost:6379/0")
    cache.client = FakeEvalClient(results)
    return cache


def _reserve(cache, **kwargs):
    kwargs.setdefault("reservation_id", "r1")
    kwargs.setdefault("seed_used", 2)
    kwargs.setdefault("limit", 3)
    kwargs.setdefault("ttl_seconds", 900)
    kwargs.setdefault("reservation_ttl_seconds", 300)
    return cache.reserve_run_slot("u1", "2024-05", **kwargs)


async def test_reserve_passes_seed_limit_and_ttls():
    cache = _cache([[1, 2]])
    acquired, observed = await _reserve(cache)
    assert (acquired, observed) == (True, 2)
    script, numkeys, args = cache.client.calls[0]
    assert script == RedisCache._RESERVE_SCRIPT
    assert numkeys == 2
    assert args[:2] == ("quota:runs:{u1:2024-05}", "quota:inflight:{u1:2024-05}")
    assert args[2:6] == (2, 3, 900, "r1")
    assert isinstance(args[6], int)
    assert args[7] == 300


async def test_reserve_blocked():
    cache = _cache([[0, 3]])
    assert await _reserve(cache, seed_used=3) == (False, 3)


async def test_commit_and_release_name_the_reservation():
    cache = _cache([3, 0])
    assert await cache.commit_run_slot("u1", "2024-05", "r1") == 3
    assert await cache.release_run_slot("u1", "2024-05", "r2") == 0
    commit, release = cache.client.calls
    assert commit[0] == RedisCache._COMMIT_SCRIPT
    assert commit[2][-1] == "r1"
    assert release[0] == RedisCache._RELEASE_SCRIPT
    assert release[2][-1] == "r2"


def test_scripts_expire_stale_reservations():
    assert "ZREMRANGEBYSCORE" in RedisCache._RESERVE_SCRIPT
    assert "ZREM" in RedisCache._COMMIT_SCRIPT
    assert "ZREM" in RedisCache._RELEASE_SCRIPT


async def test_health_and_close():
    cache = _cache([])
    assert await cache.check_health() is True
    await cache.close()
    assert cache.client.closed
