from sitegen import ratelimit
from sitegen.redis_ratelimit import RedisRateLimiter


def test_in_process_window(monkeypatch):
    ratelimit._reset()
    monkeypatch.setattr(ratelimit, "MAX_REQUESTS", 2)
    assert ratelimit.check_and_increment("gen", "client")[:2] == (True, 1)
    assert ratelimit.check_and_increment("gen", "client")[:2] == (True, 0)
    allowed, remaining, reset_ts = ratelimit.check_and_increment("gen", "client")
    assert (allowed, remaining) == (False, 0)
    assert reset_ts > 0
    # Buckets and clients are independent
    assert ratelimit.check_and_increment("img", "client")[0]
    assert ratelimit.check_and_increment("gen", "other")[0]
    ratelimit._reset()


class FakePipeline:
    def __init__(self, store):
        self.store = store
        self.ops = []

    def incr(self, key, amount):
        self.ops.append(("incr", key, amount))

    def expire(self, key, seconds):
        self.ops.append(("expire", key, seconds))

    def execute(self):
        results = []
        for op in self.ops:
            if op[0] == "incr":
                self.store[op[1]] = self.store.get(op[1], 0) + op[2]
                results.append(self.store[op[1]])
            else:
                results.append(True)
        return results


class FakeRedis:
    def __init__(self):
        self.store = {}

    def pipeline(self):
        return FakePipeline(self.store)


def test_redis_limiter_fixed_window():
    client = FakeRedis()
    limiter = RedisRateLimiter("redis://unused", window_seconds=60, max_requests=2, client=client)
    now = 1_000_020
    assert limiter.check_and_increment("gen", "1.2.3.4", now=now) == (True, 1, 1_000_080)
    assert limiter.check_and_increment("gen", "1.2.3.4", now=now + 1) == (True, 0, 1_000_080)
    assert limiter.check_and_increment("gen", "1.2.3.4", now=now + 2) == (False, 0, 1_000_080)
    # Next window starts fresh
    assert limiter.check_and_increment("gen", "1.2.3.4", now=now + 60)[0]
    assert "sitegen:rl:gen:1.2.3.4:1000020" in client.store
