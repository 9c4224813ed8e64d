import json

import redis

from sitegen.usage import UsageCounter, UsageRecord


def record(success=True, tokens=100, cost=0.01):
    return UsageRecord(generation_id="gen_1", success=success, cost=cost, tokens=tokens, models=["m1"])


def test_file_counter_accumulates(tmp_path):
    path = tmp_path / "usage.json"
    counter = UsageCounter(path=str(path), redis_url="")
    counter.record(record())
    counter.record(record(success=False, tokens=50, cost=0.02))

    totals = counter.totals()
    assert totals["generations"] == 2
    assert totals["failures"] == 1
    assert totals["tokens"] == 150
    assert abs(totals["cost"] - 0.03) < 1e-9
    assert json.loads(path.read_text())["generations"] == 2


def test_corrupt_file_starts_from_zero(tmp_path):
    path = tmp_path / "usage.json"
    path.write_text("{not json")
    counter = UsageCounter(path=str(path), redis_url="")
    assert counter.totals()["generations"] == 0
    counter.record(record())
    assert counter.totals()["generations"] == 1


class DownPipeline:
    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise redis.ConnectionError("redis is down")

        return fail


class DownRedis:
    def pipeline(self):
        return DownPipeline()

    def hgetall(self, key):
        raise redis.ConnectionError("redis is down")


def test_redis_failure_falls_back_to_file(tmp_path):
    counter = UsageCounter(path=str(tmp_path / "usage.json"), redis_url="")
    counter._client = DownRedis()
    counter.record(record(tokens=7))
    totals = counter.totals()
    assert totals["generations"] == 1
    assert totals["tokens"] == 7
