import json

import pytest
from fastapi.testclient import TestClient

from sitegen import config, ratelimit
from sitegen import main as main_mod
from sitegen.errors import TransientProviderError
from sitegen.main import app
from sitegen.orchestrator import Orchestrator
from sitegen.retry import RetryPolicy
from sitegen.schemas import default_global_styles
from sitegen.usage import UsageCounter

from tests.fakes import FakeProvider, no_sleep

client = TestClient(app)

EMPTY_SITE = '{"id":"s1","pages":[]}'


@pytest.fixture(autouse=True)
def fresh_rate_limits():
    ratelimit._reset()
    yield
    ratelimit._reset()


@pytest.fixture
def fake_pipeline(monkeypatch, tmp_path):
    def install(responses):
        for task in list(config.TASKS):
            monkeypatch.setitem(config.TASKS, task, "m1")
        monkeypatch.setitem(config.FALLBACK_CHAINS, "m1", ["m2"])
        provider = FakeProvider(responses)
        usage = UsageCounter(path=str(tmp_path / "usage.json"), redis_url="")
        monkeypatch.setattr(main_mod, "get_usage_counter", lambda: usage)
        monkeypatch.setattr(
            main_mod,
            "get_orchestrator",
            lambda: Orchestrator(provider, usage_sink=usage, policy=RetryPolicy(max_retries=0), sleep=no_sleep),
        )
        return provider

    return install


def valid_site():
    return {
        "id": "s1",
        "name": "Acme",
        "pages": [],
        "globalStyles": default_global_styles(),
        "navigation": {"main": []},
        "metadata": {"createdAt": "2024-01-01T00:00:00Z", "updatedAt": "2024-01-01T00:00:00Z", "version": "1.0.0"},
    }


def test_health():
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}
    assert r.headers.get("X-Request-ID")


def test_request_id_is_echoed():
    r = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert r.headers["X-Request-ID"] == "req-123"


def test_llm_status_shape():
    r = client.get("/llm/status")
    assert r.status_code == 200
    body = r.json()
    assert body["provider"] == "litellm"
    assert "has_token" in body
    assert body["fallback"]["health"] in ("healthy", "degraded", "critical")


def test_llm_models_upstream_failure(monkeypatch):
    class DownGateway:
        async def list_models(self):
            raise TransientProviderError("gateway down")

    monkeypatch.setattr(main_mod, "get_gateway", lambda: DownGateway())
    r = client.get("/llm/models")
    assert r.status_code == 502
    assert r.json()["error"]["code"] == "PROVIDER_UNAVAILABLE"


def test_validate_success():
    r = client.post("/validate", json={"site": valid_site()})
    assert r.status_code == 200
    detail = r.json()["detail"]
    assert detail["valid"] is True
    assert detail["autoFixed"] is False


def test_validate_repairs_missing_blocks():
    site = valid_site()
    del site["navigation"]
    del site["id"]
    r = client.post("/validate", json={"site": site})
    assert r.status_code == 200
    detail = r.json()["detail"]
    assert detail["autoFixed"] is True
    assert detail["data"]["navigation"] == {"main": []}
    assert all(i["severity"] == "info" for i in detail["issues"])


def test_validate_failure_lists_errors():
    site = valid_site()
    site["globalStyles"]["shadows"] = "dramatic"
    r = client.post("/validate", json={"site": site, "strict": True})
    assert r.status_code == 422
    detail = r.json()["detail"]
    assert detail["valid"] is False
    assert detail["errors"][0]["path"] == "globalStyles.shadows"
    assert detail["errors"][0]["severity"] == "error"


def test_validate_against_custom_json_schema():
    schema = {"type": "object", "required": ["title"], "properties": {"title": {"type": "string", "maxLength": 5}}}
    r = client.post("/validate", json={"site": {"title": "Too long a title"}, "schema": schema})
    assert r.status_code == 200
    assert r.json()["detail"]["data"]["title"] == "To..."

    r = client.post("/validate", json={"site": {}, "schema": {"type": 12}})
    assert r.status_code == 400


def test_generate_ok(fake_pipeline):
    fake_pipeline({"m1": "not json", "m2": EMPTY_SITE})
    r = client.post("/generate", json={"prompt": "Create a SaaS landing page for TaskFlow"})
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["stage"] == "complete"
    assert body["payload"]["id"] == "s1"
    assert body["metadata"]["attemptedModels"] == ["m1", "m2"]
    assert body["requestId"] == r.headers["X-Request-ID"]
    assert r.headers["X-RateLimit-Limit"] == str(ratelimit.MAX_REQUESTS)

    usage = client.get("/metrics/usage").json()
    assert usage["generations"] == 1
    assert usage["failures"] == 0


def test_generate_failure_is_502(fake_pipeline):
    fake_pipeline({"m1": "nope", "m2": "nope"})
    r = client.post("/generate", json={"prompt": "A bakery"})
    assert r.status_code == 502
    body = r.json()
    assert body["success"] is False
    assert body["payload"] is None
    assert body["error"]["code"] == "FALLBACK_EXHAUSTED"
    assert body["metadata"]["failedStage"] == "context_analysis"


def test_generate_deadline_is_504(fake_pipeline):
    fake_pipeline({"m1": EMPTY_SITE})
    r = client.post("/generate", json={"prompt": "A bakery", "timeout": 0.000001})
    assert r.status_code == 504
    assert r.json()["error"]["code"] == "CANCELLED"


def test_generate_rejects_empty_prompt():
    r = client.post("/generate", json={"prompt": ""})
    assert r.status_code == 422


def test_stream_returns_ndjson(fake_pipeline):
    fake_pipeline({"m1": EMPTY_SITE})
    r = client.post("/generate/stream", json={"prompt": "A portfolio for a photographer"})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("application/x-ndjson")

    lines = [json.loads(line) for line in r.text.splitlines() if line.strip()]
    assert lines[0]["event"] == "meta"
    assert lines[0]["generation_id"].startswith("gen_")
    progress = [l["data"]["percent"] for l in lines if l["event"] == "progress"]
    assert progress == [10, 30, 50, 70, 85, 100]
    assert lines[-1]["event"] == "result"
    assert lines[-1]["data"]["payload"]["id"] == "s1"


def test_rate_limit_returns_429(fake_pipeline, monkeypatch):
    fake_pipeline({"m1": EMPTY_SITE})
    monkeypatch.setattr(ratelimit, "MAX_REQUESTS", 1)
    assert client.post("/generate", json={"prompt": "A bakery"}).status_code == 200
    r = client.post("/generate", json={"prompt": "A bakery"})
    assert r.status_code == 429
    body = r.json()
    assert body["error"] == "rate limit exceeded"
    assert "Retry-After" in r.headers
    assert r.headers["X-RateLimit-Remaining"] == "0"


def test_images(fake_pipeline, monkeypatch):
    fake_pipeline({"m1": "https://img.example/hero.png"})
    r = client.post("/images", json={"prompt": "A calm lighthouse", "n": 2})
    assert r.status_code == 200
    body = r.json()
    assert body["urls"] == ["https://img.example/hero.png"] * 2
    assert body["attemptedModels"] == ["m1"]


def test_images_failure_is_502(fake_pipeline):
    fake_pipeline({"m1": TransientProviderError("down"), "m2": TransientProviderError("down")})
    r = client.post("/images", json={"prompt": "A calm lighthouse"})
    assert r.status_code == 502
    assert r.json()["error"]["code"] == "FALLBACK_EXHAUSTED"
