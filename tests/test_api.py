"""Tests HTTP de l'API (TestClient avec surcharge des dépendances)."""

from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

from tenantrag.api.deps import get_document_bus, get_orchestrator
from tenantrag.app.main import app
from tenantrag.core.constants import NO_DATA_MESSAGE
from tenantrag.services.document_events import DocumentChangeBus
from tests.fakes import FakeEmbeddings, FakeLLM, make_record

# Constantes pour éviter les erreurs PLR2004 (Magic values)
HTTP_OK = 200
HTTP_ACCEPTED = 202
HTTP_BAD_REQUEST = 400
HTTP_UNAUTHORIZED = 401
HTTP_TOO_MANY_REQUESTS = 429
HTTP_SERVICE_UNAVAILABLE = 503

HEADERS = {"X-Tenant-ID": "acme", "X-User-ID": "u1", "X-Access-Levels": "public, finance"}


@pytest.fixture
def api(pipeline_factory):
    """Client HTTP branché sur un pipeline de test; `api.build(**kw)` le reconstruit."""

    class _Api:
        def __init__(self) -> None:
            self.client = TestClient(app)
            self.build()

        def build(self, **kwargs):
            self.pipeline = pipeline_factory(**kwargs)
            self.bus = DocumentChangeBus()
            self.bus.subscribe(self.pipeline.response_cache.invalidate_tenant)
            asyncio.run(
                self.pipeline.index.upsert(
                    [
                        make_record("acme-1", "acme", {"finance"}, text="PR-0012 is merged",
                                    source_type="ticket"),
                        make_record("other-1", "other", {"finance"}, text="PR-0012 is closed"),
                    ]
                )
            )
            app.dependency_overrides[get_orchestrator] = lambda: self.pipeline.orchestrator
            app.dependency_overrides[get_document_bus] = lambda: self.bus
            return self.pipeline

        def ask(self, query: str = "What is the status of PR-0012?", headers=None, **extra):
            payload = {"query": query, **extra}
            return self.client.post("/v1/query/answer", json=payload, headers=headers or HEADERS)

    api = _Api()
    yield api
    app.dependency_overrides.clear()


def test_answer_returns_citations_of_the_caller_tenant_only(api) -> None:
    r = api.ask()

    assert r.status_code == HTTP_OK
    body = r.json()
    assert body["answer"] == "fake answer"
    assert body["degraded"] is False
    assert body["cached"] is False
    assert [c["record_id"] for c in body["citations"]] == ["acme-1"]


def test_second_identical_request_is_cached(api) -> None:
    api.ask()
    r = api.ask()
    assert r.json()["cached"] is True
    assert api.pipeline.llm.calls == 1


def test_history_is_accepted(api) -> None:
    history = [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]
    r = api.ask(history=history)
    assert r.status_code == HTTP_OK
    assert api.pipeline.llm.last_messages[1]["content"] == "hi"


def test_missing_identity_headers_are_rejected(api) -> None:
    assert api.ask(headers={"X-User-ID": "u1"}).status_code == HTTP_UNAUTHORIZED
    assert api.ask(headers={"X-Tenant-ID": "acme"}).status_code == HTTP_UNAUTHORIZED
    assert api.ask(headers={"X-Tenant-ID": "bad tenant!", "X-User-ID": "u"}).status_code == (
        HTTP_UNAUTHORIZED
    )


def test_quota_rejection_maps_to_429(api) -> None:
    api.build(user_limit=1)
    assert api.ask().status_code == HTTP_OK

    r = api.ask("another question")

    assert r.status_code == HTTP_TOO_MANY_REQUESTS
    assert r.headers["Retry-After"] == "60"
    body = r.json()
    assert body["code"] == "RATE_LIMITED"
    assert body["details"]["retry_after"] == 60


def test_invalid_query_maps_to_400(api) -> None:
    r = api.ask("   ")
    assert r.status_code == HTTP_BAD_REQUEST
    assert r.json()["code"] == "INVALID_INPUT"


def test_generation_outage_maps_to_503(api) -> None:
    api.build(llm=FakeLLM(failures=10))
    r = api.ask()
    assert r.status_code == HTTP_SERVICE_UNAVAILABLE
    assert r.json()["details"]["reason"] == "generation_unavailable"


def test_degraded_answer_is_flagged(api) -> None:
    api.build(embedder=FakeEmbeddings(failures=10))
    r = api.ask()
    assert r.status_code == HTTP_OK
    body = r.json()
    assert body["degraded"] is True
    assert body["answer"] == NO_DATA_MESSAGE
    assert body["citations"] == []


def test_document_change_webhook_invalidates_cache(api) -> None:
    api.ask()
    r = api.client.post("/v1/documents/changed", json={"tenant_id": "ACME"})
    assert r.status_code == HTTP_ACCEPTED
    assert r.json() == {"tenant_id": "acme", "delivered": 1}

    assert api.ask().json()["cached"] is False
    assert api.pipeline.llm.calls == 2

    bad = api.client.post("/v1/documents/changed", json={"tenant_id": "not a tenant"})
    assert bad.status_code == HTTP_BAD_REQUEST


def test_request_id_is_propagated(api) -> None:
    r = api.client.get("/health", headers={"X-Request-ID": "req-123"})
    assert r.status_code == HTTP_OK
    assert r.headers["X-Request-ID"] == "req-123"
    assert r.json()["status"] == "ok"
    assert api.client.get("/health").headers["X-Request-ID"]


def test_metrics_exposed(api) -> None:
    api.ask()
    r = api.client.get("/metrics")
    assert r.status_code == HTTP_OK
    assert b"http_requests_total" in r.content
    assert b"pipeline_requests_total" in r.content
