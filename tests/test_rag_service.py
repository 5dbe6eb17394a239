"""Tests for the upstream search client, its cache and result processing."""

import asyncio
import json

import httpx
import pytest

from config import Settings
from models import RagQuery
from rag_service import (
    RagService,
    ResponseCache,
    extract_applications_and_features,
    extract_principal,
    extract_product_name,
    extract_technical_specs,
    process_product_data,
    process_rag_content,
)

TRIGGER = "There are several product matches for your query."


def make_service(settings, handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RagService(settings, client=client, **kwargs)


# ── Cache ────────────────────────────────────────────────────────────

class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_cache_key_is_normalized():
    assert ResponseCache.key_for("  Stearic ACID ") == "rag_stearic acid"


def test_cache_entries_expire():
    clock = FakeClock()
    cache = ResponseCache(ttl_seconds=600, clock=clock)
    cache.set("rag_x", {"result": []})

    clock.now += 599
    assert cache.get("rag_x") == {"result": []}

    clock.now += 1
    assert cache.get("rag_x") is None
    assert len(cache) == 0


def test_purge_expired():
    clock = FakeClock()
    cache = ResponseCache(ttl_seconds=10, clock=clock)
    cache.set("rag_old", 1)
    clock.now += 5
    cache.set("rag_new", 2)
    clock.now += 6
    assert cache.purge_expired() == 1
    assert cache.keys() == ["rag_new"]


# ── Search ───────────────────────────────────────────────────────────

def test_search_posts_expected_request(rag_settings):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("x-knowde-auth")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"result": [{"content": "AEROSIL 200 is fumed silica."}]})

    service = make_service(rag_settings, handler)
    result = asyncio.run(service.search(RagQuery(message="Aerosil 200")))

    assert result.success is True
    assert result.source == "knowde"
    assert result.disambiguation_detected is False
    assert result.disambiguation_data is None
    assert result.raw_response is None
    assert seen["url"] == "https://search.test/api/conversation"
    assert seen["auth"] == "test-token"
    assert seen["body"] == {
        "message": "Aerosil 200",
        "email": "system@palmerholland.com",
        "dialog_count": 0,
        "conversation_id": "1",
        "user_id": "1",
        "app_id": "1",
        "workflow_id": "1",
        "workflow_run_id": "1",
        "role": "user",
        "company_uuid": "company-123",
    }


def test_second_search_is_served_from_cache(rag_settings):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"result": [{"content": "ok"}]})

    service = make_service(rag_settings, handler)

    async def run():
        first = await service.search(RagQuery(message="Stearic Acid"))
        second = await service.search(RagQuery(message="  stearic acid "))
        return first, second

    first, second = asyncio.run(run())

    assert len(calls) == 1
    assert first.source == "knowde"
    assert second.source == "knowde-cached"
    assert second.response_time == 0
    assert second.data == first.data
    assert service.cache_stats() == {"size": 1, "keys": ["rag_stearic acid"]}

    service.clear_cache()
    assert service.cache_stats()["size"] == 0


def test_unconfigured_service_does_not_call_upstream():
    def handler(request):
        raise AssertionError("no request expected")

    settings = Settings(_env_file=None, knowde_auth_token=None, knowde_company_uuid=None)
    service = make_service(settings, handler)
    result = asyncio.run(service.search(RagQuery(message="anything")))

    assert result.success is False
    assert result.error == "RAG service not configured - missing environment variables"


def test_http_error_becomes_failed_result(rag_settings):
    def handler(request):
        return httpx.Response(503, text="maintenance")

    service = make_service(rag_settings, handler)
    result = asyncio.run(service.search(RagQuery(message="x")))

    assert result.success is False
    assert result.error == "API request failed: 503 Service Unavailable"
    assert service.cache_stats()["size"] == 0


def test_transport_error_becomes_failed_result(rag_settings):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    service = make_service(rag_settings, handler)
    result = asyncio.run(service.search(RagQuery(message="x")))

    assert result.success is False
    assert result.error.startswith("Request failed:")


def test_ambiguous_answer_is_parsed(rag_settings):
    payload = {"result": [{"content": (
        f"{TRIGGER}\n1. SIPERNAT 22 S by Evonik - carrier silica\n"
        "2. SIPERNAT 50 S by Evonik - carrier silica")}]}

    def handler(request):
        return httpx.Response(200, json=payload)

    service = make_service(rag_settings, handler)

    async def run():
        fresh = await service.search(RagQuery(message="sipernat"))
        cached = await service.search(RagQuery(message="sipernat"))
        return fresh, cached

    fresh, cached = asyncio.run(run())

    assert fresh.disambiguation_detected is True
    assert fresh.raw_response is not None and TRIGGER in fresh.raw_response
    assert fresh.disambiguation_data.original_query == "sipernat"
    assert [o.name for o in fresh.disambiguation_data.options] == ["SIPERNAT 22 S", "SIPERNAT 50 S"]

    assert cached.disambiguation_detected is True
    assert cached.disambiguation_data.original_query == "cached query"


def test_search_with_processing(rag_settings):
    payload = {"result": [
        {"content": "Manufacturer: Cabot Corp\nCAB-O-SIL fumed silica", "metadata": {"score": 0.7}},
        {"content": "AEROSIL 200 Group Principal: Evonik",
         "metadata": {"score": 0.5, "products": [{"name": "AEROSIL 200", "company": "Evonik"}]}},
    ]}

    def handler(request):
        return httpx.Response(200, json=payload)

    service = make_service(rag_settings, handler)
    result = asyncio.run(service.search_with_processing(RagQuery(message="fumed silica")))

    assert result.success is True
    assert result.product_count == 2
    assert result.sources[0] == "AEROSIL 200 (Evonik)"
    assert result.processed_content.startswith("**AEROSIL 200** by Evonik (Relevance: 0.50)")
    assert result.average_score == pytest.approx(0.6)
    assert len(result.processed_product_data) == 2
    assert result.processed_product_data[0].principal == "Cabot Corp"


def test_processing_skipped_for_failed_search():
    settings = Settings(_env_file=None, knowde_auth_token=None, knowde_company_uuid=None)
    service = make_service(settings, lambda request: httpx.Response(200, json={}))
    result = asyncio.run(service.search_with_processing(RagQuery(message="x")))
    assert result.success is False
    assert result.processed_content is None


# ── Content processing ───────────────────────────────────────────────

def test_process_rag_content_ordering():
    results = [
        {"content": "Generic silica info", "metadata": {"score": 0.9}},
        {"content": "AEROSIL 200 Group Principal: Evonik",
         "metadata": {"score": 0.5, "products": [{"name": "AEROSIL 200", "company": "Evonik"}]}},
        {"content": "Manufacturer: Cabot Corp", "metadata": {"score": 0.7}},
    ]
    processed = process_rag_content(results)

    assert processed.sources == [
        "AEROSIL 200 (Evonik)",
        "Unknown Product (Cabot Corp)",
        "Unknown Product (Unknown Company)",
    ]
    assert processed.product_count == 3
    assert processed.average_score == pytest.approx(0.7)


def test_process_rag_content_drops_repeated_openings():
    text = "x" * 120
    processed = process_rag_content([
        {"content": text, "metadata": {"score": 1.0}},
        {"content": text + " more", "metadata": {"score": 1.0}},
    ])
    assert processed.product_count == 1
    # Averaged over every inspected item, duplicates included
    assert processed.average_score == pytest.approx(0.5)


def test_process_rag_content_empty():
    processed = process_rag_content([])
    assert processed.formatted_content == ""
    assert processed.product_count == 0


def test_extract_product_name():
    assert extract_product_name("Product Name: AEROSIL 200\nfumed silica") == "AEROSIL 200"
    assert extract_product_name("intro\nTEGO FOAMEX 810\nrest") == "TEGO FOAMEX 810"
    assert extract_product_name("no name here") == "Unknown Product"


def test_extract_principal():
    assert extract_principal("Manufacturer: Dow Chemical") == "Dow Chemical"
    assert extract_principal("Confidential - Clariant internal") == "Clariant"
    assert extract_principal("Evonik silica grades") == "Evonik Corporation"
    assert extract_principal("nothing useful") == "Unknown Company"


def test_extract_technical_specs():
    specs = extract_technical_specs("Density: 2.2 g/cm3\nCAS Number: 7631-86-9")
    assert [(s.name, s.value, s.category) for s in specs] == [
        ("Density", "2.2 g/cm3", "technical"),
        ("CAS Number", "7631-86-9", "technical"),
    ]


def test_extract_applications_and_features():
    apps, features = extract_applications_and_features("Applications: coatings, inks; adhesives")
    assert apps == ["coatings", "inks", "adhesives"]
    assert features == []


def test_process_product_data_prefers_metadata():
    data = {"result": [{"content": "Viscosity: low", "metadata": {"product_name": "X-1", "manufacturer": "Acme"}}]}
    [record] = process_product_data(data)
    assert record.product_name == "X-1"
    assert record.principal == "Acme"
    assert record.attributes[0].name == "Viscosity"
    assert process_product_data({"result": "not a list"}) == []
