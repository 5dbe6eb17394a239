"""Tests for the in-memory repository and the discovery workflow."""

import asyncio
from uuid import uuid4

import pytest

from models import Product, ReplacementRequest, RequestStatus
from repository import (
    DEFAULT_REPLACEMENT_REASONS,
    InMemoryRepository,
    discover_replacements,
    replacement_notes,
    resolve_original_product,
)
from replacement_algorithms import score_replacements


@pytest.fixture
def repo() -> InMemoryRepository:
    return InMemoryRepository()


def add(repo, *products):
    for p in products:
        asyncio.run(repo.create_product(p))


def test_search_products_matches_identifying_fields(repo):
    add(repo,
        Product(name="Stearic Acid", cas_number="57-11-4"),
        Product(name="Palmitic Acid", manufacturer="Wilmar"),
        Product(name="Old Stearate", is_active=False),
        Product(name="Aerosil 200", product_number="AE-200"))

    assert {p.name for p in asyncio.run(repo.search_products("stear"))} == {"Stearic Acid"}
    assert [p.name for p in asyncio.run(repo.search_products("WILMAR"))] == ["Palmitic Acid"]
    assert [p.name for p in asyncio.run(repo.search_products("57-11"))] == ["Stearic Acid"]
    assert [p.name for p in asyncio.run(repo.search_products("ae-200"))] == ["Aerosil 200"]
    assert len(asyncio.run(repo.search_products("acid", limit=1))) == 1


def test_find_similar_by_category_or_cas_prefix(repo):
    original = Product(name="Stearic Acid", category="Fatty Acids", cas_number="57-11-4")
    same_category = Product(name="Palmitic Acid", category="Fatty Acids")
    same_cas_block = Product(name="Stearic 70", category="Other", cas_number="57-10-3")
    unrelated = Product(name="Toluene", category="Solvents", cas_number="108-88-3")
    inactive = Product(name="Old Acid", category="Fatty Acids", is_active=False)
    add(repo, original, same_category, same_cas_block, unrelated, inactive)

    similar = asyncio.run(repo.find_similar_products(original))

    assert {p.name for p in similar} == {"Palmitic Acid", "Stearic 70"}


def test_find_similar_falls_back_to_first_name_word(repo):
    original = Product(name="Sipernat 22")
    add(repo,
        original,
        Product(name="SIPERNAT 50 S"),
        Product(name="Carrier", chemical_name="sipernat-type silica"),
        Product(name="Aerosil 200"))

    similar = asyncio.run(repo.find_similar_products(original))

    assert {p.name for p in similar} == {"SIPERNAT 50 S", "Carrier"}


def test_replacement_reasons_seeded_in_order(repo):
    reasons = asyncio.run(repo.get_replacement_reasons())
    assert [r.code for r in reasons] == [r.code for r in DEFAULT_REPLACEMENT_REASONS]
    assert reasons[2].code == "COST_REDUCTION"


def test_update_replacement_request(repo):
    request = asyncio.run(repo.create_replacement_request(
        ReplacementRequest(original_product_name="Stearic Acid")))
    updated = asyncio.run(repo.update_replacement_request(request.id, status=RequestStatus.PROCESSING))

    assert updated.status == RequestStatus.PROCESSING
    assert asyncio.run(repo.get_replacement_request(request.id)).status == RequestStatus.PROCESSING
    assert asyncio.run(repo.update_replacement_request(uuid4(), status=RequestStatus.FAILED)) is None


def test_unknown_original_falls_back_to_name(repo):
    request = ReplacementRequest(original_product_name="Mystery Wax", original_product_id=uuid4())
    original = asyncio.run(resolve_original_product(repo, request))
    assert original.name == "Mystery Wax"
    assert original.category is None
    assert original.cas_number is None


def test_discovery_by_name_only(repo):
    add(repo,
        Product(name="Stearic Acid 1842", category="Fatty Acids"),
        Product(name="Stearic Acid Flakes", category="Fatty Acids"),
        Product(name="Toluene", category="Solvents"))
    request = asyncio.run(repo.create_replacement_request(
        ReplacementRequest(original_product_name="Stearic Acid")))

    result = asyncio.run(discover_replacements(repo, request.id))

    assert result.pool_size == 2
    assert {c.product.name for c in result.candidates} == {"Stearic Acid 1842", "Stearic Acid Flakes"}
    assert len(result.stored) == 2
    assert result.request.status == RequestStatus.COMPLETED


def test_discovery_persists_top_candidates(repo):
    original = Product(name="Stearic Acid", category="Fatty Acids", cas_number="57-11-4",
                       chemical_name="Octadecanoic acid", manufacturer="BASF")
    pool = [
        Product(name=f"Fatty Acid {i}", category="Fatty Acids", manufacturer="Acme")
        for i in range(7)
    ]
    add(repo, original, *pool)
    request = asyncio.run(repo.create_replacement_request(ReplacementRequest(
        original_product_name="Stearic Acid",
        original_product_id=original.id,
        reason_codes=["COST_REDUCTION"],
    )))

    result = asyncio.run(discover_replacements(repo, request.id, top_n=5))

    assert result.pool_size == 7
    assert len(result.candidates) == 7
    assert len(result.stored) == 5
    assert result.message == "Discovered 5 potential replacements"
    assert result.request.discovery_attempted is True
    assert result.request.status == RequestStatus.COMPLETED

    stored = asyncio.run(repo.get_product_replacements(request.id))
    assert [r.rank for r in stored] == [1, 2, 3, 4, 5]
    assert stored[0].notes.endswith(f"(Algorithm Score: {stored[0].candidate.score.overall}%)")


def test_discovery_with_every_candidate_excluded(repo):
    original = Product(name="Stearic Acid", category="Fatty Acids")
    add(repo, original, Product(name="Oleic Acid", category="Fatty Acids"))
    request = asyncio.run(repo.create_replacement_request(ReplacementRequest(
        original_product_name="Stearic Acid",
        original_product_id=original.id,
        constraints={"excludedSubstances": ["oleic"]},
    )))

    result = asyncio.run(discover_replacements(repo, request.id))

    assert result.candidates == []
    assert result.stored == []
    assert result.message == "No matches found"
    assert result.request.status == RequestStatus.NO_MATCHES_FOUND
    assert result.request.discovery_attempted is True


def test_discovery_unknown_request(repo):
    assert asyncio.run(discover_replacements(repo, uuid4())) is None


def test_replacement_notes_format(stearic_acid, bare_candidate):
    [candidate] = score_replacements(stearic_acid, [bare_candidate])
    assert replacement_notes(candidate) == (
        "Generic Filler - Moderate compatibility - requires evaluation for "
        "specific use case (Algorithm Score: 49%)")
