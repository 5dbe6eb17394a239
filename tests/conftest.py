"""Shared fixtures: sample products, criteria and a seeded parser."""

import random

import pytest

from config import Settings
from disambiguation import DisambiguationParser
from models import Product, ReplacementCriteria


@pytest.fixture
def stearic_acid() -> Product:
    return Product(
        name="Stearic Acid",
        manufacturer="BASF",
        cas_number="57-11-4",
        chemical_name="Octadecanoic acid",
        category="Fatty Acids",
    )


@pytest.fixture
def close_match() -> Product:
    return Product(
        name="Stearic Acid 1842",
        manufacturer="BASF",
        cas_number="57-11-4",
        chemical_name="Octadecanoic acid",
        category="Fatty Acids",
        product_number="SA-1842",
        description="Triple pressed stearic acid for cosmetic and industrial applications",
    )


@pytest.fixture
def bare_candidate() -> Product:
    return Product(name="Generic Filler")


@pytest.fixture
def default_criteria() -> ReplacementCriteria:
    return ReplacementCriteria()


@pytest.fixture
def seeded_parser() -> DisambiguationParser:
    return DisambiguationParser(rng=random.Random(42))


@pytest.fixture
def rag_settings() -> Settings:
    return Settings(
        _env_file=None,
        knowde_auth_token="test-token",
        knowde_company_uuid="company-123",
        rag_base_url="https://search.test/api/conversation",
        disambiguation_seed=7,
    )
