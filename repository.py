"""
Chemical Replacement Assistant — Storage Layer & Discovery Workflow

Repository pattern: ``ProductRepository`` defines the interface, and
``InMemoryRepository`` backs tests and local development. The discovery
workflow pulls a candidate pool from the repository, ranks it with the
replacement engine and persists the best candidates against the request.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Optional
from uuid import UUID

from models import (
    Product, ProductReplacement, ReplacementCandidate, ReplacementCriteria,
    ReplacementReason, ReplacementRequest, RequestStatus,
)
from replacement_algorithms import score_replacements

logger = logging.getLogger(__name__)


DEFAULT_REPLACEMENT_REASONS = [
    ReplacementReason(
        code='DISCONTINUED', label='Product Discontinued',
        description='The original product has been discontinued by the manufacturer',
        sort_order=10),
    ReplacementReason(
        code='REGULATORY', label='Regulatory Compliance',
        description='Changes in regulatory requirements make a replacement necessary',
        sort_order=20),
    ReplacementReason(
        code='COST_REDUCTION', label='Cost Reduction',
        description='Looking for a more cost-effective alternative',
        sort_order=30),
    ReplacementReason(
        code='SUPPLY_CHAIN', label='Supply Chain Issues',
        description='Supply chain disruptions require alternative sourcing',
        sort_order=40),
    ReplacementReason(
        code='SUSTAINABILITY', label='Sustainability Goals',
        description='Seeking more environmentally friendly alternatives',
        sort_order=50),
    ReplacementReason(
        code='PERFORMANCE', label='Performance Improvement',
        description='Looking for a product with better performance characteristics',
        sort_order=60),
    ReplacementReason(
        code='COMPATIBILITY', label='Process Compatibility',
        description='Need a product more compatible with existing processes',
        sort_order=70),
    ReplacementReason(
        code='SAFETY', label='Safety Concerns',
        description='Safety considerations require a different product',
        sort_order=80),
]


# ============================================================
# Database Abstraction Layer (Repository Pattern)
# ============================================================

class ProductRepository:
    """
    Abstract storage access for products, replacement reasons, requests
    and persisted replacements. Implementations are swappable.
    """

    async def create_product(self, product: Product) -> Product:
        raise NotImplementedError

    async def get_product(self, product_id: UUID) -> Optional[Product]:
        raise NotImplementedError

    async def search_products(self, query: str, limit: int = 20) -> list[Product]:
        raise NotImplementedError

    async def find_similar_products(self, original: Product, limit: int = 20) -> list[Product]:
        raise NotImplementedError

    async def get_replacement_reasons(self) -> list[ReplacementReason]:
        raise NotImplementedError

    async def create_replacement_reason(self, reason: ReplacementReason) -> ReplacementReason:
        raise NotImplementedError

    async def create_replacement_request(self, request: ReplacementRequest) -> ReplacementRequest:
        raise NotImplementedError

    async def get_replacement_request(self, request_id: UUID) -> Optional[ReplacementRequest]:
        raise NotImplementedError

    async def update_replacement_request(self, request_id: UUID, **updates) -> Optional[ReplacementRequest]:
        raise NotImplementedError

    async def create_product_replacement(self, replacement: ProductReplacement) -> ProductReplacement:
        raise NotImplementedError

    async def get_product_replacements(self, request_id: UUID) -> list[ProductReplacement]:
        raise NotImplementedError


# ============================================================
# In-Memory Repository (for testing / local dev)
# ============================================================

def _contains(haystack: Optional[str], needle: str) -> bool:
    return bool(haystack) and needle in haystack.lower()


class InMemoryRepository(ProductRepository):
    """In-memory implementation for testing without a database."""

    def __init__(self, seed_reasons: bool = True):
        self.products: dict[UUID, Product] = {}
        self.reasons: dict[str, ReplacementReason] = {}
        self.requests: dict[UUID, ReplacementRequest] = {}
        self.replacements: dict[UUID, list[ProductReplacement]] = {}
        if seed_reasons:
            for reason in DEFAULT_REPLACEMENT_REASONS:
                self.reasons[reason.code] = reason

    async def create_product(self, product: Product) -> Product:
        self.products[product.id] = product
        return product

    async def get_product(self, product_id: UUID) -> Optional[Product]:
        return self.products.get(product_id)

    async def search_products(self, query: str, limit: int = 20) -> list[Product]:
        """Active products whose identifying fields contain ``query``."""
        q = query.lower().strip()
        results = []
        for p in self.products.values():
            if not p.is_active:
                continue
            if any(_contains(v, q) for v in (
                p.name, p.manufacturer, p.chemical_name, p.cas_number, p.product_number,
            )):
                results.append(p)
                if len(results) >= limit:
                    break
        return results

    async def find_similar_products(self, original: Product, limit: int = 20) -> list[Product]:
        """
        Candidate pool for ``original``: same category or same CAS leading
        block. With neither field set, fall back to the first word of the
        name appearing in a candidate's name or chemical name.
        """
        cas_prefix = original.cas_number.split('-')[0] if original.cas_number else None
        first_word = (original.name.split(' ')[0] or original.name).lower()

        def matches(p: Product) -> bool:
            if not original.category and not cas_prefix:
                return _contains(p.name, first_word) or _contains(p.chemical_name, first_word)
            if original.category and p.category == original.category:
                return True
            return bool(cas_prefix and p.cas_number and p.cas_number.startswith(cas_prefix))

        results = []
        for p in self.products.values():
            if p.id == original.id or not p.is_active:
                continue
            if matches(p):
                results.append(p)
                if len(results) >= limit:
                    break
        return results

    async def get_replacement_reasons(self) -> list[ReplacementReason]:
        active = [r for r in self.reasons.values() if r.is_active]
        return sorted(active, key=lambda r: r.sort_order)

    async def create_replacement_reason(self, reason: ReplacementReason) -> ReplacementReason:
        self.reasons[reason.code] = reason
        return reason

    async def create_replacement_request(self, request: ReplacementRequest) -> ReplacementRequest:
        self.requests[request.id] = request
        return request

    async def get_replacement_request(self, request_id: UUID) -> Optional[ReplacementRequest]:
        return self.requests.get(request_id)

    async def update_replacement_request(self, request_id: UUID, **updates) -> Optional[ReplacementRequest]:
        existing = self.requests.get(request_id)
        if existing is None:
            return None
        updated = existing.model_copy(update=updates)
        self.requests[request_id] = updated
        return updated

    async def create_product_replacement(self, replacement: ProductReplacement) -> ProductReplacement:
        self.replacements.setdefault(replacement.request_id, []).append(replacement)
        return replacement

    async def get_product_replacements(self, request_id: UUID) -> list[ProductReplacement]:
        return sorted(self.replacements.get(request_id, []), key=lambda r: r.rank)


# ============================================================
# Discovery Workflow
# ============================================================

@dataclass
class DiscoveryResult:
    request: ReplacementRequest
    candidates: list[ReplacementCandidate] = field(default_factory=list)
    stored: list[ProductReplacement] = field(default_factory=list)
    pool_size: int = 0

    @property
    def message(self) -> str:
        if not self.candidates:
            return "No matches found"
        return f"Discovered {len(self.stored)} potential replacements"


def replacement_notes(candidate: ReplacementCandidate) -> str:
    score = candidate.score
    return (
        f"{candidate.product.name} - {'. '.join(score.reasoning)} "
        f"(Algorithm Score: {score.overall}%)")


async def resolve_original_product(
    repo: ProductRepository, request: ReplacementRequest
) -> Product:
    """Stored product for the request, or a name-only stand-in."""
    if request.original_product_id:
        product = await repo.get_product(request.original_product_id)
        if product:
            return product
        logger.warning(
            f"Request {request.id}: original product "
            f"{request.original_product_id} not found, using name only")
    # No category so the candidate pool falls back to the product name
    return Product(name=request.original_product_name)


async def discover_replacements(
    repo: ProductRepository,
    request_id: UUID,
    top_n: int = 5,
    pool_limit: int = 20,
) -> Optional[DiscoveryResult]:
    """
    Rank the similar-product pool for a stored request and persist the
    top ``top_n``. Returns None for an unknown request id.
    """
    request = await repo.get_replacement_request(request_id)
    if request is None:
        return None

    await repo.update_replacement_request(request_id, status=RequestStatus.PROCESSING)

    original = await resolve_original_product(repo, request)
    criteria = ReplacementCriteria.from_request(request, original)
    pool = await repo.find_similar_products(original, limit=pool_limit)

    ranked = score_replacements(original, pool, criteria, request)

    stored = []
    for rank, candidate in enumerate(ranked[:top_n], start=1):
        stored.append(await repo.create_product_replacement(ProductReplacement(
            request_id=request_id,
            rank=rank,
            candidate=candidate,
            notes=replacement_notes(candidate),
        )))

    status = RequestStatus.COMPLETED if ranked else RequestStatus.NO_MATCHES_FOUND
    updated = await repo.update_replacement_request(
        request_id, discovery_attempted=True, status=status)

    logger.info(
        f"Discovery for request {request_id}: pool={len(pool)} "
        f"ranked={len(ranked)} stored={len(stored)} status={status.value}")

    return DiscoveryResult(
        request=updated or request,
        candidates=ranked,
        stored=stored,
        pool_size=len(pool),
    )
