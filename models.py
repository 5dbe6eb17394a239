"""
Chemical Replacement Assistant — Core Pydantic Models

Field names are snake_case in Python and camelCase on the wire
(``casNumber``, ``scoreBreakdown`` ...). Both spellings are accepted on input.
"""
from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# Enums
# ============================================================

class MatchType(str, Enum):
    EXACT = "exact"
    SIMILAR = "similar"
    FUNCTIONAL = "functional"
    ALTERNATIVE = "alternative"

class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

class ImplementationComplexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"

class RegulatoryStatus(str, Enum):
    APPROVED = "approved"
    PENDING = "pending"
    RESTRICTED = "restricted"

class QueryComplexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"

class RequestStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    NO_MATCHES_FOUND = "no_matches_found"
    FAILED = "failed"


# ============================================================
# Core Domain Models
# ============================================================

class Product(CamelModel):
    """A chemical product record. Read-only while it is being scored."""
    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    name: str
    manufacturer: Optional[str] = None
    cas_number: Optional[str] = None
    chemical_name: Optional[str] = None
    product_number: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    is_active: bool = True
    source: str = "internal"

    @field_validator(
        "manufacturer", "cas_number", "chemical_name",
        "product_number", "category", "description",
    )
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        return v.strip()


class ReplacementReason(CamelModel):
    code: str
    label: str
    description: Optional[str] = None
    is_active: bool = True
    sort_order: int = 0


class ReplacementRequest(CamelModel):
    """A user's request to replace one product.

    ``constraints`` carries free-form criteria entered alongside the reason
    codes (``excludedSubstances``, ``applications`` ...); mapping them into
    ReplacementCriteria is done by ``ReplacementCriteria.from_request``.
    """
    id: UUID = Field(default_factory=uuid4)
    original_product_name: str
    original_product_id: Optional[UUID] = None
    reason_codes: list[str] = Field(default_factory=list)
    constraints: dict[str, Any] = Field(default_factory=dict)
    additional_notes: Optional[str] = None
    user_email: Optional[str] = None
    status: RequestStatus = RequestStatus.PENDING
    discovery_attempted: bool = False
    created_at: datetime = Field(default_factory=_utcnow)


class CostConstraints(CamelModel):
    max_price_increase: Optional[float] = None  # percent
    prefer_lower_cost: bool = False


class SupplyChainRequirements(CamelModel):
    preferred_regions: list[str] = Field(default_factory=list)
    min_suppliers: Optional[int] = None
    sustainability_rating: Optional[float] = None


COST_REASON_CODES = frozenset({"COST", "COST_REDUCTION"})


class ReplacementCriteria(CamelModel):
    """Request-scoped scoring configuration. Never mutated once built."""
    model_config = ConfigDict(frozen=True)

    chemical_class: Optional[str] = None
    applications: list[str] = Field(default_factory=list)
    functional_groups: list[str] = Field(default_factory=list)
    physical_properties: Optional[dict[str, Any]] = None
    performance_requirements: Optional[dict[str, Any]] = None
    excluded_substances: list[str] = Field(default_factory=list)
    regulatory_constraints: list[str] = Field(default_factory=list)
    cost_constraints: CostConstraints = Field(default_factory=CostConstraints)
    supply_chain_requirements: Optional[SupplyChainRequirements] = None

    @field_validator("excluded_substances")
    @classmethod
    def drop_blank_exclusions(cls, v: list[str]) -> list[str]:
        return [s.strip() for s in v if s and s.strip()]

    @classmethod
    def from_request(
        cls,
        request: ReplacementRequest,
        original: Optional[Product] = None,
    ) -> ReplacementCriteria:
        """Build criteria from a stored request and its original product."""
        c = request.constraints
        cost = CostConstraints.model_validate(c.get('costConstraints') or {})
        if COST_REASON_CODES & {code.upper() for code in request.reason_codes}:
            cost = cost.model_copy(update={'prefer_lower_cost': True})

        return cls(
            chemical_class=original.category if original else None,
            applications=list(c.get('applications') or []),
            functional_groups=list(c.get('functionalGroups') or []),
            physical_properties=c.get('physicalProperties'),
            performance_requirements=c.get('performanceRequirements'),
            excluded_substances=list(c.get('excludedSubstances') or []),
            regulatory_constraints=list(c.get('regulatoryConstraints') or []),
            cost_constraints=cost,
        )


# ============================================================
# Scoring Output Models
# ============================================================

class ScoreBreakdown(CamelModel):
    chemical_similarity: int = Field(ge=0, le=100)
    functional_compatibility: int = Field(ge=0, le=100)
    performance_match: int = Field(ge=0, le=100)
    availability: int = Field(ge=0, le=100)
    cost_effectiveness: int = Field(ge=0, le=100)
    sustainability: int = Field(ge=0, le=100)


class ReplacementScore(CamelModel):
    overall: int = Field(ge=0, le=100)
    breakdown: ScoreBreakdown
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: list[str] = Field(default_factory=list)


class CandidateMetadata(CamelModel):
    match_type: MatchType
    risk_level: RiskLevel
    implementation_complexity: ImplementationComplexity
    regulatory_status: RegulatoryStatus = RegulatoryStatus.APPROVED


class ReplacementCandidate(CamelModel):
    product: Product
    score: ReplacementScore
    metadata: CandidateMetadata


class ProductReplacement(CamelModel):
    """A ranked candidate persisted against a replacement request."""
    id: UUID = Field(default_factory=uuid4)
    request_id: UUID
    rank: int
    candidate: ReplacementCandidate
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


# ============================================================
# Disambiguation Models
# ============================================================

class ProductOption(CamelModel):
    name: str
    company: Optional[str] = None
    description: Optional[str] = None
    id: Optional[str] = None
    relevance_score: Optional[float] = None
    category: Optional[str] = None


class SearchMetadata(CamelModel):
    total_matches: int
    query_complexity: QueryComplexity
    search_time: int  # ms
    confidence: float
    categories: list[str] = Field(default_factory=list)


class QueryRefinements(CamelModel):
    suggested_filters: list[str] = Field(default_factory=list)
    related_terms: list[str] = Field(default_factory=list)
    category_breakdown: dict[str, int] = Field(default_factory=dict)


class DisambiguationData(CamelModel):
    detected: bool = True
    options: list[ProductOption] = Field(default_factory=list)
    original_query: str
    instructions: str
    search_metadata: Optional[SearchMetadata] = None
    query_refinements: Optional[QueryRefinements] = None


# ============================================================
# Upstream Search (RAG) Models
# ============================================================

class RagQuery(CamelModel):
    message: str
    email: Optional[str] = None
    dialog_count: int = 0
    conversation_id: str = "1"
    user_id: str = "1"
    app_id: str = "1"
    workflow_id: str = "1"
    workflow_run_id: str = "1"
    role: str = "user"


class ProductAttribute(CamelModel):
    name: str
    value: str
    unit: Optional[str] = None
    category: Optional[str] = None


class ProcessedProductData(CamelModel):
    product_name: Optional[str] = None
    principal: Optional[str] = None
    attributes: list[ProductAttribute] = Field(default_factory=list)
    descriptive_text: str = ""
    technical_specs: list[ProductAttribute] = Field(default_factory=list)
    applications: list[str] = Field(default_factory=list)
    features: list[str] = Field(default_factory=list)


class RagSearchResult(CamelModel):
    success: bool
    data: Any = None
    error: Optional[str] = None
    response_time: Optional[int] = None  # ms
    source: str = "knowde"  # knowde | knowde-cached
    disambiguation_detected: bool = False
    raw_response: Optional[str] = None
    disambiguation_data: Optional[DisambiguationData] = None

    # Populated by search_with_processing
    processed_product_data: list[ProcessedProductData] = Field(default_factory=list)
    processed_content: Optional[str] = None
    sources: list[str] = Field(default_factory=list)
    average_score: Optional[float] = None
    product_count: Optional[int] = None


# ============================================================
# API Request/Response Models
# ============================================================

class ScoreReplacementsRequest(CamelModel):
    original: Product
    candidates: list[Product] = Field(default_factory=list)
    criteria: ReplacementCriteria = Field(default_factory=ReplacementCriteria)
    request: Optional[ReplacementRequest] = None


class ScoreReplacementsResponse(CamelModel):
    candidates: list[ReplacementCandidate]
    total_candidates: int
    excluded_count: int = 0
    message: Optional[str] = None


class DisambiguationParseRequest(CamelModel):
    raw_response: Any
    original_query: str


class DisambiguationParseResponse(CamelModel):
    disambiguation_detected: bool
    disambiguation_data: Optional[DisambiguationData] = None


class CreateReplacementRequest(CamelModel):
    original_product_name: str
    original_product_id: Optional[UUID] = None
    reason_codes: list[str] = Field(default_factory=list)
    constraints: dict[str, Any] = Field(default_factory=dict)
    additional_notes: Optional[str] = None
    user_email: Optional[str] = None


class DiscoveryResponse(CamelModel):
    request_id: UUID
    candidates: list[ReplacementCandidate]
    total_candidates: int
    stored: int
    message: str


class ProductSearchResponse(CamelModel):
    results: list[Product]
    total_results: int
    search_term: str


class HealthResponse(CamelModel):
    status: str
    components: dict[str, dict]
    version: str
    uptime_seconds: int
