"""
Chemical Replacement Assistant — Replacement Scoring Engine

Responsibilities:
  1. Chemical similarity (CAS number, chemical name, category, product name)
  2. Functional compatibility (applications, functional groups, properties)
  3. Performance match (manufacturer reputation, data completeness)
  4. Availability / cost / sustainability heuristics
  5. Weighted overall score, confidence and reasoning
  6. Deterministic candidate classification (match type, risk, complexity)

All comparisons are keyword and string heuristics. Every factor only counts
when both sides carry the data it needs; weights are renormalized over the
factors that did count.
"""
from __future__ import annotations
import logging
import math
import re
import time
from dataclasses import dataclass
from typing import Optional

from models import (
    Product, ReplacementCriteria, ReplacementRequest,
    ReplacementScore, ScoreBreakdown, ReplacementCandidate,
    CandidateMetadata, MatchType, RiskLevel, ImplementationComplexity,
    RegulatoryStatus,
)

logger = logging.getLogger(__name__)


# ============================================================
# Vocabularies
# ============================================================

# Shared by chemical-name comparison and functional-group extraction
FUNCTIONAL_GROUP_TERMS: tuple[str, ...] = (
    'acid', 'alcohol', 'ether', 'ester', 'oxide', 'sulfate', 'chloride',
)

APPLICATION_KEYWORDS: tuple[str, ...] = (
    'cosmetic', 'industrial', 'pharmaceutical', 'food',
    'textile', 'automotive', 'coating',
)

REPUTABLE_MANUFACTURERS: frozenset[str] = frozenset({
    'BASF', 'Dow', 'DuPont', 'Evonik', 'Clariant', 'Huntsman',
})

SUSTAINABILITY_KEYWORDS: tuple[str, ...] = (
    'bio', 'renewable', 'green', 'sustainable', 'eco',
)

# No real property database behind this yet
PHYSICAL_PROPERTIES_SCORE = 0.6


# ============================================================
# Weights
# ============================================================

@dataclass(frozen=True)
class SimilarityWeights:
    cas_number: float = 0.4
    chemical_name: float = 0.3
    category: float = 0.2
    product_name: float = 0.1


@dataclass(frozen=True)
class ScoringWeights:
    """Weights for combining the six sub-scores into the overall score."""
    chemical: float = 0.25
    functional: float = 0.25
    performance: float = 0.20
    availability: float = 0.15
    cost: float = 0.10
    sustainability: float = 0.05


DEFAULT_SIMILARITY_WEIGHTS = SimilarityWeights()
DEFAULT_WEIGHTS = ScoringWeights()


# ============================================================
# Comparison Primitives
# ============================================================

def compare_cas_numbers(cas1: str, cas2: str) -> float:
    """
    Compare two CAS registry numbers.
    Returns 0.0-1.0: exact 1.0, same leading block 0.8, otherwise up to 0.6
    for positional digit agreement between leading blocks of similar length.
    """
    if cas1 == cas2:
        return 1.0

    base1 = cas1.split('-')[0]
    base2 = cas2.split('-')[0]
    if base1 == base2:
        return 0.8

    if abs(len(base1) - len(base2)) <= 1:
        longest = max(len(base1), len(base2))
        if longest == 0:
            return 0.0
        return count_common_digits(base1, base2) / longest * 0.6

    return 0.0


def count_common_digits(a: str, b: str) -> int:
    """Number of positions where both strings carry the same character."""
    return sum(1 for x, y in zip(a, b) if x == y)


def normalize_chemical_name(name: str) -> str:
    return re.sub(r'[^a-z0-9]', '', name.lower())


def compare_chemical_names(name1: str, name2: str) -> float:
    """Exact normalized match 1.0, else 0.3 per shared term, capped at 0.9."""
    n1 = normalize_chemical_name(name1)
    n2 = normalize_chemical_name(name2)
    if n1 == n2:
        return 1.0

    common = sum(1 for term in FUNCTIONAL_GROUP_TERMS if term in n1 and term in n2)
    return min(common * 0.3, 0.9) if common else 0.0


def compare_product_names(name1: str, name2: str) -> float:
    """Share of words from name1 also present in name2, over the longer name."""
    words1 = name1.lower().split()
    words2 = name2.lower().split()
    if not words1 or not words2:
        return 0.0

    common = [w for w in words1 if w in words2]
    return len(common) / max(len(words1), len(words2))


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# ============================================================
# Chemical Similarity
# ============================================================

class ChemicalSimilarityEngine:
    """Identity/structure similarity between the original and a candidate."""

    def __init__(self, weights: SimilarityWeights = DEFAULT_SIMILARITY_WEIGHTS):
        self.weights = weights

    def calculate_similarity(self, original: Product, candidate: Product) -> float:
        """Score 0-100. Fields missing on either side drop out of the average."""
        components: list[tuple[float, float]] = []  # (score, weight)

        if original.cas_number and candidate.cas_number:
            components.append((
                compare_cas_numbers(original.cas_number, candidate.cas_number),
                self.weights.cas_number,
            ))

        if original.chemical_name and candidate.chemical_name:
            components.append((
                compare_chemical_names(original.chemical_name, candidate.chemical_name),
                self.weights.chemical_name,
            ))

        if original.category and candidate.category:
            same = original.category == candidate.category
            components.append((1.0 if same else 0.5, self.weights.category))

        components.append((
            compare_product_names(original.name, candidate.name),
            self.weights.product_name,
        ))

        return _weighted_percent(components, default=0.0)


# ============================================================
# Functional Compatibility
# ============================================================

def extract_applications(product: Product) -> list[str]:
    """Application keywords found in the description, plus the category."""
    apps: list[str] = []
    if product.description:
        desc = product.description.lower()
        apps.extend(kw for kw in APPLICATION_KEYWORDS if kw in desc)
    if product.category:
        apps.append(product.category.lower())
    return apps


def extract_functional_groups(product: Product) -> list[str]:
    if not product.chemical_name:
        return []
    name = product.chemical_name.lower()
    return [g for g in FUNCTIONAL_GROUP_TERMS if g in name]


class FunctionalCompatibilityEngine:
    """How well a candidate covers the requested applications and groups."""

    DEFAULT_SCORE = 70.0

    def calculate_compatibility(
        self, criteria: ReplacementCriteria, candidate: Product
    ) -> float:
        components: list[tuple[float, float]] = []

        if criteria.applications:
            components.append((
                self._application_match(criteria.applications, candidate), 0.4))

        if criteria.functional_groups:
            components.append((
                self._functional_group_match(criteria.functional_groups, candidate), 0.3))

        if criteria.physical_properties is not None:
            components.append((PHYSICAL_PROPERTIES_SCORE, 0.3))

        return _weighted_percent(components, default=self.DEFAULT_SCORE)

    @staticmethod
    def _application_match(required: list[str], candidate: Product) -> float:
        candidate_apps = extract_applications(candidate)
        matches = 0
        for req in required:
            r = req.lower()
            if any(r in app or app in r for app in candidate_apps):
                matches += 1
        return matches / len(required)

    @staticmethod
    def _functional_group_match(required: list[str], candidate: Product) -> float:
        groups = extract_functional_groups(candidate)
        matches = sum(1 for g in required if g.lower() in groups)
        return matches / len(required)


# ============================================================
# Performance Match
# ============================================================

def quality_indicator(candidate: Product) -> float:
    """Data-completeness proxy for product quality, 0.5-1.0."""
    quality = 0.5
    if candidate.product_number:
        quality += 0.2
    if candidate.cas_number and candidate.chemical_name:
        quality += 0.2
    if candidate.description and len(candidate.description) > 50:
        quality += 0.1
    return min(quality, 1.0)


class PerformanceMatchingEngine:
    """Technical fit, approximated by manufacturer reputation and data quality."""

    DEFAULT_SCORE = 60.0

    def calculate_performance_match(
        self, criteria: ReplacementCriteria, candidate: Product
    ) -> float:
        components: list[tuple[float, float]] = []

        if criteria.performance_requirements is not None:
            reputable = candidate.manufacturer in REPUTABLE_MANUFACTURERS
            components.append((0.8 if reputable else 0.6, 0.6))

        components.append((quality_indicator(candidate), 0.4))

        return _weighted_percent(components, default=self.DEFAULT_SCORE)


# ============================================================
# In-engine Heuristics
# ============================================================

def assess_availability(candidate: Product) -> float:
    availability = 60.0
    if candidate.is_active:
        availability += 20
    if candidate.product_number:
        availability += 15
    if candidate.manufacturer:
        availability += 5
    return min(availability, 100.0)


def assess_cost_effectiveness(candidate: Product, criteria: ReplacementCriteria) -> float:
    cost = 70.0
    if criteria.cost_constraints.prefer_lower_cost:
        # Industrial grades are favoured over specialty chemicals
        if candidate.category and 'industrial' in candidate.category.lower():
            cost += 15
    return cost


def assess_sustainability(candidate: Product) -> float:
    sustainability = 50.0
    text = f"{candidate.name} {candidate.description or ''}".lower()
    if any(kw in text for kw in SUSTAINABILITY_KEYWORDS):
        sustainability += 15
    return min(sustainability, 100.0)


def calculate_confidence(original: Product, candidate: Product) -> float:
    confidence = 0.5
    if original.cas_number and candidate.cas_number:
        confidence += 0.2
    if original.chemical_name and candidate.chemical_name:
        confidence += 0.1
    if candidate.description and len(candidate.description) > 30:
        confidence += 0.1
    if candidate.manufacturer:
        confidence += 0.1
    return round(min(confidence, 1.0), 2)


def is_excluded(candidate: Product, criteria: ReplacementCriteria) -> bool:
    """True when any excluded substance appears in the candidate's text."""
    if not criteria.excluded_substances:
        return False
    text = ' '.join(filter(None, (
        candidate.name, candidate.chemical_name, candidate.description,
    ))).lower()
    return any(ex.lower() in text for ex in criteria.excluded_substances)


# ============================================================
# Reasoning & Classification
# ============================================================

def generate_reasoning(
    chemical: float, functional: float, performance: float, availability: float
) -> list[str]:
    reasoning: list[str] = []

    if chemical > 80:
        reasoning.append(
            f"High chemical similarity ({round_half_up(chemical)}%) - "
            f"excellent structural match")
    elif chemical > 60:
        reasoning.append(
            f"Good chemical similarity ({round_half_up(chemical)}%) - "
            f"compatible structure")

    if functional > 80:
        reasoning.append("Excellent functional compatibility - same application areas")

    if performance > 80:
        reasoning.append("High performance match - meets technical requirements")

    if availability > 80:
        reasoning.append("Good availability from established supplier")

    if not reasoning:
        reasoning.append(
            "Moderate compatibility - requires evaluation for specific use case")

    return reasoning


def classify_match_type(breakdown: ScoreBreakdown) -> MatchType:
    if breakdown.chemical_similarity > 90:
        return MatchType.EXACT
    if breakdown.chemical_similarity > 70:
        return MatchType.SIMILAR
    if breakdown.functional_compatibility > 80:
        return MatchType.FUNCTIONAL
    return MatchType.ALTERNATIVE


def classify_risk(overall: int) -> RiskLevel:
    if overall > 80:
        return RiskLevel.LOW
    if overall > 60:
        return RiskLevel.MEDIUM
    return RiskLevel.HIGH


_COMPLEXITY_BY_MATCH = {
    MatchType.EXACT: ImplementationComplexity.SIMPLE,
    MatchType.SIMILAR: ImplementationComplexity.MODERATE,
}


def derive_metadata(score: ReplacementScore) -> CandidateMetadata:
    """Classification is a pure function of the score."""
    match_type = classify_match_type(score.breakdown)
    return CandidateMetadata(
        match_type=match_type,
        risk_level=classify_risk(score.overall),
        implementation_complexity=_COMPLEXITY_BY_MATCH.get(
            match_type, ImplementationComplexity.COMPLEX),
        # No regulatory database integration; every candidate is reported approved
        regulatory_status=RegulatoryStatus.APPROVED,
    )


# ============================================================
# Replacement Algorithm Engine
# ============================================================

class ReplacementAlgorithmEngine:
    """
    Orchestrates:
      exclusion filter → sub-scores → weighted overall → confidence →
      reasoning → classification → ranking
    """

    def __init__(
        self,
        weights: ScoringWeights = DEFAULT_WEIGHTS,
        chemical_engine: Optional[ChemicalSimilarityEngine] = None,
        functional_engine: Optional[FunctionalCompatibilityEngine] = None,
        performance_engine: Optional[PerformanceMatchingEngine] = None,
    ):
        self.weights = weights
        self.chemical_engine = chemical_engine or ChemicalSimilarityEngine()
        self.functional_engine = functional_engine or FunctionalCompatibilityEngine()
        self.performance_engine = performance_engine or PerformanceMatchingEngine()

    def generate_replacement_candidates(
        self,
        original: Product,
        candidates: list[Product],
        criteria: ReplacementCriteria,
        request: Optional[ReplacementRequest] = None,
    ) -> list[ReplacementCandidate]:
        """
        Score, classify and rank candidates for replacing ``original``.
        Excluded candidates are dropped before scoring. The result is sorted
        by overall score, descending; equal scores keep their input order.
        """
        start = time.monotonic()
        scored: list[ReplacementCandidate] = []
        excluded = 0

        for candidate in candidates:
            if is_excluded(candidate, criteria):
                excluded += 1
                logger.debug(f"Excluded candidate {candidate.name!r}")
                continue

            score = self.calculate_comprehensive_score(original, candidate, criteria)
            scored.append(ReplacementCandidate(
                product=candidate,
                score=score,
                metadata=derive_metadata(score),
            ))
            logger.debug(
                f"Scored {candidate.name!r}: overall={score.overall} "
                f"confidence={score.confidence}")

        scored.sort(key=lambda c: c.score.overall, reverse=True)

        elapsed = int((time.monotonic() - start) * 1000)
        logger.info(
            f"Replacement scoring for {original.name!r}"
            f"{f' (request {request.id})' if request else ''}: "
            f"{len(candidates)} candidates, {excluded} excluded, "
            f"{len(scored)} ranked, {elapsed}ms")
        return scored

    def calculate_comprehensive_score(
        self,
        original: Product,
        candidate: Product,
        criteria: ReplacementCriteria,
    ) -> ReplacementScore:
        chemical = self.chemical_engine.calculate_similarity(original, candidate)
        functional = self.functional_engine.calculate_compatibility(criteria, candidate)
        performance = self.performance_engine.calculate_performance_match(criteria, candidate)
        availability = assess_availability(candidate)
        cost = assess_cost_effectiveness(candidate, criteria)
        sustainability = assess_sustainability(candidate)

        w = self.weights
        overall = (
            chemical * w.chemical
            + functional * w.functional
            + performance * w.performance
            + availability * w.availability
            + cost * w.cost
            + sustainability * w.sustainability
        )

        return ReplacementScore(
            overall=_clamp_percent(overall),
            breakdown=ScoreBreakdown(
                chemical_similarity=_clamp_percent(chemical),
                functional_compatibility=_clamp_percent(functional),
                performance_match=_clamp_percent(performance),
                availability=_clamp_percent(availability),
                cost_effectiveness=_clamp_percent(cost),
                sustainability=_clamp_percent(sustainability),
            ),
            confidence=calculate_confidence(original, candidate),
            reasoning=generate_reasoning(chemical, functional, performance, availability),
        )


_default_engine = ReplacementAlgorithmEngine()


def score_replacements(
    original: Product,
    candidates: list[Product],
    criteria: Optional[ReplacementCriteria] = None,
    request: Optional[ReplacementRequest] = None,
) -> list[ReplacementCandidate]:
    """Rank replacement candidates for ``original`` with the default weights."""
    return _default_engine.generate_replacement_candidates(
        original, candidates, criteria or ReplacementCriteria(), request)


# ============================================================
# Helpers
# ============================================================

def _weighted_percent(components: list[tuple[float, float]], default: float) -> float:
    """Weighted mean of 0-1 scores, scaled to 0-100."""
    total_weight = sum(w for _, w in components)
    if total_weight <= 0:
        return default
    return sum(s * w for s, w in components) / total_weight * 100


def _clamp_percent(value: float) -> int:
    return max(0, min(100, round_half_up(value)))
