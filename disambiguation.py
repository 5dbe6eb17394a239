"""
Chemical Replacement Assistant — Disambiguation Parser

When the upstream product search cannot settle on one product it answers with
a fixed sentence ("There are several product matches for your query.") and a
loosely formatted list of candidates. This module:

1. Detects that sentence in the raw upstream payload
2. Flattens the payload to plain text
3. Pulls product options out with a chain of independent patterns
   (union, de-duplicated on name + company)
4. Extracts the instruction text shown above the list
5. Adds search analytics (query complexity, confidence, categories)
"""
from __future__ import annotations
import json
import logging
import random
import re
import time
from typing import Any, Optional

from models import (
    DisambiguationData, ProductOption, QueryComplexity,
    QueryRefinements, SearchMetadata,
)

logger = logging.getLogger(__name__)

DISAMBIGUATION_TRIGGER = "There are several product matches for your query."
DEFAULT_INSTRUCTIONS = "Please select which product you are interested in:"
DEFAULT_CATEGORY = "Chemical Products"

# Names containing these are instruction text, not products
INSTRUCTION_FRAGMENTS = ("Pick the products", "several product matches")

MIN_NAME_LENGTH = 3


# ============================================================
# Detection & Flattening
# ============================================================

def serialize_response(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, separators=(',', ':'), default=str)


def detect_disambiguation(data: Any) -> bool:
    """True when the serialized payload contains the ambiguity sentence."""
    return DISAMBIGUATION_TRIGGER in serialize_response(data)


def flatten_response(data: Any) -> str:
    """
    Reduce an upstream payload to text:
      {"result": [{"content": ...}, ...]} → contents joined by newlines
      {"result": {"content": ...}}        → that content
      "plain text"                        → itself
      anything else                       → its JSON serialization
    """
    result = data.get('result') if isinstance(data, dict) else None
    # Empty containers still count as a result
    if isinstance(result, (list, dict)) or result:
        if isinstance(result, list):
            return '\n'.join(_item_content(item) for item in result)
        if isinstance(result, dict) and result.get('content'):
            return str(result['content'])
        return ''
    if isinstance(data, str):
        return data
    return serialize_response(data)


def _item_content(item: Any) -> str:
    if isinstance(item, dict):
        return str(item.get('content') or '')
    return ''


# ============================================================
# Option Extraction
# ============================================================

OPTION_PATTERNS = [
    # "SIPERNAT® D 10 (from query: SIPERNAT®)"
    re.compile(r'^([^\n(]+?)\s*\(from query:[^)]+\)$', re.M),
    # "1. ProductName by Company - Description"
    re.compile(r'(?:^\d+\.\s*)([^-\n]+?)(?:\s+by\s+([^-\n]+?))?(?:\s*-\s*([^\n]+))?$', re.M),
    # "• ProductName (Company) - Description"
    re.compile(r'(?:^[•*-]\s*)([^(\n]+?)(?:\s*\(([^)]+)\))?(?:\s*-\s*([^\n]+))?$', re.M),
    # '"ProductName" by Company'
    re.compile(r'"([^"]+)"\s*(?:by|from)\s*([^,\n]+)', re.M),
    # "Product: Name, Company: X"
    re.compile(r'Product:\s*([^,\n]+?)(?:\s*,?\s*Company:\s*([^,\n]+?))?\s*(?=,|\n|$)', re.M),
]

# Whitespace before an inline "N. " list marker
_INLINE_ITEM = re.compile(r'[ \t]+(?=(\d+)\.\s)')
_LEADING_ITEM = re.compile(r'\s*(\d+)\.\s')


def split_inline_numbered_items(text: str) -> str:
    """
    Put inline numbered items on their own lines:

        "... query. 1. A by X - d 2. B by X - d"
        → "... query.\\n1. A by X - d\\n2. B by X - d"

    Only a run of at least two markers counting up from 1 is split, so a
    stray "2. " inside a sentence is left alone.
    """
    lines: list[str] = []
    for line in text.split('\n'):
        expected = 1
        lead = _LEADING_ITEM.match(line)
        if lead and lead.group(1) == '1':
            expected = 2

        cuts = []
        for m in _INLINE_ITEM.finditer(line):
            if int(m.group(1)) == expected:
                cuts.append(m)
                expected += 1

        if expected < 3:
            lines.append(line)
            continue

        pos = 0
        for m in cuts:
            lines.append(line[pos:m.start()])
            pos = m.end()
        lines.append(line[pos:])
    return '\n'.join(lines)


def slugify_option(name: str, index: int) -> str:
    slug = re.sub(r'[^\w\s]', '', name.lower(), flags=re.ASCII)
    slug = re.sub(r'\s+', '-', slug)
    return f"{slug}-{index}"


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def extract_options(text: str, options: Optional[list[ProductOption]] = None) -> list[ProductOption]:
    """
    Run every pattern over the full text and accumulate options.
    Pass ``options`` to collect into an existing list (it is appended to
    in place, so a caller keeps partial results if a later pattern fails).
    """
    if options is None:
        options = []
    seen = {(o.name.lower(), (o.company or '').lower()) for o in options}

    for pattern in OPTION_PATTERNS:
        for match in pattern.finditer(text):
            groups = match.groups()
            name = _clean(groups[0])
            company = _clean(groups[1]) if len(groups) > 1 else None
            description = _clean(groups[2]) if len(groups) > 2 else None

            if not name or len(name) < MIN_NAME_LENGTH:
                continue
            if any(frag in name for frag in INSTRUCTION_FRAGMENTS):
                continue

            name = name.split('\n', 1)[0].strip()
            if len(name) < MIN_NAME_LENGTH:
                continue

            key = (name.lower(), (company or '').lower())
            if key in seen:
                continue
            seen.add(key)

            options.append(ProductOption(
                name=name,
                company=company,
                description=description,
                id=slugify_option(name, len(options)),
            ))
    return options


INSTRUCTION_PATTERNS = [
    re.compile(r'please\s+(?:specify|clarify|choose|select)[^.]*\.', re.I),
    re.compile(r'which\s+(?:product|one)[^?]*\?', re.I),
    re.compile(r'there\s+are\s+several[^.]*\.', re.I),
]


def extract_instructions(text: str) -> str:
    """First match of each instruction pattern, in pattern order. May be ''."""
    found = []
    for pattern in INSTRUCTION_PATTERNS:
        m = pattern.search(text)
        if m:
            found.append(m.group(0))
    return ' '.join(found).strip()


# ============================================================
# Analytics
# ============================================================

COMPLEX_TERMS = (
    'specification', 'properties', 'application', 'compatible',
    'alternative', 'similar', 'compare', 'versus',
)
_CONJUNCTION = re.compile(r'\b(?:and|or|with)\b')


def analyze_query_complexity(query: str) -> QueryComplexity:
    q = query.lower()
    word_count = len(q.split())
    has_complex_terms = any(term in q for term in COMPLEX_TERMS)
    has_multiple_filters = len(_CONJUNCTION.findall(q)) > 1

    if word_count <= 3 and not has_complex_terms:
        return QueryComplexity.SIMPLE
    if word_count > 6 or has_complex_terms or has_multiple_filters:
        return QueryComplexity.COMPLEX
    return QueryComplexity.MODERATE


CATEGORY_PATTERNS = [
    re.compile(r'category[:\s]+([^.\n]+)', re.I),
    re.compile(r'type[:\s]+([^.\n]+)', re.I),
    re.compile(r'application[:\s]+([^.\n]+)', re.I),
    re.compile(r'industry[:\s]+([^.\n]+)', re.I),
    re.compile(r'use[:\s]+([^.\n]+)', re.I),
]

DEFAULT_CATEGORY_TERMS = (
    'adhesives', 'coatings', 'polymers', 'solvents', 'additives', 'surfactants',
)

MAX_CATEGORIES = 5


def extract_categories(text: str) -> list[str]:
    """Up to five category labels, first seen first."""
    categories: dict[str, None] = {}
    for pattern in CATEGORY_PATTERNS:
        for m in pattern.finditer(text):
            category = re.sub(r'[^\w\s]', '', m.group(1).strip().lower())
            if 2 < len(category) < 30:
                categories.setdefault(category)

    lowered = text.lower()
    for term in DEFAULT_CATEGORY_TERMS:
        if term in lowered:
            categories.setdefault(term)

    return list(categories)[:MAX_CATEGORIES]


RELATED_TERMS = (
    'specifications', 'applications', 'alternatives', 'similar products',
    'technical data', 'safety data', 'pricing', 'availability',
)


def generate_query_refinements(
    query: str,
    options: list[ProductOption],
    categories: list[str],
    rng: Optional[random.Random] = None,
) -> QueryRefinements:
    rng = rng or random.Random()
    suggested: list[str] = []

    companies = list(dict.fromkeys(o.company for o in options if o.company))
    if len(companies) > 1:
        suggested.extend(f"by {c}" for c in companies[:3])

    breakdown: dict[str, int] = {}
    for cat in categories:
        suggested.append(f"{cat} products")
        # No per-category counts upstream; this is a display estimate
        breakdown[cat] = rng.randint(1, 5)

    logger.debug(f"Refinements for {query!r}: {len(suggested)} filters")
    return QueryRefinements(
        suggested_filters=suggested[:5],
        related_terms=list(RELATED_TERMS[:4]),
        category_breakdown=breakdown,
    )


def calculate_confidence(option_count: int) -> float:
    return min(0.95, max(0.3, 0.8 if option_count > 0 else 0.3))


# ============================================================
# Parser
# ============================================================

class DisambiguationParser:
    """
    Turns an ambiguous upstream answer into selectable product options.

    ``rng`` drives the simulated relevance scores; pass a seeded
    ``random.Random`` for reproducible output. With ``enrich_categories``
    the categories and query refinements are mined from the response text;
    otherwise both stay empty and every option is filed under
    "Chemical Products".
    """

    def __init__(self, rng: Optional[random.Random] = None, enrich_categories: bool = False):
        self.rng = rng or random.Random()
        self.enrich_categories = enrich_categories

    def parse(self, data: Any, original_query: str) -> DisambiguationData:
        start = time.monotonic()
        options: list[ProductOption] = []
        instructions = ''
        text = ''

        try:
            text = split_inline_numbered_items(flatten_response(data))
            extract_options(text, options)
            instructions = extract_instructions(text)
        except Exception:
            logger.exception(
                f"Disambiguation parsing failed for {original_query!r}; "
                f"keeping {len(options)} option(s)")

        categories: list[str] = []
        refinements = QueryRefinements()
        if self.enrich_categories and text:
            categories = extract_categories(text)
            refinements = generate_query_refinements(
                original_query, options, categories, self.rng)

        enriched = [
            option.model_copy(update={
                'relevance_score': max(0.6, 0.6 + self.rng.random() * 0.4),
                'category': (categories[i % len(categories)]
                             if categories else DEFAULT_CATEGORY),
            })
            for i, option in enumerate(options)
        ]

        complexity = analyze_query_complexity(original_query)
        confidence = calculate_confidence(len(enriched))
        elapsed = int((time.monotonic() - start) * 1000)

        logger.info(
            f"Disambiguation for {original_query!r}: {len(enriched)} options, "
            f"complexity={complexity.value}, confidence={confidence}")

        return DisambiguationData(
            detected=True,
            options=enriched,
            original_query=original_query,
            instructions=instructions or DEFAULT_INSTRUCTIONS,
            search_metadata=SearchMetadata(
                total_matches=len(enriched),
                query_complexity=complexity,
                search_time=elapsed,
                confidence=confidence,
                categories=categories,
            ),
            query_refinements=refinements,
        )

    def check(self, data: Any, original_query: str) -> tuple[bool, Optional[DisambiguationData]]:
        """Detect first; parse only when the trigger sentence is present."""
        if not detect_disambiguation(data):
            return False, None
        logger.info("Disambiguation detected in upstream response")
        return True, self.parse(data, original_query)


_default_parser = DisambiguationParser()


def parse_disambiguation_response(
    data: Any,
    original_query: str,
    parser: Optional[DisambiguationParser] = None,
) -> DisambiguationData:
    """Parse an upstream answer already known to be ambiguous."""
    return (parser or _default_parser).parse(data, original_query)


parse_disambiguation = parse_disambiguation_response


def check_disambiguation(
    data: Any,
    original_query: str,
    parser: Optional[DisambiguationParser] = None,
) -> tuple[bool, Optional[DisambiguationData]]:
    return (parser or _default_parser).check(data, original_query)
