"""
Chemical Replacement Assistant — Upstream Product Search (RAG) Client

Responsibilities:
  1. POST conversational queries to the Knowde hybrid-search endpoint
  2. Cache successful payloads per normalized query for a fixed TTL
  3. Detect ambiguous answers and hand them to the disambiguation parser
  4. Post-process result items into ranked context and product records

``search`` never raises: configuration gaps, HTTP status errors and transport
failures come back as ``RagSearchResult(success=False, error=...)``.
"""
from __future__ import annotations
import logging
import random
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx

from config import Settings, get_settings
from disambiguation import DisambiguationParser, serialize_response
from models import (
    ProcessedProductData, ProductAttribute, RagQuery, RagSearchResult,
)

logger = logging.getLogger(__name__)

UNKNOWN_PRODUCT = "Unknown Product"
UNKNOWN_COMPANY = "Unknown Company"
CACHED_QUERY_LABEL = "cached query"
CONNECTION_TEST_MESSAGE = "What adhesion promoters are available?"


# ============================================================
# Response Cache
# ============================================================

class ResponseCache:
    """
    Upstream payloads keyed by normalized query text.
    Entries older than ``ttl_seconds`` are treated as missing and dropped
    on access.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}

    @staticmethod
    def key_for(message: str) -> str:
        return f"rag_{message.lower().strip()}"

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, data = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            return None
        return data

    def set(self, key: str, data: Any) -> None:
        self._entries[key] = (self._clock(), data)

    def clear(self) -> None:
        self._entries.clear()

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (ts, _) in self._entries.items() if now - ts >= self.ttl_seconds]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def keys(self) -> list[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


# ============================================================
# Content Extraction
# ============================================================

PRODUCT_NAME_PATTERNS = [
    re.compile(r'product name:\s*([^\n\r]+)', re.I),
    re.compile(r'product:\s*([^\n\r]+)', re.I),
    re.compile(r'(?:^|\n)([A-Z][A-Z0-9\s-]+?)(?:\n|$)'),
]

PRINCIPAL_PATTERNS = [
    re.compile(r'(?:principal|manufacturer|company):\s*([^\n\r]+)', re.I),
    re.compile(r'(?:made by|produced by|from):\s*([^\n\r]+)', re.I),
    # Document titles carrying the company: "Document: SDS - Evonik ..."
    re.compile(r'Document:\s*[^-]*-\s*([A-Za-z]+)\s+[^\n]*', re.I),
    re.compile(r'Document:\s*[^(]*\(([^)]+)\)', re.I),
    re.compile(r'Confidential\s*-\s*([A-Za-z]+)', re.I),
]

GENERIC_PRINCIPAL_TERMS = frozenset({
    'Product', 'Safety', 'Data', 'Sheet', 'Information', 'Guide',
})


def extract_product_name(content: str) -> str:
    for pattern in PRODUCT_NAME_PATTERNS:
        m = pattern.search(content)
        if m and m.group(1):
            return m.group(1).strip()
    return UNKNOWN_PRODUCT


def extract_principal(content: str) -> str:
    """Manufacturer / principal named in the content, if any."""
    for pattern in PRINCIPAL_PATTERNS:
        m = pattern.search(content)
        if m and m.group(1):
            extracted = m.group(1).strip()
            if len(extracted) > 2 and extracted not in GENERIC_PRINCIPAL_TERMS:
                return extracted

    if 'Evonik' in content:
        return 'Evonik Corporation'
    return UNKNOWN_COMPANY


ATTRIBUTE_PATTERNS = [
    re.compile(r'([A-Za-z\s]+?):\s*([^\n\r]+)'),
    re.compile(r'([A-Za-z\s]+?)\s*=\s*([^\n\r]+)'),
    re.compile(r'([A-Za-z\s]+?)\s*-\s*([^\n\r]+)'),
]


def extract_structured_attributes(text: str) -> list[ProductAttribute]:
    """'Name: value', 'Name = value' and 'Name - value' pairs, first name wins."""
    attributes: list[ProductAttribute] = []
    seen: set[str] = set()
    for pattern in ATTRIBUTE_PATTERNS:
        for m in pattern.finditer(text):
            name = m.group(1).strip()
            value = m.group(2).strip()
            if len(name) > 2 and value and name.lower() not in seen:
                seen.add(name.lower())
                attributes.append(ProductAttribute(name=name, value=value))
    return attributes


SPEC_PATTERNS = [
    re.compile(
        r'(?:melting point|boiling point|density|viscosity|ph|molecular weight|flash point):\s*([^\n\r]+)',
        re.I),
    re.compile(r'(?:cas number|formula|purity|concentration):\s*([^\n\r]+)', re.I),
]


def extract_technical_specs(text: str) -> list[ProductAttribute]:
    specs: list[ProductAttribute] = []
    for pattern in SPEC_PATTERNS:
        for m in pattern.finditer(text):
            name = m.group(0).split(':', 1)[0].strip()
            specs.append(ProductAttribute(
                name=name, value=m.group(1).strip(), category='technical'))
    return specs


_APPLICATIONS_SECTION = re.compile(r'(?:applications?|uses?):\s*([^.]+(?:\.[^.]*)*)', re.I)
_FEATURES_SECTION = re.compile(r'(?:features?|benefits?):\s*([^.]+(?:\.[^.]*)*)', re.I)


def _split_list(section: str) -> list[str]:
    return [part.strip() for part in re.split(r'[,;]', section) if part.strip()]


def extract_applications_and_features(text: str) -> tuple[list[str], list[str]]:
    applications: list[str] = []
    features: list[str] = []

    m = _APPLICATIONS_SECTION.search(text)
    if m:
        applications = _split_list(m.group(1))

    m = _FEATURES_SECTION.search(text)
    if m:
        features = _split_list(m.group(1))

    return applications, features


def process_product_data(data: Any) -> list[ProcessedProductData]:
    """One ProcessedProductData per upstream result item."""
    if not isinstance(data, dict) or not isinstance(data.get('result'), list):
        return []

    processed = []
    for item in data['result']:
        if not isinstance(item, dict):
            continue
        content = str(item.get('content') or item.get('text') or '')
        metadata = item.get('metadata') or {}

        applications, features = extract_applications_and_features(content)

        descriptive = re.sub(r'([A-Za-z\s]+?):\s*([^\n\r]+)', '', content)
        descriptive = re.sub(r'([A-Za-z\s]+?)\s*=\s*([^\n\r]+)', '', descriptive)
        descriptive = re.sub(r'\s+', ' ', descriptive).strip()

        processed.append(ProcessedProductData(
            product_name=metadata.get('product_name') or extract_product_name(content),
            principal=(metadata.get('principal') or metadata.get('manufacturer')
                       or extract_principal(content)),
            attributes=extract_structured_attributes(content),
            technical_specs=extract_technical_specs(content),
            applications=applications,
            features=features,
            descriptive_text=descriptive or content[:500] + '...',
        ))
    return processed


# ============================================================
# Context Assembly
# ============================================================

MAX_CONTEXT_RESULTS = 5
DEDUP_PREFIX_CHARS = 100


@dataclass
class ProcessedContent:
    formatted_content: str = ''
    sources: list[str] = field(default_factory=list)
    average_score: float = 0.0
    product_count: int = 0


def process_rag_content(results: list[Any]) -> ProcessedContent:
    """
    Format the top result items as LLM context.
    Items mentioning a Group Principal come first, then items with a known
    company, then by score. Items repeating the opening of an earlier one
    are dropped.
    """
    if not results:
        return ProcessedContent()

    top = results[:MAX_CONTEXT_RESULTS]
    seen: set[str] = set()
    items = []

    for result in top:
        if not isinstance(result, dict):
            continue
        content = re.sub(r'\n+', ' ', str(result.get('content') or '')).strip()
        key = content[:DEDUP_PREFIX_CHARS]
        if key in seen:
            continue
        seen.add(key)

        metadata = result.get('metadata') or {}
        products = metadata.get('products') or [{}]
        first = products[0] if isinstance(products[0], dict) else {}

        product = first.get('name') or extract_product_name(content)
        company = first.get('company')
        if not company or company == UNKNOWN_COMPANY:
            company = extract_principal(content)

        items.append({
            'product': product,
            'company': company,
            'content': content,
            'score': float(metadata.get('score') or 0),
            'has_company': company != UNKNOWN_COMPANY,
            'has_principal': 'Group Principal' in content,
        })

    items.sort(key=lambda i: (not i['has_principal'], not i['has_company'], -i['score']))

    blocks = []
    sources = []
    total = 0.0
    for item in items:
        total += item['score']
        sources.append(f"{item['product']} ({item['company']})")
        blocks.append(
            f"**{item['product']}** by {item['company']} "
            f"(Relevance: {item['score']:.2f})\n{item['content']}")

    return ProcessedContent(
        formatted_content='\n\n'.join(blocks),
        sources=sources,
        average_score=total / len(top),
        product_count=len(items),
    )


# ============================================================
# Service
# ============================================================

class RagService:
    """Client for the upstream conversational product search."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        parser: Optional[DisambiguationParser] = None,
        cache: Optional[ResponseCache] = None,
    ):
        self.settings = settings or get_settings()
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=self.settings.rag_timeout_seconds)
        self.parser = parser or DisambiguationParser(
            rng=random.Random(self.settings.disambiguation_seed),
            enrich_categories=self.settings.disambiguation_enrich_categories,
        )
        self.cache = cache or ResponseCache(self.settings.rag_cache_ttl_seconds)

        if not self.is_configured():
            logger.warning(
                "RAG service: missing KNOWDE_AUTH_TOKEN or KNOWDE_COMPANY_UUID; "
                "searches will fail until both are set")

    def is_configured(self) -> bool:
        return self.settings.rag_configured

    def _request_body(self, query: RagQuery) -> dict:
        return {
            'message': query.message,
            'email': query.email or self.settings.rag_default_email,
            'dialog_count': query.dialog_count,
            'conversation_id': query.conversation_id,
            'user_id': query.user_id,
            'app_id': query.app_id,
            'workflow_id': query.workflow_id,
            'workflow_run_id': query.workflow_run_id,
            'role': query.role,
            'company_uuid': self.settings.knowde_company_uuid,
        }

    def _headers(self) -> dict:
        return {
            'Content-Type': 'application/json',
            'x-knowde-auth': self.settings.knowde_auth_token or '',
        }

    def _result_for(self, data: Any, query_label: str, **fields) -> RagSearchResult:
        detected, parsed = self.parser.check(data, query_label)
        if detected:
            logger.info(
                f"RAG service: disambiguation with "
                f"{len(parsed.options) if parsed else 0} option(s)")
        return RagSearchResult(
            success=True,
            data=data,
            disambiguation_detected=detected,
            raw_response=serialize_response(data) if detected else None,
            disambiguation_data=parsed,
            **fields,
        )

    async def search(self, query: RagQuery) -> RagSearchResult:
        start = time.monotonic()

        if not self.is_configured():
            return RagSearchResult(
                success=False,
                error='RAG service not configured - missing environment variables',
                response_time=_elapsed_ms(start),
            )

        key = ResponseCache.key_for(query.message)
        cached = self.cache.get(key)
        if cached is not None:
            logger.info(f"RAG service: cache hit for {key!r}")
            return self._result_for(
                cached, CACHED_QUERY_LABEL, response_time=0, source='knowde-cached')

        logger.info(f"RAG service: querying upstream for {query.message!r}")
        try:
            resp = await self.client.post(
                self.settings.rag_base_url,
                json=self._request_body(query),
                headers=self._headers(),
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            elapsed = _elapsed_ms(start)
            logger.error(
                f"RAG service: upstream returned {e.response.status_code} "
                f"after {elapsed}ms: {e.response.text[:200]}")
            return RagSearchResult(
                success=False,
                error=f"API request failed: {e.response.status_code} {e.response.reason_phrase}",
                response_time=elapsed,
            )
        except (httpx.HTTPError, ValueError) as e:
            elapsed = _elapsed_ms(start)
            logger.error(f"RAG service: request error after {elapsed}ms: {e}")
            return RagSearchResult(
                success=False,
                error=f"Request failed: {e}",
                response_time=elapsed,
            )

        elapsed = _elapsed_ms(start)
        logger.info(
            f"RAG service: response in {elapsed}ms, keys="
            f"{list(data) if isinstance(data, dict) else type(data).__name__}")

        self.cache.set(key, data)
        return self._result_for(data, query.message, response_time=elapsed)

    async def search_with_processing(self, query: RagQuery) -> RagSearchResult:
        """``search`` plus formatted context and per-item product records."""
        result = await self.search(query)
        data = result.data
        if not result.success or not isinstance(data, dict) or not data.get('result'):
            return result

        update: dict[str, Any] = {
            'processed_product_data': process_product_data(data),
        }
        if isinstance(data['result'], list):
            processed = process_rag_content(data['result'])
            update.update(
                processed_content=processed.formatted_content,
                sources=processed.sources,
                average_score=processed.average_score,
                product_count=processed.product_count,
            )
        return result.model_copy(update=update)

    async def test_connection(self) -> RagSearchResult:
        return await self.search(RagQuery(message=CONNECTION_TEST_MESSAGE))

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.info("RAG service: cache cleared")

    def cache_stats(self) -> dict:
        self.cache.purge_expired()
        return {'size': len(self.cache), 'keys': self.cache.keys()}

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
