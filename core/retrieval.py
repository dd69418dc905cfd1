"""
Vector search — knowledge-base retrieval for document answers and RAG.

VectorSearchService is the abstract capability the engine consumes.
HttpVectorSearchService calls a search endpoint over HTTP with retries.
The helpers below filter placeholder content and format citations.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from config.settings import VectorSearchConfig
from models.schemas import DocumentUsed, SearchResult

logger = structlog.get_logger()

# Markers of seeded/demo content that must never reach a customer
PLACEHOLDER_CONTENT_MARKERS = (
    "@example.com", "1-800-", "support@example", "test-", "example.com",
)
PLACEHOLDER_SOURCE_MARKERS = ("test", "example")


class VectorSearchError(Exception):
    """Raised when the search backend cannot be reached or answers garbage."""


class VectorSearchService(abc.ABC):
    """Abstract vector search capability."""

    @abc.abstractmethod
    async def search(self, organization_id: str, query: str, limit: int = 5) -> list[SearchResult]:
        ...


class HttpVectorSearchService(VectorSearchService):
    """
    Vector search over a REST endpoint.

    Request:  POST {base_url}{search_path} {"organization_id", "query", "limit"}
    Response: a list of results, or {"results": [...]}, each result
              {"id", "content", "similarity" | "score", "metadata"}
    """

    def __init__(self, config: VectorSearchConfig):
        self.config = config
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
        return self.client

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, max=10))
    async def _request(self, payload: dict[str, Any]) -> Any:
        client = await self._get_client()
        response = await client.post(self.config.search_path, json=payload)
        response.raise_for_status()
        return response.json()

    async def search(self, organization_id: str, query: str, limit: int = 5) -> list[SearchResult]:
        try:
            raw = await self._request(
                {"organization_id": organization_id, "query": query, "limit": limit}
            )
        except Exception as e:
            raise VectorSearchError(str(e)) from e

        try:
            return self._parse_results(raw, limit)
        except (TypeError, ValueError, AttributeError) as e:
            logger.warning("vector_search_malformed_response", error=str(e))
            raise VectorSearchError(f"Malformed search response: {e}") from e

    @staticmethod
    def _parse_results(raw: Any, limit: int) -> list[SearchResult]:
        items = raw if isinstance(raw, list) else raw.get("results", raw.get("data", []))
        if not isinstance(items, list):
            raise TypeError(f"expected a list of results, got {type(items).__name__}")
        results = []
        for item in items[:limit]:
            results.append(SearchResult(
                id=str(item.get("id", "")),
                content=item.get("content", ""),
                similarity=float(item.get("similarity", item.get("score", 0.0))),
                metadata=item.get("metadata") or {},
            ))
        return results

    async def close(self) -> None:
        if self.client and not self.client.is_closed:
            await self.client.aclose()


# ──────────────────────────────────────────────────────────────
#  Result helpers
# ──────────────────────────────────────────────────────────────

def is_placeholder(result: SearchResult) -> bool:
    content = result.content.lower()
    if any(marker in content for marker in PLACEHOLDER_CONTENT_MARKERS):
        return True
    source = str(result.metadata.get("source", "")).lower()
    return any(marker in source for marker in PLACEHOLDER_SOURCE_MARKERS)


def filter_placeholders(results: list[SearchResult]) -> list[SearchResult]:
    kept = [r for r in results if not is_placeholder(r)]
    if len(kept) < len(results):
        logger.debug("placeholder_results_filtered", dropped=len(results) - len(kept))
    return kept


def content_hash(content: str) -> str:
    """32-bit rolling hash of the full content, base36. Stable across processes."""
    h = 0
    for ch in content:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h & 0x80000000:
        h -= 1 << 32
    h = abs(h)
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while True:
        h, rem = divmod(h, 36)
        out = digits[rem] + out
        if h == 0:
            return out


def document_key(result: SearchResult) -> str:
    return result.id or f"doc_{content_hash(result.content)}"


def document_title(result: SearchResult) -> str:
    meta = result.metadata
    return str(meta.get("title") or meta.get("source") or "Unknown source")


def format_citations(results: list[SearchResult]) -> str:
    """Numbered context block for the document answer prompt."""
    return "\n\n".join(
        f"[{i}] {r.content} ({r.metadata.get('source') or 'Unknown source'})"
        for i, r in enumerate(results, start=1)
    )


def to_documents_used(results: list[SearchResult]) -> list[DocumentUsed]:
    return [
        DocumentUsed(id=document_key(r), title=document_title(r), relevance_score=r.similarity)
        for r in results
    ]
