from __future__ import annotations

import logging
import math
import re

import httpx

from inbox_recon.config import Settings, settings
from inbox_recon.errors import RetrievalUnavailable
from inbox_recon.utils.hashing import token_bucket

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def cosine_distance(a: list[float], b: list[float]) -> float:
    if len(a) != len(b):
        raise ValueError(f"Embedding dimensions differ: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 1.0
    return max(0.0, 1.0 - dot / (norm_a * norm_b))


def document_text(*parts: str | None) -> str:
    return " ".join(p.strip() for p in parts if p and p.strip())


class EmbeddingProvider:
    enabled = True

    def embed(self, text: str) -> list[float]:
        raise NotImplementedError

    def distance(self, a: list[float], b: list[float]) -> float:
        return cosine_distance(a, b)


class DisabledEmbeddingProvider(EmbeddingProvider):
    enabled = False

    def embed(self, text: str) -> list[float]:
        raise RetrievalUnavailable("Embedding provider disabled")


class MockEmbeddingProvider(EmbeddingProvider):
    """Deterministic hashed bag-of-words vectors for local runs and tests."""

    def __init__(self, dimensions: int = 64) -> None:
        self.dimensions = dimensions

    def embed(self, text: str) -> list[float]:
        vec = [0.0] * self.dimensions
        for token in _TOKEN_RE.findall(text.lower()):
            slot, sign = token_bucket(token, self.dimensions)
            vec[slot] += sign
        return vec


class OpenAIEmbeddingProvider(EmbeddingProvider):
    def __init__(self, cfg: Settings | None = None) -> None:
        cfg = cfg or settings
        if not cfg.openai_api_key:
            raise RuntimeError("Missing RECON_OPENAI_API_KEY")
        self._key = cfg.openai_api_key
        self._base_url = cfg.openai_base_url.rstrip("/")
        self._model = cfg.openai_embedding_model
        self._timeout = cfg.embedding_timeout_seconds

    def embed(self, text: str) -> list[float]:
        url = f"{self._base_url}/embeddings"
        headers = {"Authorization": f"Bearer {self._key}", "Content-Type": "application/json"}
        payload = {"model": self._model, "input": text}
        try:
            with httpx.Client(timeout=self._timeout) as client:
                r = client.post(url, headers=headers, json=payload)
                r.raise_for_status()
                data = r.json()
        except httpx.HTTPError as e:
            raise RetrievalUnavailable(f"Embedding request failed: {e}") from e
        try:
            return [float(x) for x in data["data"][0]["embedding"]]
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise RetrievalUnavailable("Malformed embedding response") from e


def build_embedding_provider(cfg: Settings | None = None) -> EmbeddingProvider:
    cfg = cfg or settings
    provider = (cfg.embedding_provider or "disabled").lower()
    if provider == "openai":
        return OpenAIEmbeddingProvider(cfg)
    if provider == "mock":
        return MockEmbeddingProvider(cfg.embedding_dimensions)
    return DisabledEmbeddingProvider()


def embed_or_none(provider: EmbeddingProvider, *parts: str | None) -> list[float] | None:
    """Embed the joined text, or None when there is nothing to embed or the provider fails."""
    text = document_text(*parts)
    if not text or not provider.enabled:
        return None
    try:
        return provider.embed(text)
    except RetrievalUnavailable as e:
        logger.warning("Embedding failed, falling back to amount/date ranking: %s", e)
        return None
