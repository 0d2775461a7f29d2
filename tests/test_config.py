from __future__ import annotations

import logging
from datetime import date

import httpx
import pytest

from inbox_recon.config import Settings, load_policy, resolve_policy, settings
from inbox_recon.errors import ConfigurationError, RetrievalUnavailable
from inbox_recon.main import create_app
from inbox_recon.models.models import Tenant
from inbox_recon.services.currency import (
    DisabledCurrencyConverter,
    StaticRateConverter,
    base_amount_for,
    build_currency_converter,
)
from inbox_recon.services.embeddings import (
    DisabledEmbeddingProvider,
    MockEmbeddingProvider,
    OpenAIEmbeddingProvider,
    build_embedding_provider,
    cosine_distance,
    embed_or_none,
)


def test_defaults_load_with_warning(caplog):
    with caplog.at_level(logging.WARNING):
        policy = load_policy(Settings())
    assert policy.total_weight == pytest.approx(0.8)
    assert policy.auto_match_threshold == 0.9
    assert "items will only be suggested" in caplog.text


def test_reachable_auto_match_does_not_warn(caplog):
    cfg = Settings(similarity_weight=0.35, amount_weight=0.45, date_weight=0.2)
    with caplog.at_level(logging.WARNING):
        load_policy(cfg)
    assert "items will only be suggested" not in caplog.text


@pytest.mark.parametrize(
    "overrides",
    [
        {"suggestion_threshold": 0.95, "auto_match_threshold": 0.9},
        {"similarity_weight": 0.0, "amount_weight": 0.0, "date_weight": 0.0},
        {"amount_weight": -0.1},
        {"auto_match_threshold": 1.5},
        {"max_suggestions": 0},
    ],
)
def test_invalid_configuration_is_rejected(overrides):
    with pytest.raises(ConfigurationError):
        load_policy(Settings(**overrides))


def test_invalid_settings_stop_startup(monkeypatch):
    monkeypatch.setattr(settings, "suggestion_threshold", 0.99)
    with pytest.raises(ConfigurationError):
        create_app()


def test_tenant_overrides_win():
    tenant = Tenant(name="Acme", auto_match_threshold=0.97, suggestion_threshold=None, min_auto_margin=0.1)
    policy = resolve_policy(Settings(), tenant)
    assert policy.auto_match_threshold == 0.97
    assert policy.suggestion_threshold == 0.5
    assert policy.min_auto_margin == 0.1


def test_tenant_override_is_validated():
    tenant = Tenant(name="Acme", auto_match_threshold=0.4)
    with pytest.raises(ConfigurationError):
        resolve_policy(Settings(), tenant)


def test_static_rates_convert_both_ways():
    fx = StaticRateConverter({"eur/usd": 1.1})
    assert fx.to_base_currency(100, "EUR", date(2026, 3, 1), "USD") == (110.0, "USD")
    assert fx.to_base_currency(110, "usd", None, "eur") == (100.0, "EUR")
    assert fx.to_base_currency(5, "GBP", None, "USD") is None


def test_base_amount_without_rate_is_unknown():
    conv = DisabledCurrencyConverter()
    assert base_amount_for(conv, 12.5, "USD", None, "USD") == (12.5, "USD")
    assert base_amount_for(conv, 12.5, "EUR", None, "USD") == (None, None)
    assert base_amount_for(conv, 12.5, "EUR", None, None) == (None, None)
    assert base_amount_for(conv, None, "EUR", None, "USD") == (None, None)


def test_converter_follows_settings():
    assert isinstance(build_currency_converter(Settings()), DisabledCurrencyConverter)
    assert isinstance(build_currency_converter(Settings(fx_rates={"EUR/USD": 1.08})), StaticRateConverter)


def test_cosine_distance():
    assert cosine_distance([1.0, 0.0], [1.0, 0.0]) == pytest.approx(0.0)
    assert cosine_distance([1.0, 0.0], [0.0, 1.0]) == pytest.approx(1.0)
    assert cosine_distance([0.0, 0.0], [1.0, 0.0]) == 1.0
    with pytest.raises(ValueError):
        cosine_distance([1.0], [1.0, 0.0])


def test_mock_embeddings_are_deterministic():
    provider = MockEmbeddingProvider(16)
    a = provider.embed("Coffee Roasters invoice")
    assert a == provider.embed("coffee roasters INVOICE")
    assert len(a) == 16
    assert provider.distance(a, a) == pytest.approx(0.0)
    assert provider.embed("") == [0.0] * 16


def test_provider_follows_settings():
    assert isinstance(build_embedding_provider(Settings()), DisabledEmbeddingProvider)
    assert isinstance(build_embedding_provider(Settings(embedding_provider="mock")), MockEmbeddingProvider)
    with pytest.raises(RuntimeError):
        build_embedding_provider(Settings(embedding_provider="openai", openai_api_key=None))


def test_embed_or_none_swallows_provider_outage(caplog):
    class Down(MockEmbeddingProvider):
        def embed(self, text):
            raise RetrievalUnavailable("503")

    with caplog.at_level(logging.WARNING):
        assert embed_or_none(Down(), "Coffee") is None
    assert "Embedding failed" in caplog.text
    assert embed_or_none(MockEmbeddingProvider(), None, "  ") is None
    assert embed_or_none(DisabledEmbeddingProvider(), "Coffee") is None


def _openai(monkeypatch, handler) -> OpenAIEmbeddingProvider:
    real_client = httpx.Client
    monkeypatch.setattr(httpx, "Client", lambda **kw: real_client(transport=httpx.MockTransport(handler), **kw))
    return OpenAIEmbeddingProvider(Settings(embedding_provider="openai", openai_api_key="sk-test"))


def test_openai_embeddings(monkeypatch):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2, 0.3]}]})

    vec = _openai(monkeypatch, handler).embed("Coffee Roasters")
    assert vec == [0.1, 0.2, 0.3]
    assert seen["url"].endswith("/embeddings")
    assert seen["auth"] == "Bearer sk-test"


@pytest.mark.parametrize(
    "response",
    [httpx.Response(500, json={"error": "boom"}), httpx.Response(200, json={"data": []})],
)
def test_openai_failures_mean_retrieval_unavailable(monkeypatch, response):
    provider = _openai(monkeypatch, lambda request: response)
    with pytest.raises(RetrievalUnavailable):
        provider.embed("Coffee Roasters")
