from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from inbox_recon.errors import ConfigurationError

if TYPE_CHECKING:
    from inbox_recon.models.models import Tenant

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RECON_", env_file=".env", extra="ignore")

    database_url: str = "sqlite+pysqlite:///./inbox_recon.db"
    log_level: str = "INFO"

    # Confidence aggregation
    similarity_weight: float = 0.35
    amount_weight: float = 0.40
    date_weight: float = 0.05

    # Decision policy
    suggestion_threshold: float = 0.5
    auto_match_threshold: float = 0.9
    min_auto_margin: float = 0.05
    high_confidence_threshold: float = 0.72
    max_suggestions: int = 3
    candidate_limit: int = 20

    # Retrieval windows, in days around the item date
    expense_window_before_days: int = 93
    expense_window_after_days: int = 30
    invoice_window_before_days: int = 10
    invoice_window_after_days: int = 123

    retrieval_timeout_seconds: float = 5.0
    analyzing_timeout_seconds: int = 300
    sweep_interval_seconds: int = 60
    conflict_retry_limit: int = 3
    reverse_match_limit: int = 20

    # Collaborators
    embedding_provider: str = "disabled"  # disabled|mock|openai
    embedding_dimensions: int = 64
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_embedding_model: str = "text-embedding-3-small"
    embedding_timeout_seconds: float = 4.0
    fx_rates: dict[str, float] = Field(default_factory=dict)  # {"EUR/USD": 1.08}

    job_runner: str = "background"  # background|inline


class MatchingPolicy(BaseModel):
    """Weights and thresholds used to score and decide one inbox item."""

    model_config = ConfigDict(frozen=True)

    similarity_weight: float = Field(ge=0.0)
    amount_weight: float = Field(ge=0.0)
    date_weight: float = Field(ge=0.0)
    suggestion_threshold: float = Field(ge=0.0, le=1.0)
    auto_match_threshold: float = Field(ge=0.0, le=1.0)
    min_auto_margin: float = Field(ge=0.0, le=1.0)
    high_confidence_threshold: float = Field(ge=0.0, le=1.0)
    max_suggestions: int = Field(ge=1)
    candidate_limit: int = Field(ge=1)

    @model_validator(mode="after")
    def _check_consistency(self) -> MatchingPolicy:
        if self.total_weight <= 0.0:
            raise ValueError("at least one confidence weight must be positive")
        if self.suggestion_threshold > self.auto_match_threshold:
            raise ValueError("suggestion_threshold must not exceed auto_match_threshold")
        return self

    @property
    def total_weight(self) -> float:
        return self.similarity_weight + self.amount_weight + self.date_weight


POLICY_FIELDS = tuple(MatchingPolicy.model_fields)
TENANT_OVERRIDES = ("auto_match_threshold", "suggestion_threshold", "min_auto_margin")


def _build_policy(values: dict[str, Any]) -> MatchingPolicy:
    try:
        return MatchingPolicy(**values)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid matching configuration: {e}") from e


def load_policy(cfg: Settings | None = None) -> MatchingPolicy:
    cfg = cfg or settings
    policy = _build_policy({name: getattr(cfg, name) for name in POLICY_FIELDS})
    if policy.total_weight < policy.auto_match_threshold:
        logger.warning(
            "Confidence weights sum to %.2f, below auto_match_threshold %.2f; items will only be suggested",
            policy.total_weight,
            policy.auto_match_threshold,
        )
    return policy


def resolve_policy(cfg: Settings | None, tenant: Tenant | None) -> MatchingPolicy:
    cfg = cfg or settings
    values = {name: getattr(cfg, name) for name in POLICY_FIELDS}
    if tenant is not None:
        for name in TENANT_OVERRIDES:
            override = getattr(tenant, name)
            if override is not None:
                values[name] = override
    return _build_policy(values)


settings = Settings()
