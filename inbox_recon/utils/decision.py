from __future__ import annotations

import enum
from collections.abc import Sequence
from dataclasses import dataclass, field

from inbox_recon.config import MatchingPolicy
from inbox_recon.models.models import MatchType
from inbox_recon.utils.confidence import ScoredCandidate


class Outcome(str, enum.Enum):
    auto_match = "auto_match"
    suggest = "suggest"
    no_match = "no_match"


@dataclass(frozen=True)
class Decision:
    outcome: Outcome
    candidates: tuple[ScoredCandidate, ...] = field(default_factory=tuple)

    @property
    def best(self) -> ScoredCandidate | None:
        return self.candidates[0] if self.candidates else None


def decide(ranked: Sequence[ScoredCandidate], policy: MatchingPolicy) -> Decision:
    """Map a ranked candidate list to an outcome.

    ``ranked`` must already be ordered best first (see ``confidence.rank``).
    """
    if not ranked or ranked[0].confidence < policy.suggestion_threshold:
        return Decision(Outcome.no_match)

    best = ranked[0]
    if best.confidence >= policy.auto_match_threshold:
        runner_up = ranked[1].confidence if len(ranked) > 1 else None
        if runner_up is None or round(best.confidence - runner_up, 6) >= policy.min_auto_margin:
            return Decision(Outcome.auto_match, (best,))

    kept = tuple(c for c in ranked if c.confidence >= policy.suggestion_threshold)
    return Decision(Outcome.suggest, kept[: policy.max_suggestions])


def classify(candidate: ScoredCandidate, outcome: Outcome, policy: MatchingPolicy) -> MatchType:
    if outcome is Outcome.auto_match:
        return MatchType.auto_matched
    if candidate.confidence >= policy.high_confidence_threshold:
        return MatchType.high_confidence
    return MatchType.suggested
