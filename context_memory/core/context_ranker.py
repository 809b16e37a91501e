"""Rule-based, multi-strategy context ranking.

A strategy is a weighted list of rules. Each rule kind has one evaluator
returning whether the context passes and a raw score in [0, 1]:

- similarity: cosine vs. the query embedding
- confidence: the context's stored confidence
- age: exp(-2 * age / max_age)
- context_type: weight from a type table
- metadata: fraction of required metadata values matched
- cross_reference: how many other candidates in the batch are similar

Rules with weight above 0.3 are hard (failing excludes the candidate);
lighter rules are soft and only add ``score * weight`` when they pass.
"""

import logging
import math
import re
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, NamedTuple, Sequence

import numpy as np
from pydantic import BaseModel, Field

from context_memory.core.embeddings import EmbeddingClient
from context_memory.models.context import (
    DEFAULT_TYPE_WEIGHTS,
    UNKNOWN_TYPE_WEIGHT,
    Context,
    FilterCriteria,
    utc_now,
)

logger = logging.getLogger(__name__)

HARD_RULE_WEIGHT = 0.3
CROSS_REFERENCE_SIMILARITY = 0.7
CROSS_REFERENCE_SATURATION = 3
DEFAULT_STRATEGY = "comprehensive"


class RuleKind(str, Enum):
    """Closed set of ranking rule kinds."""

    SIMILARITY = "similarity"
    CONFIDENCE = "confidence"
    AGE = "age"
    CONTEXT_TYPE = "context_type"
    METADATA = "metadata"
    CROSS_REFERENCE = "cross_reference"


class RankingRule(BaseModel):
    """A weighted rule within a strategy."""

    kind: RuleKind
    params: dict[str, Any] = Field(default_factory=dict)
    weight: float = Field(..., ge=0.0)

    @property
    def is_hard(self) -> bool:
        return self.weight > HARD_RULE_WEIGHT


class RankingStrategy(BaseModel):
    """Named set of weighted rules."""

    name: str
    description: str = ""
    rules: list[RankingRule] = Field(default_factory=list)


class RuleResult(NamedTuple):
    passes: bool
    score: float


class RankingBatch:
    """Shared state for evaluating one strategy over one candidate batch."""

    def __init__(
        self,
        contexts: Sequence[Context],
        query_embedding: Sequence[float],
        now: datetime | None = None,
    ):
        self.contexts = contexts
        self.query_embedding = query_embedding
        self.now = now or utc_now()
        self._cross_reference_counts: dict[str, int] | None = None

    def cross_reference_count(self, context: Context) -> int:
        if self._cross_reference_counts is None:
            self._cross_reference_counts = self._compute_cross_references()
        return self._cross_reference_counts.get(context.id, 0)

    def _compute_cross_references(self) -> dict[str, int]:
        """Count, per candidate, the other candidates with cosine > 0.7.

        Pairwise over the batch, so cost grows quadratically with its size.
        """
        # TODO: switch to an approximate neighbour count if ranking batches grow past a few hundred.
        candidates = [context for context in self.contexts if context.embedding]
        if len(candidates) < 2:
            return {}

        matrix = np.asarray([context.embedding for context in candidates], dtype=float)
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        unit = matrix / norms
        similarities = unit @ unit.T
        np.fill_diagonal(similarities, 0.0)
        counts = (similarities > CROSS_REFERENCE_SIMILARITY).sum(axis=1)
        return {context.id: int(count) for context, count in zip(candidates, counts)}


def _evaluate_similarity(context: Context, rule: RankingRule, batch: RankingBatch) -> RuleResult:
    if not context.embedding:
        return RuleResult(False, 0.0)
    similarity = EmbeddingClient.cosine_similarity(batch.query_embedding, context.embedding)
    return RuleResult(similarity >= rule.params.get("min_threshold", 0.5), similarity)


def _evaluate_confidence(context: Context, rule: RankingRule, batch: RankingBatch) -> RuleResult:
    confidence = context.confidence
    return RuleResult(confidence >= rule.params.get("min_threshold", 0.5), confidence)


def _evaluate_age(context: Context, rule: RankingRule, batch: RankingBatch) -> RuleResult:
    age = context.age_seconds(batch.now)
    max_age = rule.params.get("max_age_seconds", 30 * 60)
    return RuleResult(age <= max_age, math.exp(-2 * age / max_age))


def _evaluate_context_type(context: Context, rule: RankingRule, batch: RankingBatch) -> RuleResult:
    type_weights = rule.params.get("type_weights") or DEFAULT_TYPE_WEIGHTS
    type_score = type_weights.get(context.context_type.value, UNKNOWN_TYPE_WEIGHT)
    return RuleResult(type_score > 0, type_score)


def _evaluate_metadata(context: Context, rule: RankingRule, batch: RankingBatch) -> RuleResult:
    requirements = rule.params.get("requirements") or {}
    if not requirements:
        return RuleResult(True, 0.0)

    matched = sum(1 for key, value in requirements.items() if context.metadata.get(key) == value)
    ratio = matched / len(requirements)
    return RuleResult(ratio >= rule.params.get("min_match_ratio", 0.5), ratio)


def _evaluate_cross_reference(context: Context, rule: RankingRule, batch: RankingBatch) -> RuleResult:
    count = batch.cross_reference_count(context)
    return RuleResult(True, min(count / CROSS_REFERENCE_SATURATION, 1.0))


RuleEvaluator = Callable[[Context, RankingRule, RankingBatch], RuleResult]

RULE_EVALUATORS: dict[RuleKind, RuleEvaluator] = {
    RuleKind.SIMILARITY: _evaluate_similarity,
    RuleKind.CONFIDENCE: _evaluate_confidence,
    RuleKind.AGE: _evaluate_age,
    RuleKind.CONTEXT_TYPE: _evaluate_context_type,
    RuleKind.METADATA: _evaluate_metadata,
    RuleKind.CROSS_REFERENCE: _evaluate_cross_reference,
}


def _rule(kind: RuleKind, weight: float, **params: Any) -> RankingRule:
    return RankingRule(kind=kind, params=params, weight=weight)


STRATEGY_PRESETS: dict[str, RankingStrategy] = {
    "high_precision": RankingStrategy(
        name="High Precision",
        description="Prioritizes high-confidence, recent, and highly relevant contexts",
        rules=[
            _rule(RuleKind.SIMILARITY, 0.4, min_threshold=0.8),
            _rule(RuleKind.CONFIDENCE, 0.3, min_threshold=0.7),
            _rule(RuleKind.AGE, 0.2, max_age_seconds=20 * 60),
            _rule(RuleKind.CROSS_REFERENCE, 0.1),
        ],
    ),
    "comprehensive": RankingStrategy(
        name="Comprehensive",
        description="Balances relevance with diversity of information",
        rules=[
            _rule(RuleKind.SIMILARITY, 0.3, min_threshold=0.6),
            _rule(RuleKind.CONFIDENCE, 0.2, min_threshold=0.5),
            _rule(
                RuleKind.CONTEXT_TYPE,
                0.2,
                type_weights={"query_result": 1.0, "subtask_result": 0.9, "synthesis": 0.8},
            ),
            _rule(RuleKind.AGE, 0.15, max_age_seconds=30 * 60),
            _rule(RuleKind.CROSS_REFERENCE, 0.15),
        ],
    ),
    "recent_focus": RankingStrategy(
        name="Recent Focus",
        description="Heavily weights recent contexts while maintaining relevance",
        rules=[
            _rule(RuleKind.AGE, 0.4, max_age_seconds=15 * 60),
            _rule(RuleKind.SIMILARITY, 0.35, min_threshold=0.7),
            _rule(RuleKind.CONFIDENCE, 0.25, min_threshold=0.6),
        ],
    ),
    "fact_focused": RankingStrategy(
        name="Fact Focused",
        description="Prioritizes high-confidence factual information",
        rules=[
            _rule(RuleKind.CONFIDENCE, 0.4, min_threshold=0.8),
            _rule(
                RuleKind.CONTEXT_TYPE,
                0.3,
                type_weights={"query_result": 1.0, "subtask_result": 0.8, "user_input": 0.3},
            ),
            _rule(RuleKind.SIMILARITY, 0.3, min_threshold=0.75),
        ],
    ),
}


def strategy_key(name: str) -> str:
    return re.sub(r"\s+", "_", name.strip().lower())


class ContextRanker:
    """Scores and filters candidate contexts with named strategies."""

    def __init__(self, strategies: dict[str, RankingStrategy] | None = None):
        self.strategies: dict[str, RankingStrategy] = dict(strategies or STRATEGY_PRESETS)

    def get_strategy(self, strategy: str | RankingStrategy) -> RankingStrategy:
        """Resolve a strategy by name, falling back to comprehensive."""
        if isinstance(strategy, RankingStrategy):
            return strategy

        resolved = self.strategies.get(strategy) or self.strategies.get(strategy_key(strategy))
        if resolved is None:
            logger.debug(f"Unknown ranking strategy '{strategy}', using {DEFAULT_STRATEGY}")
            resolved = self.strategies.get(DEFAULT_STRATEGY, STRATEGY_PRESETS[DEFAULT_STRATEGY])
        return resolved

    def filter_and_rank(
        self,
        contexts: Sequence[Context],
        query_embedding: Sequence[float],
        strategy: str | RankingStrategy = DEFAULT_STRATEGY,
        criteria: FilterCriteria | None = None,
        top_k: int = 10,
        now: datetime | None = None,
    ) -> list[Context]:
        """Filter, score and rank candidates.

        Args:
            contexts: Candidate contexts
            query_embedding: Embedding of the query
            strategy: Strategy name or object (unknown names use comprehensive)
            criteria: Basic filters applied before scoring
            top_k: Maximum results to return
            now: Reference time for age rules

        Returns:
            Copies of the surviving contexts with ``relevance_score`` set,
            highest score first
        """
        if not contexts:
            return []

        ranking_strategy = self.get_strategy(strategy)
        now = now or utc_now()

        candidates = list(contexts)
        if criteria is not None:
            candidates = [context for context in candidates if criteria.matches(context, now)]
            if criteria.min_similarity is not None:
                candidates = [
                    context
                    for context in candidates
                    if context.embedding
                    and EmbeddingClient.cosine_similarity(query_embedding, context.embedding)
                    >= criteria.min_similarity
                ]
        logger.debug(
            f"Ranking {len(candidates)}/{len(contexts)} contexts with '{ranking_strategy.name}'"
        )
        if not candidates:
            return []

        batch = RankingBatch(candidates, query_embedding, now)
        scored = []
        for context in candidates:
            score = self.score_context(context, ranking_strategy, batch)
            if score is not None:
                scored.append(context.with_score(score))

        scored.sort(key=lambda context: context.relevance_score or 0.0, reverse=True)
        return scored[:top_k]

    def score_context(
        self,
        context: Context,
        strategy: RankingStrategy,
        batch: RankingBatch,
    ) -> float | None:
        """Aggregate score for one context, or None if a hard rule excludes it."""
        total = 0.0
        for rule in strategy.rules:
            evaluator = RULE_EVALUATORS[rule.kind]
            result = evaluator(context, rule, batch)
            if result.passes:
                total += result.score * rule.weight
            elif rule.is_hard:
                return None
        return total

    def diversity_filter(
        self,
        contexts: Sequence[Context],
        max_similarity: float = 0.8,
    ) -> list[Context]:
        """Greedily drop candidates too similar to an already accepted one.

        Input order is treated as priority order.
        """
        if len(contexts) <= 1:
            return list(contexts)

        accepted: list[Context] = [contexts[0]]
        for candidate in contexts[1:]:
            too_similar = any(
                candidate.embedding
                and selected.embedding
                and EmbeddingClient.cosine_similarity(candidate.embedding, selected.embedding)
                > max_similarity
                for selected in accepted
            )
            if not too_similar:
                accepted.append(candidate)

        logger.debug(f"Diversity filtering kept {len(accepted)}/{len(contexts)} contexts")
        return accepted

    def temporal_coherence(
        self,
        contexts: Sequence[Context],
        max_time_gap: timedelta = timedelta(minutes=10),
    ) -> list[Context]:
        """Keep the best-scored context from each burst of activity.

        Contexts are sorted chronologically and split wherever consecutive
        timestamps are more than ``max_time_gap`` apart.
        """
        if len(contexts) <= 1:
            return list(contexts)

        ordered = sorted(contexts, key=lambda context: context.timestamp)
        groups: list[list[Context]] = [[ordered[0]]]
        for current in ordered[1:]:
            if current.timestamp - groups[-1][-1].timestamp <= max_time_gap:
                groups[-1].append(current)
            else:
                groups.append([current])

        selected = [
            max(group, key=lambda context: context.relevance_score or 0.0)
            for group in groups
        ]
        logger.debug(f"Temporal coherence: {len(selected)} groups from {len(contexts)} contexts")
        return selected

    def create_strategy(
        self,
        name: str,
        description: str,
        rules: Sequence[RankingRule | dict[str, Any]],
    ) -> RankingStrategy:
        return RankingStrategy(name=name, description=description, rules=list(rules))

    def register_strategy(self, strategy: RankingStrategy) -> str:
        """Register a strategy under its lowercased, underscored name."""
        key = strategy_key(strategy.name)
        self.strategies[key] = strategy
        logger.info(f"Registered ranking strategy '{key}'")
        return key

    def available_strategies(self) -> list[str]:
        return list(self.strategies)

    def describe_strategy(self, name: str) -> str | None:
        strategy = self.strategies.get(name)
        return strategy.description if strategy else None
