"""Context-aware query processing.

Retrieves a chat's relevant contexts for a query, condenses them into a
summary and folds that summary into an enhanced query for the caller's
downstream model. Results can be written back with ``store_query_result``,
which deduplicates against what the chat already knows.
"""

import logging
import re
import time
from datetime import timedelta
from typing import Any

from context_memory.config import QueryProcessorConfig
from context_memory.core.context_ranker import ContextRanker
from context_memory.core.deduplicator import Deduplicator
from context_memory.core.llm_client import TextGenerator
from context_memory.exceptions import ContextMemoryError
from context_memory.models.context import (
    Context,
    ContextType,
    FilterCriteria,
    RankingWeights,
    utc_now,
)
from context_memory.models.search import QueryAnalysis, QueryProcessingResult
from context_memory.services.context_store import SemanticContextStore
from context_memory.utils.token_counter import TokenCounter, get_token_counter

logger = logging.getLogger(__name__)

COMPRESSION_PROMPT = """Summarize this context information to be most relevant for answering the given question. Focus on key facts and insights that directly relate to the query.

Question: "{query}"

Context: "{context}"

Requirements:
- Extract only information directly relevant to the question
- Maintain factual accuracy
- Keep response under 400 words
- Prioritize recent and high-confidence information
- Use concise, clear language

Relevant context summary:"""

BALANCED_ENHANCEMENT_PROMPT = """Enhance this query with relevant context information to make it more specific and informative, while keeping it concise.

Original query: "{query}"
Available context: "{context}"

Requirements:
- Integrate the most relevant context naturally into the query
- Maintain the original query intent
- Keep the enhanced query under 300 words
- Make it more specific and informative
- Don't add unnecessary complexity

Enhanced query:"""

COMPREHENSIVE_ENHANCEMENT_PROMPT = """Create a comprehensive, context-rich query that incorporates all relevant background information to enable the most accurate and complete response.

Original query: "{query}"
Available context: "{context}"

Requirements:
- Include all relevant context that could impact the answer
- Structure the enhanced query clearly with background information
- Specify constraints or requirements based on context
- Make assumptions explicit based on available information
- Ensure the query is complete and self-contained

Comprehensive enhanced query:"""

# Checked in order; the first matching group decides the strategy
STRATEGY_PATTERNS = [
    ("fact_focused", r"\b(what is|define|explain|describe)\b"),
    ("recent_focus", r"\b(recent|latest|current|now)\b"),
    ("high_precision", r"\b(exactly|precise|specific|accurate)\b"),
]

STRATEGY_MAX_AGE = {
    "recent_focus": timedelta(minutes=15),
    "high_precision": timedelta(minutes=20),
    "fact_focused": timedelta(minutes=30),
    "comprehensive": timedelta(minutes=45),
}

STRATEGY_SEMANTIC_WEIGHT = {
    "high_precision": 0.5,
    "fact_focused": 0.4,
    "recent_focus": 0.3,
    "comprehensive": 0.35,
}

SUMMARY_SEPARATOR = " | "
COMPRESSION_TRIGGER_RATIO = 0.8
MIN_SUMMARY_LENGTH = 20
DIVERSITY_MAX_SIMILARITY = 0.8
RESULT_DEDUP_MIN_SIMILARITY = 0.7
RESULT_DEDUP_TOP_K = 5


class QueryProcessor:
    """Builds context-enhanced queries from a chat's semantic memory."""

    def __init__(
        self,
        store: SemanticContextStore,
        ranker: ContextRanker,
        deduplicator: Deduplicator,
        text_generator: TextGenerator | None = None,
        config: QueryProcessorConfig | None = None,
        token_counter: TokenCounter | None = None,
    ):
        """Initialize the processor.

        Args:
            store: Semantic context store to retrieve from and write to
            ranker: Strategy-based ranker applied to retrieved candidates
            deduplicator: Used before storing query results
            text_generator: Summary and enhancement collaborator, None for
                the deterministic fallbacks only
            config: Enhancement options
            token_counter: Tokenizer for the context-window budget
        """
        self.store = store
        self.ranker = ranker
        self.deduplicator = deduplicator
        self.text_generator = text_generator
        self.config = config or QueryProcessorConfig()
        self.token_counter = token_counter or get_token_counter()

    async def process_query(
        self,
        query: str,
        chat_id: str,
        criteria: FilterCriteria | None = None,
        weights: RankingWeights | None = None,
    ) -> QueryProcessingResult:
        """Retrieve context for a query and produce an enhanced query.

        Any failure returns the unenhanced query with no contexts and
        the error recorded on the result.

        Args:
            query: User query
            chat_id: Chat scope
            criteria: Overrides for the strategy's default filter
            weights: Overrides for the strategy's default store weights

        Returns:
            QueryProcessingResult
        """
        started = time.perf_counter()
        strategy = self.determine_strategy(query)
        logger.info(
            f"Processing query for chat {chat_id} with strategy {strategy}: {query[:100]}",
            extra={"chat_id": chat_id, "operation": "process_query"},
        )

        try:
            candidates, contexts = await self._retrieve_relevant_contexts(
                query, chat_id, strategy, criteria, weights
            )
            summary = await self._create_context_summary(contexts, query, chat_id)

            enhanced = query
            if self.config.enable_context_enhancement:
                enhanced = await self._enhance_query(query, summary, chat_id)

            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.info(
                f"Query processed in {elapsed_ms:.1f}ms: {len(contexts)} contexts from {len(candidates)} candidates",
                extra={"chat_id": chat_id, "operation": "process_query", "duration_ms": round(elapsed_ms, 2)},
            )
            return QueryProcessingResult(
                original_query=query,
                enhanced_query=enhanced,
                relevant_contexts=contexts,
                context_summary=summary,
                strategy=strategy,
                processing_confidence=self.processing_confidence(contexts, summary),
                total_contexts_found=len(candidates),
                contexts_used=len(contexts),
                processing_time_ms=elapsed_ms,
            )
        except Exception as e:
            logger.error(
                f"Query processing failed: {e}",
                extra={"chat_id": chat_id, "operation": "process_query"},
            )
            return QueryProcessingResult(
                original_query=query,
                enhanced_query=query,
                strategy=strategy,
                processing_time_ms=(time.perf_counter() - started) * 1000,
                error=str(e),
            )

    async def store_query_result(
        self,
        original_query: str,
        result: str,
        confidence: float,
        chat_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> Context | None:
        """Store a query's result unless the chat already holds it.

        Returns:
            The stored Context, or None when the result was a duplicate
        """
        existing = await self.store.get_relevant(
            chat_id,
            original_query,
            FilterCriteria(min_similarity=RESULT_DEDUP_MIN_SIMILARITY),
            top_k=RESULT_DEDUP_TOP_K,
        )

        verdict = await self.deduplicator.check_duplication(result, existing, chat_id)
        if verdict.is_duplicate:
            logger.info(
                f"Duplicate result detected ({verdict.tier}), skipping storage",
                extra={"chat_id": chat_id, "operation": "store_query_result"},
            )
            return None

        return await self.store.add(
            chat_id,
            result,
            ContextType.QUERY_RESULT,
            confidence,
            {
                **(metadata or {}),
                "original_query": original_query,
                "query_length": len(original_query),
                "result_length": len(result),
                "processing_timestamp": utc_now().isoformat(),
            },
        )

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    @staticmethod
    def determine_strategy(query: str) -> str:
        """Pick a ranking strategy from the query's wording."""
        query_lower = query.lower()
        for strategy, pattern in STRATEGY_PATTERNS:
            if re.search(pattern, query_lower):
                return strategy
        return "comprehensive"

    async def _retrieve_relevant_contexts(
        self,
        query: str,
        chat_id: str,
        strategy: str,
        criteria: FilterCriteria | None,
        weights: RankingWeights | None,
    ) -> tuple[list[Context], list[Context]]:
        """Return (store candidates, ranked and diversified contexts)."""
        effective_criteria = FilterCriteria(
            max_age=STRATEGY_MAX_AGE[strategy],
            min_confidence=self.config.confidence_threshold,
        )
        if criteria is not None:
            effective_criteria = effective_criteria.model_copy(
                update=criteria.model_dump(exclude_unset=True)
            )

        effective_weights = RankingWeights(
            semantic=STRATEGY_SEMANTIC_WEIGHT[strategy],
            confidence=0.3,
            recency=0.2,
            type=0.15,
        )
        if weights is not None:
            effective_weights = effective_weights.model_copy(
                update=weights.model_dump(exclude_unset=True)
            )

        candidates = await self.store.get_relevant(
            chat_id,
            query,
            effective_criteria,
            effective_weights,
            top_k=self.config.max_relevant_contexts * 2,
        )
        if not candidates:
            return [], []

        query_embedding = await self.store.embeddings.embed(query)
        ranked = self.ranker.filter_and_rank(
            candidates,
            query_embedding,
            strategy,
            effective_criteria,
            top_k=self.config.max_relevant_contexts,
        )
        return candidates, self.ranker.diversity_filter(ranked, DIVERSITY_MAX_SIMILARITY)

    # ------------------------------------------------------------------
    # Summary and enhancement
    # ------------------------------------------------------------------

    async def _create_context_summary(self, contexts: list[Context], query: str, chat_id: str) -> str:
        if not contexts:
            return ""

        ordered = sorted(contexts, key=lambda context: context.relevance_score or 0.0, reverse=True)

        entries: list[str] = []
        total_length = 0
        for context in ordered:
            entry = f"[{context.context_type.value}, confidence: {context.confidence:.2f}] {context.content}"
            if total_length + len(entry) > self.config.max_context_length:
                break
            entries.append(entry)
            total_length += len(entry)

        combined = SUMMARY_SEPARATOR.join(entries)
        if (
            len(combined) > self.config.max_context_length * COMPRESSION_TRIGGER_RATIO
            or self.config.enhancement_strategy == "comprehensive"
        ):
            return await self._compress_context(combined, query, chat_id)
        return combined

    async def _compress_context(self, content: str, query: str, chat_id: str) -> str:
        """Summarize with the text generator, truncating when it is unavailable."""
        if self.text_generator is None:
            return content[:self.config.max_context_length]

        try:
            response = await self.text_generator.generate(
                COMPRESSION_PROMPT.format(query=query, context=content),
                temperature=0.2,
            )
            return response.strip()
        except ContextMemoryError as e:
            logger.warning(
                f"Context compression failed, truncating: {e}",
                extra={"chat_id": chat_id, "operation": "context_compression"},
            )
            return content[:self.config.max_context_length]

    async def _enhance_query(self, query: str, summary: str, chat_id: str) -> str:
        if not summary or len(summary) < MIN_SUMMARY_LENGTH:
            return query

        strategy = self.config.enhancement_strategy
        if strategy == "minimal":
            return self._minimal_enhancement(query, summary)
        if strategy == "comprehensive":
            return await self._comprehensive_enhancement(query, summary, chat_id)
        return await self._balanced_enhancement(query, summary, chat_id)

    def _minimal_enhancement(self, query: str, summary: str) -> str:
        """Append the summary, truncated to fit the context window."""
        max_tokens = self.config.context_window_tokens
        prefix = f"{query}\n\nRelevant context: "
        enhanced = prefix + summary
        if self.token_counter.count(enhanced) <= max_tokens:
            return enhanced

        budget = max_tokens - self.token_counter.count(prefix)
        return prefix + self.token_counter.truncate_to_tokens(summary, budget)

    async def _balanced_enhancement(self, query: str, summary: str, chat_id: str) -> str:
        if self.text_generator is None:
            return self._minimal_enhancement(query, summary)

        try:
            response = await self.text_generator.generate(
                BALANCED_ENHANCEMENT_PROMPT.format(query=query, context=summary),
                temperature=0.3,
            )
        except ContextMemoryError as e:
            logger.warning(
                f"Query enhancement failed: {e}",
                extra={"chat_id": chat_id, "operation": "query_enhancement"},
            )
            return self._minimal_enhancement(query, summary)

        enhanced = response.strip()
        too_long = self.token_counter.count(enhanced) > self.config.context_window_tokens
        if too_long or len(enhanced) < len(query):
            return self._minimal_enhancement(query, summary)
        return enhanced

    async def _comprehensive_enhancement(self, query: str, summary: str, chat_id: str) -> str:
        if self.text_generator is None:
            return self._minimal_enhancement(query, summary)

        try:
            response = await self.text_generator.generate(
                COMPREHENSIVE_ENHANCEMENT_PROMPT.format(query=query, context=summary),
                temperature=0.2,
            )
            return response.strip()
        except ContextMemoryError as e:
            logger.warning(
                f"Comprehensive enhancement failed: {e}",
                extra={"chat_id": chat_id, "operation": "comprehensive_enhancement"},
            )
            return await self._balanced_enhancement(query, summary, chat_id)

    # ------------------------------------------------------------------
    # Scoring and analysis
    # ------------------------------------------------------------------

    @staticmethod
    def processing_confidence(contexts: list[Context], summary: str) -> float:
        confidence = 0.5

        if contexts:
            confidence += 0.2
            confidence += sum(context.confidence for context in contexts) / len(contexts) * 0.2
            confidence += sum(context.relevance_score or 0.0 for context in contexts) / len(contexts) * 0.1

        if len(summary) > 100:
            confidence += 0.1

        return min(confidence, 1.0)

    def analyze_query(self, query: str) -> QueryAnalysis:
        """Classify a query's complexity and type.

        Args:
            query: Query text

        Returns:
            QueryAnalysis with the strategy ``process_query`` would use
        """
        query_lower = query.lower()
        word_count = len(query.split())

        if word_count > 20 or re.search(r"\b(compare|analy[sz]e)\b", query_lower):
            complexity = "complex"
        elif word_count > 10 or re.search(r"\b(explain|how)\b", query_lower):
            complexity = "moderate"
        else:
            complexity = "simple"

        if re.search(r"\b(compare|versus|vs)\b", query_lower):
            query_type = "comparative"
        elif re.search(r"\b(analy[sz]e|evaluate|assess)\b", query_lower):
            query_type = "analytical"
        elif re.search(r"\b(how to|steps|process)\b", query_lower):
            query_type = "procedural"
        else:
            query_type = "factual"

        return QueryAnalysis(
            complexity=complexity,
            query_type=query_type,
            word_count=word_count,
            estimated_tokens=self.token_counter.count(query),
            suggested_strategy=self.determine_strategy(query),
        )

    def update_config(self, **changes: Any) -> QueryProcessorConfig:
        """Apply validated option changes at runtime."""
        self.config = self.config.updated(**changes)
        logger.info(f"Query processor config updated: {sorted(changes)}")
        return self.config
