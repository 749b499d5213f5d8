"""
===============================================================================
CRC CARD: application/orchestrator.py
===============================================================================

Class:
    RagOrchestrator

Responsibilities:
    - Run one query through the state machine:
        Received -> Searching -> Reranking -> Assembling -> Generating
        -> Validating -> Completed
      with Failed reachable from any state and NoGroundingAvailable when the
      assembled context is empty.
    - Split the query deadline into stage sub-deadlines (search, rerank; the
      generation stage keeps the rest).
    - Thread one immutable EngineConfig through every stage (per-call override
      allowed).
    - Emit one analytics event per finished query (never for cancelled ones).

Collaborators:
    - HybridSearchService, Reranker, ContextAssembler, ModelRouter
    - FallbackChain (generation; records cost once per success)
    - CitationTracker, PromptRenderer, ApprovalGate, AnalyticsEmitter
    - crosscutting: timing (Deadline, StageTimings), metrics, logger context

Policy:
    - Re-rank failure or timeout degrades to the search order.
    - Search or generation past its deadline -> Failed with QueryTimeout.
    - AllProvidersFailed surfaces as is (attempts attached to the result).
    - asyncio.CancelledError propagates untouched.
===============================================================================
"""

from __future__ import annotations

import asyncio
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Iterator, List, Optional, TypeVar
from uuid import uuid4

from ..context import clear_context, set_query_context, set_stage
from ..crosscutting.exceptions import (
    AllProvidersFailed,
    NoGroundingAvailable,
    QueryTimeout,
    RAGError,
)
from ..crosscutting.logger import logger
from ..crosscutting.metrics import (
    observe_stage_latency,
    record_query_terminal,
    record_rerank_fallback,
)
from ..crosscutting.timing import Deadline, StageTimings
from ..domain.cache import EmbeddingCachePort, ScoreCachePort
from ..domain.engine_config import COST_PREFERENCES, EngineConfig
from ..domain.entities import (
    AnswerResult,
    ApprovalStatus,
    AssembledContext,
    GenerationRequest,
    ProviderProfile,
    QueryEvent,
    QueryState,
    RequestKind,
    SearchCandidate,
)
from ..domain.repositories import ChunkStore
from ..domain.services import (
    AnalyticsEmitter,
    ApprovalGate,
    PromptRenderer,
    RelevanceScorer,
    TokenCounter,
)
from .approval import WITHHELD_ANSWER_TEXT
from .citations import CitationTracker, escape_markers
from .context_assembler import ContextAssembler
from .cost_tracker import CostTracker
from .embedding_service import EmbeddingService
from .fallback_chain import FallbackChain
from .hybrid_search import HybridSearchService
from .model_router import ModelRouter
from .reranker import LLMRelevanceScorer, Reranker

T = TypeVar("T")

NO_GROUNDING_ANSWER = (
    "I could not find this in the available content. Could you rephrase the "
    "question or add more detail?"
)

TokenCounterFactory = Callable[[Optional[ProviderProfile]], TokenCounter]


@dataclass(frozen=True)
class _Pipeline:
    """Services bound to one EngineConfig value."""

    config: EngineConfig
    router: ModelRouter
    search: HybridSearchService
    reranker: Reranker


class RagOrchestrator:
    def __init__(
        self,
        config: EngineConfig,
        *,
        store: ChunkStore,
        chain: FallbackChain,
        prompts: PromptRenderer,
        token_counter_for: TokenCounterFactory,
        citations: Optional[CitationTracker] = None,
        embedding_cache: Optional[EmbeddingCachePort] = None,
        score_cache: Optional[ScoreCachePort] = None,
        scorer: Optional[RelevanceScorer] = None,
        approval_gate: Optional[ApprovalGate] = None,
        analytics: Optional[AnalyticsEmitter] = None,
        cost_tracker: Optional[CostTracker] = None,
    ) -> None:
        self._config = config
        self._store = store
        self._chain = chain
        self._prompts = prompts
        self._token_counter_for = token_counter_for
        self._citations = citations or CitationTracker()
        self._embedding_cache = embedding_cache
        self._score_cache = score_cache
        self._scorer = scorer
        self._approval_gate = approval_gate
        self._analytics = analytics
        self._cost_tracker = cost_tracker
        self._default_pipeline: Optional[_Pipeline] = None

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def citations(self) -> CitationTracker:
        return self._citations

    def _pipeline(self, config: EngineConfig) -> _Pipeline:
        if config is self._config and self._default_pipeline is not None:
            return self._default_pipeline

        router = ModelRouter(config)
        embeddings = EmbeddingService(self._chain, config, cache=self._embedding_cache)
        scorer = self._scorer
        if scorer is None and config.rerank_mode in ("model", "combined"):
            scorer = LLMRelevanceScorer(self._chain, router)
        pipeline = _Pipeline(
            config=config,
            router=router,
            search=HybridSearchService(self._store, embeddings, config),
            reranker=Reranker(config, scorer, score_cache=self._score_cache),
        )
        if config is self._config:
            self._default_pipeline = pipeline
        return pipeline

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def answer(
        self,
        conversation_id: str,
        query_text: str,
        token_budget: Optional[int] = None,
        cost_preference: str = "balanced",
        config: Optional[EngineConfig] = None,
    ) -> AnswerResult:
        """
        R: Grounded, cited answer for `query_text`.

        Never raises for engine failures: the result carries the terminal
        state and the error. Raises ValueError for invalid input and
        propagates asyncio.CancelledError.
        """
        if not (query_text or "").strip():
            raise ValueError("query_text must not be empty")
        if cost_preference not in COST_PREFERENCES:
            raise ValueError(f"cost_preference must be one of {COST_PREFERENCES}")

        config = config or self._config
        result = AnswerResult(
            query_id=uuid4().hex,
            conversation_id=conversation_id,
            text="",
            state=QueryState.RECEIVED,
            state_history=[QueryState.RECEIVED],
        )
        set_query_context(query_id=result.query_id, conversation_id=conversation_id)
        logger.info(
            "Query received",
            extra={"query_chars": len(query_text), "cost_preference": cost_preference},
        )

        timings = StageTimings()
        try:
            await self._run(result, query_text, token_budget, cost_preference, config, timings)
        except asyncio.CancelledError:
            logger.info("Query cancelled", extra={"state": result.state.value})
            clear_context()
            raise
        except Exception:
            # Programming errors still finish the query before propagating.
            self._transition(result, QueryState.FAILED)
            logger.exception("Query failed unexpectedly")
            self._finish(result, query_text, timings)
            raise

        self._finish(result, query_text, timings)
        return result

    def answer_sync(
        self,
        conversation_id: str,
        query_text: str,
        token_budget: Optional[int] = None,
        cost_preference: str = "balanced",
        config: Optional[EngineConfig] = None,
    ) -> AnswerResult:
        """R: answer() for callers without an event loop; drains background sinks."""

        async def run() -> AnswerResult:
            try:
                return await self.answer(
                    conversation_id, query_text, token_budget, cost_preference, config
                )
            finally:
                await self.flush()

        return asyncio.run(run())

    async def flush(self) -> None:
        """R: Waits until queued analytics events and cost entries are written."""
        if self._analytics is not None:
            await self._analytics.flush()
        if self._cost_tracker is not None:
            await self._cost_tracker.flush()

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------
    async def _run(
        self,
        result: AnswerResult,
        query_text: str,
        token_budget: Optional[int],
        cost_preference: str,
        config: EngineConfig,
        timings: StageTimings,
    ) -> None:
        pipeline = self._pipeline(config)
        deadline = Deadline(config.query_deadline_seconds)
        attempts = result.attempts

        try:
            self._transition(result, QueryState.SEARCHING)
            with self._stage("search", timings):
                search_deadline = deadline.sub_deadline(config.search_deadline_fraction)
                outcome = await self._within(
                    pipeline.search.search_detailed(
                        query_text,
                        deadline=search_deadline,
                        attempts=attempts,
                        conversation_id=result.conversation_id,
                    ),
                    search_deadline,
                    "search",
                )
            result.degraded.extend(outcome.degraded)

            self._transition(result, QueryState.RERANKING)
            with self._stage("rerank", timings):
                ranked = await self._rerank(
                    pipeline, query_text, outcome.candidates, deadline, result
                )

            self._transition(result, QueryState.ASSEMBLING)
            with self._stage("assemble", timings):
                route = pipeline.router.route(
                    RequestKind.ANSWER, None, cost_preference, query_text=query_text
                )
                assembler = ContextAssembler(config, self._token_counter_for(route.profile))
                context = assembler.assemble(query_text, ranked, token_budget)
            if context.is_empty:
                raise NoGroundingAvailable(
                    f"No chunk fits the token budget ({len(ranked)} candidates)"
                )

            self._transition(result, QueryState.GENERATING)
            with self._stage("generate", timings):
                request = self._build_request(query_text, context, result, config)
                generated = await self._within(
                    self._chain.invoke(
                        request, route.ordered, deadline=deadline, attempts=attempts
                    ),
                    deadline,
                    "generation",
                )
            result.provider_used = generated.provider_id
            result.model_used = generated.model_id
            result.tokens_in = generated.tokens_in
            result.tokens_out = generated.tokens_out

            self._transition(result, QueryState.VALIDATING)
            with self._stage("validate", timings):
                self._validate(result, generated.text, context, config)
                await self._review(result, config)

            self._transition(result, QueryState.COMPLETED)
        except NoGroundingAvailable as exc:
            result.error = exc
            result.text = NO_GROUNDING_ANSWER
            self._transition(result, QueryState.NO_GROUNDING_AVAILABLE)
        except AllProvidersFailed as exc:
            result.error = (
                QueryTimeout("Query deadline expired during generation", original_error=exc)
                if deadline.expired
                else exc
            )
            self._transition(result, QueryState.FAILED)
        except RAGError as exc:
            result.error = exc
            self._transition(result, QueryState.FAILED)

    async def _rerank(
        self,
        pipeline: _Pipeline,
        query_text: str,
        candidates: List[SearchCandidate],
        deadline: Deadline,
        result: AnswerResult,
    ) -> List[SearchCandidate]:
        rerank_deadline = deadline.sub_deadline(pipeline.config.rerank_deadline_fraction)
        try:
            return await asyncio.wait_for(
                pipeline.reranker.rerank(query_text, candidates, deadline=rerank_deadline),
                timeout=rerank_deadline.remaining(),
            )
        except asyncio.TimeoutError:
            record_rerank_fallback()
            result.degraded.append("rerank")
            logger.warning(
                "Re-ranking timed out, keeping search order",
                extra={"candidates": len(candidates)},
            )
            return list(candidates)

    def _build_request(
        self,
        query_text: str,
        context: AssembledContext,
        result: AnswerResult,
        config: EngineConfig,
    ) -> GenerationRequest:
        tagged = self._citations.tag(context)
        trivial = len(query_text.split()) <= config.trivial_query_words
        return GenerationRequest(
            prompt=self._prompts.format(tagged.text, escape_markers(query_text.strip())),
            system_prompt=self._prompts.system_prompt(),
            max_tokens=config.generation_max_tokens,
            temperature=config.generation_temperature,
            request_kind=RequestKind.ANSWER,
            conversation_id=result.conversation_id,
            min_response_chars=0 if trivial else config.min_response_chars,
        )

    def _validate(
        self,
        result: AnswerResult,
        generated_text: str,
        context: AssembledContext,
        config: EngineConfig,
    ) -> None:
        validation = self._citations.validate(generated_text, context)
        citations = validation.citations
        result.integrity_violations = [v.marker for v in validation.violations]
        if not citations and config.synthesize_citations:
            citations = self._citations.synthesize(context)
            result.citations_synthesized = True
        result.citations = citations
        result.text = self._citations.format_answer(
            validation.text, citations, config.citation_style
        )
        self._citations.record(result.conversation_id, citations)

    async def _review(self, result: AnswerResult, config: EngineConfig) -> None:
        if not config.require_approval or self._approval_gate is None:
            result.approval_status = ApprovalStatus.NOT_REQUIRED
            return
        # The gate keeps its own copy; the text below may be withheld.
        status = await self._approval_gate.review(replace(result))
        result.approval_status = status
        if status != ApprovalStatus.APPROVED:
            result.text = WITHHELD_ANSWER_TEXT

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    async def _within(awaitable: Awaitable[T], deadline: Deadline, stage: str) -> T:
        remaining = deadline.remaining()
        if remaining <= 0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise QueryTimeout(f"No time left for {stage}")
        try:
            return await asyncio.wait_for(awaitable, timeout=remaining)
        except asyncio.TimeoutError as exc:
            raise QueryTimeout(f"{stage} exceeded its deadline", original_error=exc) from exc

    @staticmethod
    def _transition(result: AnswerResult, state: QueryState) -> None:
        previous = result.state
        result.state = state
        result.state_history.append(state)
        set_stage(state.value)
        logger.info(
            "Query state changed",
            extra={"from_state": previous.value, "to_state": state.value},
        )

    @contextmanager
    def _stage(self, name: str, timings: StageTimings) -> Iterator[None]:
        with timings.measure(name) as timer:
            yield
        observe_stage_latency(name, timer.elapsed_seconds)

    def _finish(self, result: AnswerResult, query_text: str, timings: StageTimings) -> None:
        result.timings = timings.to_dict()
        record_query_terminal(result.state.value)
        logger.info(
            "Query finished",
            extra={
                "state": result.state.value,
                "provider": result.provider_used,
                "model": result.model_used,
                "citations": len(result.citations),
                "error_code": result.error_code,
                "degraded": result.degraded,
                **result.timings,
            },
        )
        self._emit(result, query_text)
        clear_context()

    def _emit(self, result: AnswerResult, query_text: str) -> None:
        if self._analytics is None:
            return
        event = QueryEvent(
            query_id=result.query_id,
            conversation_id=result.conversation_id,
            query_text=query_text,
            answer=result.text,
            state=result.state.value,
            citations=tuple(c.to_dict() for c in result.citations),
            provider_used=result.provider_used,
            model_used=result.model_used,
            tokens_in=result.tokens_in,
            tokens_out=result.tokens_out,
            latency_ms=result.timings.get("total_ms", 0.0),
        )
        self._analytics.emit(event)

