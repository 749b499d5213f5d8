"""
===============================================================================
CRC CARD: application/context_assembler.py
===============================================================================

Class:
    ContextAssembler

Responsibilities:
    - Pick whole chunks, in rank order, that fit the generation token budget.
    - Running total = chunk tokens + per-chunk label overhead + fixed prompt
      overhead; never above the budget.
    - Strategies:
        greedy   -> rank order, stop at the first chunk that does not fit
        quality  -> only score >= quality_threshold, then greedy
        balanced -> round-robin across sources, stop at the first misfit
    - Report excluded chunk ids (diagnostics).

Collaborators:
    - domain.services.TokenCounter (target model tokenizer, injected)
    - domain.engine_config.EngineConfig (budget, overheads, limits)

Constraints:
    - Chunks are atomic: never split or truncated.
    - A chunk costs max(stored token_count, counted tokens).
    - Empty result is valid; the orchestrator maps it to NoGroundingAvailable.
===============================================================================
"""

from __future__ import annotations

from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Sequence

from ..crosscutting.exceptions import TokenBudgetExceeded
from ..crosscutting.logger import logger
from ..domain.engine_config import EngineConfig
from ..domain.entities import AssembledChunk, AssembledContext, SearchCandidate
from ..domain.services import TokenCounter

ASSEMBLY_STRATEGIES = ("greedy", "quality", "balanced")


class ContextAssembler:
    def __init__(
        self,
        config: EngineConfig,
        token_counter: TokenCounter,
        *,
        prompt_overhead_tokens: Optional[int] = None,
        per_chunk_overhead_tokens: Optional[int] = None,
    ) -> None:
        self._config = config
        self._counter = token_counter
        self._prompt_overhead = (
            config.prompt_overhead_tokens
            if prompt_overhead_tokens is None
            else prompt_overhead_tokens
        )
        self._per_chunk_overhead = (
            config.per_chunk_overhead_tokens
            if per_chunk_overhead_tokens is None
            else per_chunk_overhead_tokens
        )
        if self._prompt_overhead < 0 or self._per_chunk_overhead < 0:
            raise ValueError("token overheads must be >= 0")

    def chunk_cost(self, candidate: SearchCandidate) -> int:
        """R: Tokens one chunk adds to the prompt (body + label line)."""
        counted = self._counter.count(candidate.chunk.text)
        return max(candidate.chunk.token_count, counted) + self._per_chunk_overhead

    def assemble(
        self,
        query_text: str,
        ranked_candidates: Sequence[SearchCandidate],
        token_budget: Optional[int] = None,
        *,
        strategy: Optional[str] = None,
    ) -> AssembledContext:
        budget = self._config.default_token_budget if token_budget is None else token_budget
        if budget <= 0:
            raise ValueError("token_budget must be > 0")
        strategy = strategy or self._config.assembly_strategy
        if strategy not in ASSEMBLY_STRATEGIES:
            raise ValueError(f"strategy must be one of {ASSEMBLY_STRATEGIES}")

        pool = self._eligible(ranked_candidates, strategy)
        if strategy == "balanced":
            ordered = list(_round_robin_by_source(pool))
        else:
            ordered = pool

        selected: List[AssembledChunk] = []
        total = self._prompt_overhead
        if total <= budget:
            for candidate in ordered:
                if len(selected) >= self._config.max_chunks:
                    break
                cost = self.chunk_cost(candidate)
                if total + cost > budget:
                    break
                selected.append(AssembledChunk(candidate=candidate, tokens=cost))
                total += cost

        if selected and total > budget:
            raise TokenBudgetExceeded(
                f"Assembled context uses {total} tokens, budget is {budget}"
            )

        chosen = {item.chunk.chunk_id for item in selected}
        excluded = tuple(c.chunk_id for c in ranked_candidates if c.chunk_id not in chosen)
        context = AssembledContext(
            items=tuple(selected),
            token_total=total if selected else 0,
            token_budget=budget,
            overhead_tokens=self._prompt_overhead,
            excluded=excluded,
        )
        logger.info(
            "Context assembled",
            extra={
                "strategy": strategy,
                "chunks": len(selected),
                "excluded": len(excluded),
                "token_total": context.token_total,
                "token_budget": budget,
                "query_chars": len(query_text or ""),
            },
        )
        return context

    def _eligible(
        self, candidates: Sequence[SearchCandidate], strategy: str
    ) -> List[SearchCandidate]:
        threshold = self._config.min_chunk_score
        if strategy == "quality":
            threshold = max(threshold, self._config.quality_threshold)

        seen = set()
        eligible: List[SearchCandidate] = []
        for candidate in candidates:
            if candidate.chunk_id in seen or candidate.chunk.is_tombstoned:
                continue
            seen.add(candidate.chunk_id)
            if candidate.score < threshold:
                continue
            eligible.append(candidate)
        return eligible


def _round_robin_by_source(
    candidates: Iterable[SearchCandidate],
) -> Iterable[SearchCandidate]:
    """Interleave sources, each in rank order; sources ordered by best rank."""
    groups: Dict[str, List[SearchCandidate]] = OrderedDict()
    for candidate in candidates:
        source = candidate.chunk.source_uri or candidate.chunk.document_id
        groups.setdefault(source, []).append(candidate)

    queues = list(groups.values())
    depth = max((len(q) for q in queues), default=0)
    for i in range(depth):
        for queue in queues:
            if i < len(queue):
                yield queue[i]
