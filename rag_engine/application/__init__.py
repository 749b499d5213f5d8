"""
===============================================================================
APPLICATION LAYER (Public API / Exports)
===============================================================================

Stable entry points of the application layer:
  - RagOrchestrator: query lifecycle (search -> rerank -> assemble -> generate -> validate)
  - HybridSearchService / Reranker / ContextAssembler: retrieval pipeline
  - ModelRouter / FallbackChain / CostTracker: provider selection and resilience
  - CitationTracker: source tagging and citation integrity
  - EmbeddingService / IndexingService: embeddings and background indexing
===============================================================================
"""

from .approval import AutoApproveGate, ReviewQueueGate
from .citations import CitationTracker
from .context_assembler import ContextAssembler
from .cost_tracker import CostTracker, InMemoryCostSink, LoggingCostSink
from .embedding_service import EmbeddingService
from .fallback_chain import CooldownRegistry, FallbackChain
from .hybrid_search import HybridSearchService, SearchOutcome
from .indexing import IndexingReport, IndexingService
from .model_router import ModelRouter, RouteDecision
from .orchestrator import RagOrchestrator
from .reranker import LLMRelevanceScorer, Reranker

__all__ = [
    # Orchestration
    "RagOrchestrator",
    # Retrieval
    "HybridSearchService",
    "SearchOutcome",
    "Reranker",
    "LLMRelevanceScorer",
    "ContextAssembler",
    # Providers
    "ModelRouter",
    "RouteDecision",
    "FallbackChain",
    "CooldownRegistry",
    "CostTracker",
    "InMemoryCostSink",
    "LoggingCostSink",
    # Citations / approval
    "CitationTracker",
    "AutoApproveGate",
    "ReviewQueueGate",
    # Embeddings / indexing
    "EmbeddingService",
    "IndexingService",
    "IndexingReport",
]
