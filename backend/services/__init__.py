"""Services for the Passage Optimizer."""
from .chunking_engine import ChunkingEngine
from .embedding_model import EmbeddingModel, EmbeddingBatch, EmbeddingMap
from .llm_client import LLMClient
from .analysis_runner import AnalysisRunner
from .sentence_splitter import split_into_sentences, split_query_into_clauses
from .batch_runner import BatchOutcome, run_in_batches
from .query_assignment import compute_query_assignments, reassign_query
from .optimization_orchestrator import OptimizationOrchestrator

__all__ = ['ChunkingEngine', 'EmbeddingModel', 'EmbeddingBatch', 'EmbeddingMap', 'LLMClient', 'AnalysisRunner', 'split_into_sentences', 'split_query_into_clauses', 'BatchOutcome', 'run_in_batches', 'compute_query_assignments', 'reassign_query', 'OptimizationOrchestrator']
