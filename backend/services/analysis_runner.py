"""Single-shot analysis: score a content body and its chunks against keywords."""
import logging
from datetime import datetime, timezone
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Tuple

from config import MAX_SENTENCES_PER_CHUNK
from models.chunk import AnalysisResult, Chunk, ChunkScore, ImprovementResult, KeywordScore, OriginalScore, SentenceStats
from models.errors import VectorError
from models.scores import SimilarityScores
from models.chunk import ChunkingStrategy
from services.chunking_engine import ChunkingEngine
from services.embedding_model import EmbeddingBatch, EmbeddingMap, EmbeddingModel
from services.passage_scoring import calculate_all_metrics, calculate_improvement, calculate_passage_score
from services.sentence_splitter import split_into_sentences, split_query_into_clauses
from services.similarity import sentence_chamfer as score_sentence_chamfer

logger = logging.getLogger(__name__)

_ZERO_SCORES = SimilarityScores(cosine=0.0, euclidean=0.0, chamfer=0.0)


class AnalysisRunner:
    """
    Scores content against keywords with one embedding request.

    By default chamfer here is the single-vector degenerate (equal to cosine).
    In sentence-level mode each chunk sentence and each query clause gets its
    own vector, so chamfer measures how many aspects of a query the chunk
    actually covers.
    """

    def __init__(self, embedding_model: EmbeddingModel, chunking_engine: Optional[ChunkingEngine] = None):
        self.embedding_model = embedding_model
        self.chunking_engine = chunking_engine or ChunkingEngine()

    async def analyze(
        self,
        content: str,
        keywords: Sequence[str],
        strategy: ChunkingStrategy = ChunkingStrategy.PARAGRAPH,
        optimized_content: Optional[str] = None,
        compare_cascade: bool = True,
        sentence_chamfer: bool = False,
        max_sentences_per_chunk: int = MAX_SENTENCES_PER_CHUNK
    ) -> AnalysisResult:
        """
        Chunk, embed and score content.

        Args:
            content: Content to analyze
            keywords: Target keywords / queries (blank entries are ignored)
            strategy: Chunking strategy for the content
            optimized_content: Optional rewritten content to score alongside
            compare_cascade: For layout-aware chunks, also score the bodies
                without their heading cascade
            sentence_chamfer: Score chunk chamfer from sentence and clause
                vectors instead of the single chunk vector
            max_sentences_per_chunk: Sentences embedded per chunk in
                sentence-level mode

        Returns:
            AnalysisResult

        Raises:
            ValueError: If content or keywords are empty
            ProviderClientError: If the embedding request fails
        """
        if not content or not content.strip():
            raise ValueError("Please enter content to analyze")

        valid_keywords = [k.strip() for k in keywords if k and k.strip()]
        if not valid_keywords:
            raise ValueError("Please add at least one keyword")

        strategy = ChunkingStrategy(strategy)
        chunks = self.chunking_engine.chunk(content, strategy)

        no_cascade_texts = None
        if strategy == ChunkingStrategy.LAYOUT_AWARE and compare_cascade:
            no_cascade_texts = [c.text_without_cascade or c.text for c in chunks]

        optimized_chunks = None
        if optimized_content and optimized_content.strip():
            # Rewrites carry no heading structure to cascade
            optimized_strategy = (
                ChunkingStrategy.PARAGRAPH if strategy == ChunkingStrategy.LAYOUT_AWARE else strategy
            )
            optimized_chunks = self.chunking_engine.chunk(optimized_content, optimized_strategy)

        batch = EmbeddingBatch()
        batch.add("document", 0, content)
        batch.add_many("chunk", [c.text for c in chunks])
        batch.add_many("keyword", valid_keywords)
        if no_cascade_texts is not None:
            batch.add_many("no_cascade", no_cascade_texts)
        if optimized_chunks is not None:
            batch.add_many("optimized", [c.text for c in optimized_chunks])

        chunk_sentences: List[List[str]] = []
        query_clauses: List[List[str]] = []
        if sentence_chamfer:
            chunk_sentences, query_clauses = self._segment(chunks, valid_keywords, max_sentences_per_chunk)
            for chunk_index, sentences in enumerate(chunk_sentences):
                for sentence_index, sentence in enumerate(sentences):
                    batch.add("sentence", (chunk_index, sentence_index), sentence)
            for query_index, clauses in enumerate(query_clauses):
                for clause_index, clause in enumerate(clauses):
                    batch.add("clause", (query_index, clause_index), clause)

        logger.info(
            f"Analyzing {len(chunks)} chunks against {len(valid_keywords)} keywords "
            f"(strategy={strategy.value}, optimized={optimized_chunks is not None}, "
            f"sentence_chamfer={sentence_chamfer})"
        )
        vectors = await self.embedding_model.embed_keyed(batch)
        keyword_vectors = vectors.role("keyword", len(valid_keywords))

        original_scores = OriginalScore(
            text=content,
            keyword_scores=[
                KeywordScore(keyword, self._scores(vectors.get("document", 0), kw_vector))
                for keyword, kw_vector in zip(valid_keywords, keyword_vectors)
            ],
        )

        chunk_scores = self._score_chunks(chunks, "chunk", vectors, valid_keywords, keyword_vectors)

        sentence_stats = None
        if sentence_chamfer:
            chunk_scores = self._apply_sentence_chamfer(chunk_scores, chunk_sentences, query_clauses, vectors)
            total_sentences = sum(len(s) for s in chunk_sentences)
            sentence_stats = SentenceStats(
                total_chunk_sentences=total_sentences,
                total_query_clauses=sum(len(c) for c in query_clauses),
                avg_sentences_per_chunk=total_sentences / len(chunks) if chunks else 0.0,
            )

        no_cascade_scores = None
        if no_cascade_texts is not None:
            bodies = [
                Chunk(
                    chunk_id=c.chunk_id,
                    index=c.index,
                    text=body,
                    word_count=c.word_count,
                    char_count=c.char_count,
                    heading_path=c.heading_path,
                )
                for c, body in zip(chunks, no_cascade_texts)
            ]
            no_cascade_scores = self._score_chunks(bodies, "no_cascade", vectors, valid_keywords, keyword_vectors)

        optimized_scores = None
        if optimized_chunks is not None:
            optimized_scores = self._score_chunks(
                optimized_chunks, "optimized", vectors, valid_keywords, keyword_vectors
            )

        improvements = self._improvements(original_scores, chunk_scores)

        return AnalysisResult(
            original_scores=original_scores,
            chunk_scores=chunk_scores,
            no_cascade_scores=no_cascade_scores,
            optimized_scores=optimized_scores,
            improvements=improvements,
            timestamp=datetime.now(timezone.utc),
            sentence_stats=sentence_stats,
        )

    @staticmethod
    def _segment(
        chunks: List[Chunk],
        keywords: List[str],
        max_sentences_per_chunk: int
    ) -> Tuple[List[List[str]], List[List[str]]]:
        """Chunk bodies into sentences (cascade excluded) and keywords into clauses."""
        chunk_sentences = [
            split_into_sentences(chunk.text_without_cascade or chunk.text)[:max_sentences_per_chunk]
            for chunk in chunks
        ]
        query_clauses = [split_query_into_clauses(keyword) for keyword in keywords]
        return chunk_sentences, query_clauses

    @staticmethod
    def _present(vectors: EmbeddingMap, role: str, owner: int, texts: List[str]) -> Tuple[List[List[float]], List[str]]:
        """Usable vectors of one chunk or query, with their texts kept aligned."""
        pairs = [(vectors.get(role, (owner, i)), text) for i, text in enumerate(texts)]
        pairs = [(vector, text) for vector, text in pairs if vector]
        return [vector for vector, _ in pairs], [text for _, text in pairs]

    def _apply_sentence_chamfer(
        self,
        chunk_scores: List[ChunkScore],
        chunk_sentences: List[List[str]],
        query_clauses: List[List[str]],
        vectors: EmbeddingMap
    ) -> List[ChunkScore]:
        """
        Replace each cell's chamfer with the sentence-level value.

        A cell keeps its single-vector scores when the chunk or the query has
        no usable sentence vectors.
        """
        clause_sets: Dict[int, Tuple[List[List[float]], List[str]]] = {
            query_index: self._present(vectors, "clause", query_index, clauses)
            for query_index, clauses in enumerate(query_clauses)
        }

        rescored = []
        for chunk_index, chunk_score in enumerate(chunk_scores):
            sentence_vectors, sentences = self._present(vectors, "sentence", chunk_index, chunk_sentences[chunk_index])
            keyword_scores = []
            for query_index, keyword_score in enumerate(chunk_score.keyword_scores):
                clause_vectors, clauses = clause_sets[query_index]
                scores = keyword_score.scores
                if sentence_vectors and clause_vectors and scores is not _ZERO_SCORES:
                    try:
                        result = score_sentence_chamfer(sentence_vectors, clause_vectors, sentences, clauses)
                        scores = replace(
                            scores,
                            chamfer=result.similarity,
                            passage_score=calculate_passage_score(scores.cosine, result.similarity),
                            sentence_chamfer=result,
                        )
                    except VectorError as e:
                        logger.warning(f"Sentence chamfer unavailable for chunk {chunk_index}, keeping single-vector: {e}")
                keyword_scores.append(KeywordScore(keyword_score.keyword, scores))
            rescored.append(replace(chunk_score, keyword_scores=keyword_scores))

        return rescored

    def _score_chunks(
        self,
        chunks: List[Chunk],
        role: str,
        vectors: EmbeddingMap,
        keywords: List[str],
        keyword_vectors: List[Optional[List[float]]]
    ) -> List[ChunkScore]:
        chunk_vectors = vectors.role(role, len(chunks))
        return [
            ChunkScore(
                chunk_id=chunk.chunk_id,
                chunk_index=chunk.index,
                text=chunk.text,
                word_count=chunk.word_count,
                char_count=chunk.char_count,
                keyword_scores=[
                    KeywordScore(keyword, self._scores(chunk_vector, kw_vector))
                    for keyword, kw_vector in zip(keywords, keyword_vectors)
                ],
            )
            for chunk, chunk_vector in zip(chunks, chunk_vectors)
        ]

    @staticmethod
    def _scores(content_vector: Optional[List[float]], keyword_vector: Optional[List[float]]) -> SimilarityScores:
        if not content_vector or not keyword_vector:
            logger.warning("Missing embedding, scoring cell as zero")
            return _ZERO_SCORES
        try:
            return calculate_all_metrics(content_vector, keyword_vector)
        except VectorError as e:
            logger.warning(f"Unusable embedding pair, scoring cell as zero: {e}")
            return _ZERO_SCORES

    @staticmethod
    def _improvements(original: OriginalScore, chunk_scores: List[ChunkScore]) -> List[ImprovementResult]:
        """Each chunk versus the whole original document, per keyword."""
        original_by_keyword = {ks.keyword: ks.scores for ks in original.keyword_scores}
        improvements = []
        for chunk_score in chunk_scores:
            for keyword_score in chunk_score.keyword_scores:
                reference = original_by_keyword.get(keyword_score.keyword)
                if reference is None:
                    continue
                improvements.append(ImprovementResult(
                    chunk_id=chunk_score.chunk_id,
                    keyword=keyword_score.keyword,
                    cosine_improvement=calculate_improvement(reference.cosine, keyword_score.scores.cosine),
                    euclidean_improvement=calculate_improvement(
                        reference.euclidean, keyword_score.scores.euclidean
                    ),
                    chamfer_improvement=calculate_improvement(reference.chamfer, keyword_score.scores.chamfer),
                ))
        return improvements
