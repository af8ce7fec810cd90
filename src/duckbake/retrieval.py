"""Concrete implementations for semantic search over rows and documents."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .exceptions import SearchError
from .models import DocumentSearchResult, SemanticSearchResult

logger = logging.getLogger(__name__)


class Embedder(ABC):
    """Interface for turning texts into embedding vectors."""

    @abstractmethod
    async def embed(self, texts: List[str]) -> List[List[float]]:
        pass


class OllamaEmbedder(Embedder):
    def __init__(self, model: Optional[str] = None, host: Optional[str] = None):
        from ollama import AsyncClient

        from .config import get_settings

        settings = get_settings()
        self.client = AsyncClient(host=host or settings.ollama_host)
        self.model = model or settings.embedding_model

    async def embed(self, texts):
        response = await self.client.embed(model=self.model, input=texts, keep_alive="10m")
        return [list(vector) for vector in response["embeddings"]]


class Retrieval(ABC):
    """Interface for semantic search used to enrich a turn's context."""

    @abstractmethod
    async def vectorized_tables(self, project_id: str) -> List[str]:
        """Names of the tables that can be searched."""
        pass

    @abstractmethod
    async def search_similar_rows(
        self, project_id: str, table_name: str, query_text: str, limit: int = 5
    ) -> List[SemanticSearchResult]:
        """Rows of ``table_name`` most similar to ``query_text``."""
        pass

    @abstractmethod
    async def search_similar_document_chunks(
        self, project_id: str, query_text: str, limit: int = 5
    ) -> List[DocumentSearchResult]:
        """Document chunks most similar to ``query_text``."""
        pass


class NoRetrieval(Retrieval):
    """Default retriever that has no index."""

    async def vectorized_tables(self, project_id):
        return []

    async def search_similar_rows(self, project_id, table_name, query_text, limit=5):
        return []

    async def search_similar_document_chunks(self, project_id, query_text, limit=5):
        return []


def cosine_similarity(matrix: np.ndarray, vector: np.ndarray) -> np.ndarray:
    """Similarity of each row of ``matrix`` to ``vector``; zero vectors score 0."""
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(vector)
    dots = matrix @ vector
    return np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)


@dataclass
class _Index:
    keys: List[Tuple] = field(default_factory=list)
    contents: List[str] = field(default_factory=list)
    vectors: Optional[np.ndarray] = None

    def add(self, keys, contents, vectors) -> None:
        block = np.asarray(vectors, dtype=np.float32)
        self.keys.extend(keys)
        self.contents.extend(contents)
        self.vectors = block if self.vectors is None else np.vstack([self.vectors, block])

    def search(self, query: np.ndarray, limit: int) -> List[Tuple[Tuple, str, float]]:
        if self.vectors is None or not len(self.keys):
            return []
        scores = cosine_similarity(self.vectors, query)
        # stable sort keeps insertion order among equal scores
        order = np.argsort(-scores, kind="stable")[:limit]
        return [(self.keys[i], self.contents[i], float(scores[i])) for i in order]


class Vector(Retrieval):
    """In-memory vector index per project.

    Rows and document chunks are embedded when indexed and searched by cosine
    similarity.

    Parameters
    ----------
    embedder : Embedder, optional
        Defaults to ``OllamaEmbedder``.
    """

    def __init__(self, embedder: Optional[Embedder] = None):
        self.embedder = embedder if embedder is not None else OllamaEmbedder()
        self._tables: Dict[str, Dict[str, _Index]] = {}
        self._documents: Dict[str, _Index] = {}

    async def _embed(self, texts: List[str]) -> List[List[float]]:
        try:
            vectors = await self.embedder.embed(texts)
        except Exception as e:
            raise SearchError(f"Embedding failed: {e}") from e
        if len(vectors) != len(texts):
            raise SearchError(
                f"Embedder returned {len(vectors)} vectors for {len(texts)} texts"
            )
        return vectors

    async def index_rows(
        self, project_id: str, table_name: str, rows: Sequence[Tuple[int, str]]
    ) -> int:
        """Embeds ``(row_id, content)`` pairs as the table's index.

        Indexing a table again replaces its previous index.
        """
        if not rows:
            return 0
        vectors = await self._embed([content for _, content in rows])
        index = _Index()
        index.add([(row_id,) for row_id, _ in rows], [c for _, c in rows], vectors)
        self._tables.setdefault(project_id, {})[table_name] = index
        logger.info("Indexed %d rows of %s in %s", len(rows), table_name, project_id)
        return len(rows)

    async def index_document(
        self,
        project_id: str,
        document_id: str,
        document_name: str,
        chunks: Sequence[str],
    ) -> int:
        """Embeds a document's text chunks."""
        if not chunks:
            return 0
        vectors = await self._embed(list(chunks))
        index = self._documents.setdefault(project_id, _Index())
        index.add([(document_id, document_name)] * len(chunks), list(chunks), vectors)
        logger.info("Indexed %d chunks of %s in %s", len(chunks), document_name, project_id)
        return len(chunks)

    def remove_table(self, project_id: str, table_name: str) -> None:
        self._tables.get(project_id, {}).pop(table_name, None)

    async def vectorized_tables(self, project_id):
        return sorted(self._tables.get(project_id, {}))

    async def search_similar_rows(self, project_id, table_name, query_text, limit=5):
        index = self._tables.get(project_id, {}).get(table_name)
        if index is None:
            raise SearchError(f"Table is not vectorized: {table_name}")
        (query,) = await self._embed([query_text])
        return [
            SemanticSearchResult(row_id=key[0], content=content, similarity=score)
            for key, content, score in index.search(np.asarray(query, dtype=np.float32), limit)
        ]

    async def search_similar_document_chunks(self, project_id, query_text, limit=5):
        index = self._documents.get(project_id)
        if index is None:
            return []
        (query,) = await self._embed([query_text])
        return [
            DocumentSearchResult(
                document_id=key[0], document_name=key[1], content=content, similarity=score
            )
            for key, content, score in index.search(np.asarray(query, dtype=np.float32), limit)
        ]
